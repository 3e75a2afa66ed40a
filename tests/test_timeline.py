"""Tests for timeline expansion."""

from __future__ import annotations

import pytest

from domain.chat_video import (
    INVALID_CONFIG_CODE,
    ChatFrame,
    ImageFrame,
    InitialFrame,
    Message,
    RenderConfig,
    RenderValidationError,
    Side,
    WidgetFrame,
    parse_script,
    resolve_theme,
)
from service.timeline import ScheduledFrame, TimelinePlan, build_timeline


def build_config(**overrides: object) -> RenderConfig:
    """Build a valid config with optional overrides."""
    values = {
        "theme": resolve_theme("ios_dark"),
        "repeat_window": 2,
        "hold_seconds": 1.0,
        "fade_frame_count": 0,
        "fps": 30,
    }
    values.update(overrides)
    return RenderConfig(**values)


def test_initial_chat_and_image_frames() -> None:
    """Two messages and one image at 30 fps with a 1 s hold give 90 frames."""
    script = parse_script("L) Hi\nR) Hello\ncat.png <2s>")

    plan = build_timeline(script, build_config())
    ticks = list(plan.iter_ticks())

    assert plan.total_frames == 90
    assert len(ticks) == 90
    assert all(isinstance(tick.state, InitialFrame) for tick in ticks[:30])
    assert all(isinstance(tick.state, ChatFrame) for tick in ticks[30:60])
    assert all(tick.state == ImageFrame(asset="cat.png") for tick in ticks[60:])
    assert [block.keyframe_name for block in plan.keyframes] == [
        "message_1.png",
        "message_2.png",
        "inline_2.png",
    ]


def test_fades_precede_every_message_after_the_first() -> None:
    """Each message after the first gets fade frames with rising opacity."""
    script = parse_script("L) a\nR) b\nL) c")
    config = build_config(fade_frame_count=4, hold_seconds=1.0, fps=10)

    plan = build_timeline(script, config)
    ticks = list(plan.iter_ticks())

    assert plan.total_frames == 10 + (4 + 10) * 2
    fade_states = [tick.state for tick in ticks[10:14]]
    assert [state.opacity for state in fade_states] == [0.25, 0.5, 0.75, 1.0]
    assert all(
        state.visible_messages == script.messages[0:2] for state in fade_states
    )
    assert ticks[14].state == ChatFrame(script.messages[0:2], 1.0)


def test_tick_count_per_message() -> None:
    """Message i contributes fade + hold ticks, except the first which has only hold."""
    script = parse_script("\n".join(f"L) line {index}" for index in range(5)))
    config = build_config(fade_frame_count=3, hold_seconds=0.5, fps=20)

    plan = build_timeline(script, config)

    assert plan.total_frames == 10 + 4 * (3 + 10)


def test_repeat_window_limits_visible_messages() -> None:
    """Settled chat frames show at most repeat_window + 1 messages."""
    script = parse_script("\n".join(f"R) line {index}" for index in range(6)))

    plan = build_timeline(script, build_config(repeat_window=1, fps=2))
    last_state = plan.scheduled_frames[-1].state

    assert isinstance(last_state, ChatFrame)
    assert last_state.visible_messages == script.messages[4:6]


def test_widget_uses_recent_messages_and_next_reply() -> None:
    """A widget holds for twice the hold time with the next message as suggestion."""
    script = parse_script("L) one\nR) two\nL) three\nR) four\n[PLUG_WIDGET]\nL) five")

    plan = build_timeline(script, build_config(fps=10))
    widget_blocks = [
        block for block in plan.scheduled_frames if isinstance(block.state, WidgetFrame)
    ]

    assert len(widget_blocks) == 1
    widget_block = widget_blocks[0]
    assert widget_block.frame_count == 20
    assert widget_block.keyframe_name == "widget_4.png"
    assert widget_block.state.messages == script.messages[1:4]
    assert widget_block.state.suggestion_text == "five"


def test_widget_after_last_message_has_empty_suggestion() -> None:
    """With no following message the suggestion is empty."""
    script = parse_script("L) only\n[PLUG_WIDGET]")

    plan = build_timeline(script, build_config(fps=10))

    assert plan.scheduled_frames[-1].state == WidgetFrame(
        messages=(Message(Side.LEFT, "only"),), suggestion_text=""
    )


def test_elements_before_first_message() -> None:
    """Elements anchored at -1 fire before the first hold block."""
    script = parse_script("intro.png <1s>\n[PLUG_WIDGET]\nL) hi\nR) there")

    plan = build_timeline(script, build_config(fps=10))
    states = [block.state for block in plan.scheduled_frames]

    assert states[0] == ImageFrame(asset="intro.png")
    assert states[1] == WidgetFrame(messages=(), suggestion_text="hi")
    assert isinstance(states[2], InitialFrame)
    assert plan.scheduled_frames[0].keyframe_name == "inline_0.png"


def test_both_kinds_fire_in_script_order_and_duplicates_are_ignored() -> None:
    """One element of each kind fires per anchor, in the order encountered."""
    script = parse_script("L) hi\n[PLUG_WIDGET]\na.png <1s>\nb.png <1s>\n[PLUG_WIDGET]\nR) yo")

    plan = build_timeline(script, build_config(fps=10))
    kinds = [type(block.state).__name__ for block in plan.scheduled_frames]

    assert kinds == ["InitialFrame", "WidgetFrame", "ImageFrame", "ChatFrame"]
    assert plan.scheduled_frames[2].state == ImageFrame(asset="a.png")


def test_asset_sources_resolve_or_skip_images() -> None:
    """Image names map to their sources; names without a source are skipped."""
    script = parse_script("L) hi\ncat.png <1s>\nR) yo\ndog.png <1s>")

    plan = build_timeline(
        script, build_config(fps=10), asset_sources={"cat.png": "/tmp/cat-upload.png"}
    )
    images = [
        block.state for block in plan.scheduled_frames if isinstance(block.state, ImageFrame)
    ]

    assert images == [ImageFrame(asset="/tmp/cat-upload.png")]


def test_story_asset_is_carried_by_initial_frame() -> None:
    """The initial frame references the story image."""
    script = parse_script("L) hi")

    plan = build_timeline(script, build_config(fps=10), story_asset="story.jpg")

    assert plan.scheduled_frames[0].state == InitialFrame(
        first_message=Message(Side.LEFT, "hi"), story_asset="story.jpg"
    )


def test_iter_ticks_is_restartable() -> None:
    """Every call to iter_ticks starts a new pass."""
    plan = build_timeline(parse_script("L) a\nR) b"), build_config(fps=4))

    first_pass = [tick.state for tick in plan.iter_ticks()]
    second_pass = [tick.state for tick in plan.iter_ticks()]

    assert first_pass == second_pass
    assert len(first_pass) == plan.total_frames


def test_plan_rejects_gaps() -> None:
    """Scheduled frames must be contiguous from frame zero."""
    state = ImageFrame(asset="a.png")

    with pytest.raises(RenderValidationError) as exc_info:
        TimelinePlan(
            fps=30,
            scheduled_frames=(ScheduledFrame(state, 0, 5), ScheduledFrame(state, 6, 5)),
        )

    assert exc_info.value.code == INVALID_CONFIG_CODE
