"""Tests for src/events.py."""

import json

import pytest

from src.events import (
    CompleteMessage,
    ErrorMessage,
    EscalationMessage,
    EventStream,
    EventType,
    PlanEvent,
    ProgressMessage,
    StreamClosedError,
    complete_event,
    error_event,
    escalation_event,
    parse_frame,
    progress_event,
)
from src.models import (
    ConsensusReport,
    DualPlanProgress,
    DualPlanStage,
    EscalationData,
    FinalValidatedArchitecture,
    ValidationResult,
)

from tests.conftest import make_position


def _final() -> FinalValidatedArchitecture:
    return FinalValidatedArchitecture(
        architecture=make_position(),
        consensus_report=ConsensusReport(rounds=1),
        validation=ValidationResult("2026-01-01T00:00:00+00:00", 100, 0, 0),
    )


def _progress(percent: int = 10) -> PlanEvent:
    return progress_event(DualPlanProgress(DualPlanStage.LAYOUT_ANALYSIS, percent, "Analyzing"))


def test_frame_shape():
    frame = json.loads(_progress(5).to_frame())
    assert frame == {"type": "progress", "data": {"stage": "layout-analysis", "progress": 5, "message": "Analyzing"}}


def test_parse_progress_frame():
    message = parse_frame(_progress(5).to_frame())
    assert isinstance(message, ProgressMessage)
    assert message.progress.percent == 5


def test_parse_complete_frame():
    p = make_position()
    message = parse_frame(complete_event(_final(), p, p, 1, "Done").to_frame())
    assert isinstance(message, CompleteMessage)
    assert message.architecture == _final()
    assert message.proposal_a == p
    assert message.negotiation_rounds == 1


def test_parse_escalation_frame():
    escalation = EscalationData("stuck", make_position(), make_position(confidence=0.2), 5)
    message = parse_frame(escalation_event(escalation, 80, "Needs your input").to_frame())
    assert isinstance(message, EscalationMessage)
    assert message.escalation == escalation
    assert message.percent == 80


def test_parse_error_frame_carries_kind():
    message = parse_frame(error_event("claude failed", 20, "generator_failure").to_frame())
    assert isinstance(message, ErrorMessage)
    assert message.error == "claude failed"
    assert message.kind == "generator_failure"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"type": "progress"',
        "[1, 2]",
        '{"type": "teleport", "data": {}}',
        '{"type": "progress", "data": "nope"}',
        '{"type": "progress", "data": {"stage": "consensus"}}',
        '{"type": "complete", "data": {"stage": "complete", "progress": 100}}',
    ],
)
def test_malformed_frames_dropped(raw):
    assert parse_frame(raw) is None


async def test_stream_delivers_in_order_and_closes_after_terminal():
    stream = EventStream("s1")
    stream.publish(_progress(1))
    stream.publish(_progress(2))
    stream.publish(error_event("boom", 2))
    assert stream.closed
    events = [e async for e in stream.events()]
    assert [e.type for e in events] == [EventType.PROGRESS, EventType.PROGRESS, EventType.ERROR]
    assert events[1].data["progress"] == 2


def test_publish_after_terminal_raises():
    stream = EventStream("s1")
    stream.publish(error_event("boom", 0))
    with pytest.raises(StreamClosedError):
        stream.publish(error_event("again", 0))
    with pytest.raises(StreamClosedError):
        stream.publish(_progress())


def test_close_is_idempotent():
    stream = EventStream("s1")
    stream.close()
    stream.close()
    assert stream.closed


def test_single_consumer():
    stream = EventStream("s1")
    stream.events()
    with pytest.raises(RuntimeError, match="already has a consumer"):
        stream.events()
