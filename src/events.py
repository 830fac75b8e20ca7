"""Session event stream: typed events, one ordered single-consumer channel per session.

Frames on the wire are JSON objects ``{"type": ..., "data": {...}}``. The
server side builds PlanEvents and publishes them to an EventStream; the client
side turns raw frames back into typed messages with ``parse_frame``, which
returns None for anything malformed so consumers can drop it and carry on.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from src.codec import (
    escalation_from_dict,
    escalation_to_dict,
    final_from_dict,
    final_to_dict,
    position_from_dict,
    position_to_dict,
    progress_from_dict,
    progress_to_dict,
)
from src.models import (
    ArchitecturePosition,
    DualPlanProgress,
    DualPlanStage,
    EscalationData,
    FinalValidatedArchitecture,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ESCALATION = "escalation"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ESCALATION, EventType.ERROR})


class StreamClosedError(RuntimeError):
    """Raised when publishing to a stream that already delivered its terminal event."""


@dataclass
class PlanEvent:
    type: EventType
    data: dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_frame(self) -> str:
        return json.dumps({"type": self.type.value, "data": self.data}, ensure_ascii=False)


# --- Builders (server side) -----------------------------------------------

def progress_event(progress: DualPlanProgress) -> PlanEvent:
    return PlanEvent(EventType.PROGRESS, progress_to_dict(progress))


def complete_event(
    architecture: FinalValidatedArchitecture,
    proposal_a: ArchitecturePosition,
    proposal_b: ArchitecturePosition,
    negotiation_rounds: int,
    message: str,
) -> PlanEvent:
    return PlanEvent(
        EventType.COMPLETE,
        {
            "stage": DualPlanStage.COMPLETE.value,
            "progress": 100,
            "message": message,
            "architecture": final_to_dict(architecture),
            "proposalA": position_to_dict(proposal_a),
            "proposalB": position_to_dict(proposal_b),
            "negotiationRounds": negotiation_rounds,
        },
    )


def escalation_event(escalation: EscalationData, percent: int, message: str) -> PlanEvent:
    return PlanEvent(
        EventType.ESCALATION,
        {
            "stage": DualPlanStage.ESCALATED.value,
            "progress": percent,
            "message": message,
            "escalation": escalation_to_dict(escalation),
        },
    )


def error_event(message: str, percent: int, kind: str | None = None) -> PlanEvent:
    data: dict[str, Any] = {
        "stage": DualPlanStage.ERROR.value,
        "progress": percent,
        "message": message,
        "error": message,
    }
    if kind:
        data["errorKind"] = kind
    return PlanEvent(EventType.ERROR, data)


# --- Typed messages (client side) -----------------------------------------

@dataclass
class ProgressMessage:
    progress: DualPlanProgress


@dataclass
class CompleteMessage:
    architecture: FinalValidatedArchitecture
    proposal_a: ArchitecturePosition | None
    proposal_b: ArchitecturePosition | None
    negotiation_rounds: int
    message: str


@dataclass
class EscalationMessage:
    escalation: EscalationData
    percent: int
    message: str


@dataclass
class ErrorMessage:
    message: str
    error: str
    kind: str | None = None


PlanMessage = ProgressMessage | CompleteMessage | EscalationMessage | ErrorMessage


def decode_event(event: PlanEvent) -> PlanMessage:
    """Typed view of an event.

    Raises:
        KeyError / TypeError / ValueError: If the payload is incomplete.
    """
    data = event.data
    if event.type is EventType.PROGRESS:
        return ProgressMessage(progress_from_dict(data))
    if event.type is EventType.COMPLETE:
        a, b = data.get("proposalA"), data.get("proposalB")
        return CompleteMessage(
            architecture=final_from_dict(data["architecture"]),
            proposal_a=position_from_dict(a) if isinstance(a, dict) else None,
            proposal_b=position_from_dict(b) if isinstance(b, dict) else None,
            negotiation_rounds=int(data.get("negotiationRounds") or 0),
            message=str(data.get("message", "")),
        )
    if event.type is EventType.ESCALATION:
        return EscalationMessage(
            escalation=escalation_from_dict(data["escalation"]),
            percent=int(data.get("progress", 0)),
            message=str(data.get("message", "")),
        )
    message = str(data.get("message", ""))
    return ErrorMessage(message=message, error=str(data.get("error") or message), kind=data.get("errorKind"))


def parse_frame(raw: str | bytes) -> PlanMessage | None:
    """Decode one wire frame; None when it is malformed or partial."""
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ValueError("frame is not {type, data}")
        return decode_event(PlanEvent(EventType(payload["type"]), payload["data"]))
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Dropping malformed frame: %s", exc)
        return None


class EventStream:
    """Ordered, single-consumer channel for one session.

    Events published before the consumer attaches are buffered. The stream
    closes itself right after a terminal event; publishing afterwards raises.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[PlanEvent | None] = asyncio.Queue()
        self._closed = False
        self._consumer_attached = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: PlanEvent) -> None:
        if self._closed:
            raise StreamClosedError(f"Stream for session {self.session_id} is closed")
        self._queue.put_nowait(event)
        if event.is_terminal:
            self.close()

    def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        logger.debug("Event stream closed for session %s", self.session_id)

    def events(self) -> AsyncIterator[PlanEvent]:
        """Attach the single consumer.

        Raises:
            RuntimeError: If a consumer is already attached.
        """
        if self._consumer_attached:
            raise RuntimeError(f"Stream for session {self.session_id} already has a consumer")
        self._consumer_attached = True
        return self._drain()

    async def _drain(self) -> AsyncIterator[PlanEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
