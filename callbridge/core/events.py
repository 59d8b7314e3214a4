"""Call states and the events fanned out to observers."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum


class CallState(str, Enum):
    """Lifecycle state of a bridged call."""

    INITIATED = "INITIATED"
    RINGING = "RINGING"
    ANSWERED = "ANSWERED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({CallState.COMPLETED, CallState.FAILED})


class Speaker(str, Enum):
    """Who produced a transcript line."""

    AGENT = "agent"
    USER = "user"

    @classmethod
    def from_role(cls, role: str | None) -> Speaker:
        """Map a speech provider role to a speaker (anything but agent is the caller)."""
        if role and role.strip().lower() in ("agent", "assistant"):
            return cls.AGENT
        return cls.USER


# Twilio CallStatus values
TELEPHONY_STATUS_MAP: dict[str, CallState] = {
    "queued": CallState.INITIATED,
    "initiated": CallState.INITIATED,
    "ringing": CallState.RINGING,
    "answered": CallState.ANSWERED,
    "in-progress": CallState.IN_PROGRESS,
    "completed": CallState.COMPLETED,
    "busy": CallState.FAILED,
    "failed": CallState.FAILED,
    "no-answer": CallState.FAILED,
    "canceled": CallState.FAILED,
}


# Speech event kinds the bridge acts on
TRANSCRIPT_EVENT = "transcript"
ERROR_EVENT = "error"


def map_telephony_status(status: str) -> CallState | None:
    """Map a telephony status string to a call state (None if unknown)."""
    return TELEPHONY_STATUS_MAP.get(status.strip().lower())


def _dumps(payload: dict[str, str]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    """A transcript line produced by the speech session."""

    call_id: str
    speaker: Speaker
    text: str

    def to_json(self) -> str:
        return _dumps({"type": "transcript", "speaker": self.speaker.value, "text": self.text})


@dataclass(frozen=True, slots=True)
class StatusEvent:
    """A call status transition."""

    call_id: str
    status: CallState
    from_number: str = ""
    to_number: str = ""

    def to_json(self) -> str:
        return _dumps(
            {
                "type": "status",
                "sid": self.call_id,
                "status": self.status.value,
                "from": self.from_number,
                "to": self.to_number,
            }
        )


BridgeEvent = TranscriptEvent | StatusEvent
