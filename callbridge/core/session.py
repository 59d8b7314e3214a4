"""Call session state machine.

One CallSession exists per telephony call leg. It is the only writer of that
call's status and transcript events, so observers see them in the order they
happened.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from callbridge.core.broadcast import EventBroadcaster
from callbridge.core.events import (
    CallState,
    Speaker,
    StatusEvent,
    TranscriptEvent,
    map_telephony_status,
)
from callbridge.logging_config import get_logger
from callbridge.observability.metrics import TRANSCRIPTS_TOTAL

if TYPE_CHECKING:
    from callbridge.core.relay import AudioRelay

logger: Any = get_logger(__name__)

# Legal transitions; terminal states have none
TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.INITIATED: frozenset({CallState.IN_PROGRESS, CallState.FAILED}),
    CallState.IN_PROGRESS: frozenset(
        {CallState.RINGING, CallState.COMPLETED, CallState.FAILED}
    ),
    CallState.RINGING: frozenset(
        {CallState.IN_PROGRESS, CallState.COMPLETED, CallState.FAILED}
    ),
    CallState.ANSWERED: frozenset(
        {CallState.IN_PROGRESS, CallState.COMPLETED, CallState.FAILED}
    ),
    CallState.COMPLETED: frozenset(),
    CallState.FAILED: frozenset(),
}


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class CallSession:
    """Lifecycle of one telephony call bridged to one speech session.

    ``call_id`` is the telephony identifier; ``ai_session_id`` is filled in
    once the speech session exists. The session owns the running relay until
    it reaches a terminal state.
    """

    call_id: str
    broadcaster: EventBroadcaster = field(repr=False)
    stream_sid: str = ""
    from_number: str = ""
    to_number: str = ""
    ai_session_id: str | None = None
    state: CallState = CallState.INITIATED
    created_at: datetime = field(default_factory=_now)
    last_event_at: datetime = field(default_factory=_now)
    ended_at: datetime | None = field(default=None, init=False)
    transcript_count: int = field(default=0, init=False)

    _relay: AudioRelay | None = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or _now()
        return (end - self.created_at).total_seconds()

    @property
    def relay_stats(self) -> dict[str, int] | None:
        """Counters of the running relay, if one is attached."""
        return self._relay.stats.to_dict() if self._relay is not None else None

    @property
    def idle_seconds(self) -> float:
        """Seconds since the last status change or transcript."""
        return (_now() - self.last_event_at).total_seconds()

    def status_event(self) -> StatusEvent:
        return StatusEvent(
            call_id=self.call_id,
            status=self.state,
            from_number=self.from_number,
            to_number=self.to_number,
        )

    async def announce(self) -> None:
        """Publish the current state (used once when the session is admitted)."""
        async with self._lock:
            await self.broadcaster.publish(self.status_event())

    def attach_relay(self, relay: AudioRelay) -> None:
        """Hand the running relay to this session.

        A relay attached to an already finished session is stopped at once.
        """
        if self.is_terminal:
            relay.stop(reason=f"session already {self.state.value}")
            return
        self._relay = relay

    async def transition(self, target: CallState, *, reason: str = "") -> bool:
        """Move to ``target`` and publish one StatusEvent.

        Events for a finished session, self-transitions, and illegal moves are
        logged and dropped.

        Returns:
            True if the state changed.
        """
        async with self._lock:
            current = self.state
            if current.is_terminal:
                logger.info(
                    f"Call {self.call_id} is {current.value}; dropping {target.value}"
                    + (f" ({reason})" if reason else "")
                )
                return False
            if target == current:
                return False
            if target not in TRANSITIONS[current]:
                logger.warning(
                    f"Call {self.call_id}: illegal transition {current.value} -> {target.value}"
                )
                return False

            self.state = target
            self.last_event_at = _now()
            logger.info(
                f"Call {self.call_id}: {current.value} -> {target.value}"
                + (f" ({reason})" if reason else "")
            )

            if target.is_terminal:
                self.ended_at = self.last_event_at
                relay, self._relay = self._relay, None
                if relay is not None:
                    relay.stop(reason=reason or target.value.lower())

            await self.broadcaster.publish(self.status_event())
            return True

    async def mark_in_progress(self, ai_session_id: str) -> bool:
        """Speech session is ready."""
        self.ai_session_id = ai_session_id
        return await self.transition(CallState.IN_PROGRESS, reason=f"speech session {ai_session_id}")

    async def complete(self, reason: str = "clean close") -> bool:
        return await self.transition(CallState.COMPLETED, reason=reason)

    async def fail(self, reason: str = "error") -> bool:
        return await self.transition(CallState.FAILED, reason=reason)

    async def apply_telephony_status(
        self,
        status: str,
        *,
        from_number: str = "",
        to_number: str = "",
    ) -> bool:
        """Apply a status reported by the telephony platform.

        ``answered`` resumes IN_PROGRESS; ``initiated``/``queued`` carry no
        information for a session that already exists.
        """
        target = map_telephony_status(status)
        if target is None:
            logger.warning(f"Call {self.call_id}: unknown telephony status {status!r}")
            return False

        async with self._lock:
            # A finished session keeps the addresses it ended with
            if not self.is_terminal:
                if from_number:
                    self.from_number = from_number
                if to_number:
                    self.to_number = to_number

        if target == CallState.INITIATED:
            logger.debug(f"Call {self.call_id}: ignoring telephony status {status!r}")
            return False
        if target == CallState.ANSWERED:
            target = CallState.IN_PROGRESS

        return await self.transition(target, reason=f"telephony status {status}")

    async def record_transcript(self, speaker: Speaker, text: str) -> bool:
        """Publish a transcript line for this call.

        Returns:
            False if the text is empty or the session has finished.
        """
        if not text or not text.strip():
            return False

        async with self._lock:
            if self.is_terminal:
                logger.debug(f"Call {self.call_id} is {self.state.value}; dropping transcript")
                return False
            self.last_event_at = _now()
            self.transcript_count += 1
            TRANSCRIPTS_TOTAL.labels(speaker=speaker.value).inc()
            await self.broadcaster.publish(
                TranscriptEvent(call_id=self.call_id, speaker=speaker, text=text)
            )
            return True
