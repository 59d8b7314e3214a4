"""Bridge supervisor: admits media streams and runs one bridge per call.

Sessions are keyed by the telephony call identifier. A call id can only have
one live (non-terminal) session; once a session finishes the id is released
and may be admitted again.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from callbridge.config import Settings, get_settings
from callbridge.core.broadcast import EventBroadcaster
from callbridge.core.events import CallState, StatusEvent, map_telephony_status
from callbridge.core.relay import AudioRelay, TelephonyTransport
from callbridge.core.session import CallSession
from callbridge.exceptions import DuplicateCallError, SpeechSessionError
from callbridge.logging_config import get_logger, mask_phone
from callbridge.observability.metrics import (
    ACTIVE_CALLS,
    ADMISSION_REJECTIONS,
    SPEECH_SESSION_LATENCY,
    record_call_metrics,
)

if TYPE_CHECKING:
    from callbridge.services.speech.protocol import SpeechAIService, SpeechTransport
    from callbridge.services.telephony.twilio import TwilioCallInfo

logger: Any = get_logger(__name__)


class BridgeSupervisor:
    """Owns the live call sessions and their relays."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        speech: SpeechAIService,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._broadcaster = broadcaster
        self._speech = speech
        self._active: dict[str, CallSession] = {}
        self._finished: OrderedDict[str, CallSession] = OrderedDict()
        self._lock = asyncio.Lock()

    async def admit(
        self,
        call_id: str,
        *,
        stream_sid: str = "",
        from_number: str = "",
        to_number: str = "",
    ) -> CallSession:
        """Register a new session for an inbound media stream.

        Raises:
            DuplicateCallError: If a live session already exists for call_id.
                The caller must close the connection without side effects.
        """
        async with self._lock:
            existing = self._active.get(call_id)
            if existing is not None and not existing.is_terminal:
                ADMISSION_REJECTIONS.labels(reason="duplicate").inc()
                logger.warning(f"Rejecting duplicate media stream for call {call_id}")
                raise DuplicateCallError(call_id)

            session = CallSession(
                call_id=call_id,
                broadcaster=self._broadcaster,
                stream_sid=stream_sid,
                from_number=from_number,
                to_number=to_number,
            )
            self._active[call_id] = session
            self._finished.pop(call_id, None)
            active = len(self._active)

        ACTIVE_CALLS.set(active)
        with logger.contextualize(call_id=call_id):
            logger.info(
                f"Admitted call {call_id} (stream {stream_sid or '-'}, "
                f"from {mask_phone(from_number)}, active: {active})"
            )
            await session.announce()
        return session

    async def bridge(self, session: CallSession, telephony: TelephonyTransport) -> CallState:
        """Open the speech session and relay frames until the call ends.

        Finalizes the session exactly once and releases its call id.

        Returns:
            The terminal state of the session.
        """
        with logger.contextualize(call_id=session.call_id):
            return await self._run_bridge(session, telephony)

    async def _run_bridge(self, session: CallSession, telephony: TelephonyTransport) -> CallState:
        speech_transport: SpeechTransport | None = None
        try:
            try:
                started = time.perf_counter()
                speech_session = await asyncio.wait_for(
                    self._speech.create_session(session.call_id),
                    timeout=self._settings.speech_session_timeout_seconds,
                )
                speech_transport = await asyncio.wait_for(
                    self._speech.connect(speech_session),
                    timeout=self._settings.speech_session_timeout_seconds,
                )
                SPEECH_SESSION_LATENCY.observe(time.perf_counter() - started)
            except SpeechSessionError as e:
                logger.error(f"Speech session unavailable for call {session.call_id}: {e}")
                await session.fail(reason="speech session unavailable")
                return session.state
            except TimeoutError:
                logger.error(f"Speech session timed out for call {session.call_id}")
                await session.fail(reason="speech session timeout")
                return session.state

            # A status webhook may already have moved the call along
            await session.mark_in_progress(speech_session.session_id)
            if session.is_terminal:
                return session.state

            relay = AudioRelay(session, telephony, speech_transport)
            session.attach_relay(relay)
            result = await relay.run()

            if result.clean:
                await session.complete(reason=result.reason)
            else:
                await session.fail(reason=result.reason)
            return session.state

        finally:
            if not session.is_terminal:
                await session.fail(reason="bridge aborted")
            if speech_transport is not None:
                await speech_transport.close()
            await self._release(session)

    async def _release(self, session: CallSession) -> None:
        """Forget a finished session so its call id can be admitted again."""
        async with self._lock:
            if self._active.get(session.call_id) is session:
                del self._active[session.call_id]
            retention = self._settings.finished_call_retention
            if retention > 0:
                self._finished[session.call_id] = session
                self._finished.move_to_end(session.call_id)
                while len(self._finished) > retention:
                    self._finished.popitem(last=False)
            active = len(self._active)

        ACTIVE_CALLS.set(active)
        record_call_metrics(session.state.value.lower(), session.duration_seconds)
        logger.info(
            f"Released call {session.call_id} as {session.state.value} "
            f"after {session.duration_seconds:.1f}s (active: {active})"
        )

    async def ingest_status(self, call_info: TwilioCallInfo) -> bool:
        """Apply a telephony status webhook.

        Known calls go through their session's state machine; unknown calls
        are published as a StatusEvent directly.

        Returns:
            True if a StatusEvent was published.
        """
        async with self._lock:
            session = self._active.get(call_info.call_sid) or self._finished.get(
                call_info.call_sid
            )

        if session is not None:
            return await session.apply_telephony_status(
                call_info.status,
                from_number=call_info.from_number,
                to_number=call_info.to_number,
            )

        status = map_telephony_status(call_info.status)
        if status is None:
            logger.warning(
                f"Dropping unknown status {call_info.status!r} for call {call_info.call_sid}"
            )
            return False

        await self._broadcaster.publish(
            StatusEvent(
                call_id=call_info.call_sid,
                status=status,
                from_number=call_info.from_number,
                to_number=call_info.to_number,
            )
        )
        return True

    def snapshot(self) -> list[dict[str, Any]]:
        """Summary of live sessions."""
        return [
            {
                "call_id": session.call_id,
                "ai_session_id": session.ai_session_id,
                "state": session.state.value,
                "idle_seconds": round(session.idle_seconds, 1),
                "transcripts": session.transcript_count,
                "relay": session.relay_stats,
            }
            for session in list(self._active.values())
        ]

    async def close_all(self) -> None:
        """Fail every live session (for shutdown)."""
        async with self._lock:
            sessions = list(self._active.values())
        for session in sessions:
            try:
                await session.fail(reason="server shutdown")
            except Exception as e:
                logger.error(f"Error closing call {session.call_id}: {e}")

    @property
    def active_count(self) -> int:
        """Number of live sessions."""
        return len(self._active)
