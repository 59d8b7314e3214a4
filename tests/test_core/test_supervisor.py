"""Tests for the bridge supervisor."""

from __future__ import annotations

import asyncio

import pytest
from loguru import logger

from callbridge.core.events import CallState, StatusEvent
from callbridge.core.supervisor import BridgeSupervisor
from callbridge.exceptions import DuplicateCallError
from callbridge.services.telephony.twilio import TwilioCallInfo


def _statuses(broadcaster, call_id: str = "CA123") -> list[str]:
    return [
        e.status.value
        for e in broadcaster.events
        if isinstance(e, StatusEvent) and e.call_id == call_id
    ]


class TestAdmission:
    """Tests for admitting media streams."""

    @pytest.mark.asyncio
    async def test_admit_creates_initiated_session(
        self, broadcaster, speech_factory, settings
    ) -> None:
        """Test admission creates and announces an INITIATED session."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        session = await supervisor.admit("CA123", stream_sid="MZ1", from_number="+15551110000")

        assert session.state == CallState.INITIATED
        assert [s["call_id"] for s in supervisor.snapshot()] == ["CA123"]
        assert supervisor.active_count == 1
        assert _statuses(broadcaster) == ["INITIATED"]

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_admission(
        self, broadcaster, speech_factory, settings
    ) -> None:
        """Test only one of two racing admissions wins."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        results = await asyncio.gather(
            supervisor.admit("CA123"),
            supervisor.admit("CA123"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, DuplicateCallError)]
        assert len(errors) == 1
        assert errors[0].call_id == "CA123"
        assert supervisor.active_count == 1
        assert _statuses(broadcaster) == ["INITIATED"]

    @pytest.mark.asyncio
    async def test_call_id_reusable_after_finish(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test a finished call id can be admitted again."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        first = await supervisor.admit("CA123")
        await supervisor.bridge(first, telephony_factory([frames.stop()]))

        second = await supervisor.admit("CA123")

        assert second is not first
        assert second.state == CallState.INITIATED


class TestBridge:
    """Tests for running a bridge."""

    @pytest.mark.asyncio
    async def test_clean_call_lifecycle(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test a clean call runs INITIATED to COMPLETED."""
        speech = speech_factory()
        supervisor = BridgeSupervisor(broadcaster, speech, settings=settings)
        telephony = telephony_factory([frames.media("AAA="), frames.stop()])

        session = await supervisor.admit("CA123")
        state = await supervisor.bridge(session, telephony)

        assert state == CallState.COMPLETED
        assert session.ai_session_id == "US456"
        assert _statuses(broadcaster) == ["INITIATED", "IN_PROGRESS", "COMPLETED"]
        assert speech.transports[0].sent == [b"\x00\x00"]
        assert speech.transports[0].closed
        assert supervisor.active_count == 0
        assert supervisor.snapshot() == []

    @pytest.mark.asyncio
    async def test_speech_session_failure(
        self, broadcaster, failing_speech_service, telephony_factory, frames, settings
    ) -> None:
        """Test the call fails when speech cannot start."""
        supervisor = BridgeSupervisor(broadcaster, failing_speech_service, settings=settings)
        telephony = telephony_factory([frames.media("AAA=")])

        session = await supervisor.admit("CA123")
        state = await supervisor.bridge(session, telephony)

        assert state == CallState.FAILED
        assert _statuses(broadcaster) == ["INITIATED", "FAILED"]
        assert supervisor.active_count == 0

    @pytest.mark.asyncio
    async def test_speech_session_timeout(
        self, broadcaster, speech_factory, telephony_factory, settings_factory
    ) -> None:
        """Test a slow speech service fails the call."""
        settings = settings_factory(speech_session_timeout_seconds=0.01)
        supervisor = BridgeSupervisor(broadcaster, speech_factory(delay=1.0), settings=settings)

        session = await supervisor.admit("CA123")
        state = await supervisor.bridge(session, telephony_factory(close_clean=None))

        assert state == CallState.FAILED
        assert _statuses(broadcaster) == ["INITIATED", "FAILED"]

    @pytest.mark.asyncio
    async def test_abrupt_disconnect_fails_call(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test an abrupt telephony drop fails the call."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        session = await supervisor.admit("CA123")
        state = await supervisor.bridge(
            session, telephony_factory([frames.media("AAA=")], close_clean=False)
        )

        assert state == CallState.FAILED
        assert _statuses(broadcaster) == ["INITIATED", "IN_PROGRESS", "FAILED"]

    @pytest.mark.asyncio
    async def test_completed_webhook_stops_running_bridge(
        self, broadcaster, speech_factory, telephony_factory, settings
    ) -> None:
        """Test a completed webhook ends a live bridge."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        session = await supervisor.admit("CA123")
        task = asyncio.create_task(supervisor.bridge(session, telephony_factory(close_clean=None)))
        while session.state != CallState.IN_PROGRESS:
            await asyncio.sleep(0)

        published = await supervisor.ingest_status(
            TwilioCallInfo(
                call_sid="CA123",
                from_number="+15551110000",
                to_number="+15552220000",
                status="completed",
            )
        )
        state = await asyncio.wait_for(task, timeout=1.0)

        assert published
        assert state == CallState.COMPLETED
        assert _statuses(broadcaster) == ["INITIATED", "IN_PROGRESS", "COMPLETED"]
        assert supervisor.active_count == 0

    @pytest.mark.asyncio
    async def test_bridge_logs_carry_call_id(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test log records written while bridging are tagged with the call id."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)
        records: list[dict] = []
        handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
        try:
            session = await supervisor.admit("CA123")
            telephony = telephony_factory([frames.media("AAA="), frames.stop()])
            await supervisor.bridge(session, telephony)
        finally:
            logger.remove(handler_id)

        prefixes = ("Admitted call CA123", "Relay for call CA123", "Released call CA123")
        tagged = {
            prefix: r["extra"].get("call_id")
            for r in records
            for prefix in prefixes
            if r["message"].startswith(prefix)
        }
        assert tagged == dict.fromkeys(prefixes, "CA123")


class TestStatusWebhooks:
    """Tests for ingesting telephony status webhooks."""

    @pytest.mark.asyncio
    async def test_unknown_call_published_directly(
        self, broadcaster, speech_factory, settings
    ) -> None:
        """Test webhooks for unknown calls are published as is."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        published = await supervisor.ingest_status(
            TwilioCallInfo(
                call_sid="CA999",
                from_number="+15551110000",
                to_number="+15552220000",
                status="ringing",
            )
        )

        assert published
        assert broadcaster.events == [
            StatusEvent(
                call_id="CA999",
                status=CallState.RINGING,
                from_number="+15551110000",
                to_number="+15552220000",
            )
        ]

    @pytest.mark.asyncio
    async def test_unknown_status_dropped(self, broadcaster, speech_factory, settings) -> None:
        """Test unknown statuses publish nothing."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        published = await supervisor.ingest_status(
            TwilioCallInfo(call_sid="CA999", from_number="", to_number="", status="teleported")
        )

        assert not published
        assert broadcaster.events == []

    @pytest.mark.asyncio
    async def test_late_webhook_for_finished_call_dropped(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test webhooks after the call ended are dropped."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)
        session = await supervisor.admit("CA123")
        await supervisor.bridge(session, telephony_factory([frames.stop()]))

        published = await supervisor.ingest_status(
            TwilioCallInfo(call_sid="CA123", from_number="", to_number="", status="completed")
        )

        assert not published
        assert _statuses(broadcaster) == ["INITIATED", "IN_PROGRESS", "COMPLETED"]

    @pytest.mark.asyncio
    async def test_finished_call_retention_is_bounded(
        self, broadcaster, speech_factory, telephony_factory, frames, settings_factory
    ) -> None:
        """Test only the newest finished calls are remembered."""
        settings = settings_factory(finished_call_retention=1)
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)

        for call_id in ("CA1", "CA2"):
            session = await supervisor.admit(call_id)
            await supervisor.bridge(session, telephony_factory([frames.stop()]))

        # CA1 has been forgotten, so its webhook is published as an unknown call
        published = await supervisor.ingest_status(
            TwilioCallInfo(call_sid="CA1", from_number="", to_number="", status="completed")
        )

        assert published
        assert _statuses(broadcaster, "CA1") == [
            "INITIATED",
            "IN_PROGRESS",
            "COMPLETED",
            "COMPLETED",
        ]


class TestShutdown:
    """Tests for supervisor shutdown and introspection."""

    @pytest.mark.asyncio
    async def test_snapshot(self, broadcaster, speech_factory, settings) -> None:
        """Test snapshot lists live sessions."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)
        await supervisor.admit("CA123")

        snapshot = supervisor.snapshot()

        assert len(snapshot) == 1
        assert snapshot[0]["call_id"] == "CA123"
        assert snapshot[0]["state"] == "INITIATED"
        assert snapshot[0]["ai_session_id"] is None

    @pytest.mark.asyncio
    async def test_snapshot_reports_relay_stats(
        self, broadcaster, speech_factory, telephony_factory, frames, settings
    ) -> None:
        """Test a bridged call's snapshot carries its relay counters."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)
        session = await supervisor.admit("CA123")
        telephony = telephony_factory([frames.media("AAA=")], close_clean=None)
        task = asyncio.create_task(supervisor.bridge(session, telephony))

        async def forwarded() -> None:
            while not (session.relay_stats or {}).get("frames_forwarded"):
                await asyncio.sleep(0)

        await asyncio.wait_for(forwarded(), timeout=1.0)
        relay = supervisor.snapshot()[0]["relay"]

        await supervisor.close_all()
        await asyncio.wait_for(task, timeout=1.0)

        assert relay["frames_forwarded"] == 1
        assert relay["bytes_forwarded"] == 2
        assert relay["parse_failures"] == 0

    @pytest.mark.asyncio
    async def test_close_all_fails_live_sessions(
        self, broadcaster, speech_factory, settings
    ) -> None:
        """Test shutdown fails every live session."""
        supervisor = BridgeSupervisor(broadcaster, speech_factory(), settings=settings)
        first = await supervisor.admit("CA1")
        second = await supervisor.admit("CA2")

        await supervisor.close_all()

        assert first.state == CallState.FAILED
        assert second.state == CallState.FAILED
        assert _statuses(broadcaster, "CA1") == ["INITIATED", "FAILED"]
