"""
DiscoveryListener tests: announcements, bootstrap and stream recovery.
"""

import pytest
import asyncio

from match_keeper.discovery import DiscoveryListener
from match_keeper.events import MATCH_DISCOVERED
from match_keeper.exceptions import TransientLedgerError


@pytest.fixture
def listener(ledger, registry, event_bus, clock) -> DiscoveryListener:
    return DiscoveryListener(ledger, registry, event_bus, clock=clock, read_timeout=0.2, resubscribe_delay=0.01)


@pytest.mark.unit
class TestDiscoveryListener:

    @pytest.mark.asyncio
    async def test_new_match_uses_ledger_deadline(self, listener, ledger, registry, announce, rs, recorded_events):
        ledger.round_states["0xm"] = rs(1030.0, round_index=1)

        assert await listener.handle_match_created(announce("0xm")) is True

        match = registry.get("0xm")
        assert match.round_deadline == 1030.0
        assert match.round_index == 1
        assert match.discovered_at == 1000.0
        assert [e.type for e in recorded_events] == [MATCH_DISCOVERED]
        assert recorded_events[0].data["deadline_known"] is True

    @pytest.mark.asyncio
    async def test_failed_read_tracks_with_immediate_deadline(self, listener, ledger, registry, announce, recorded_events):
        ledger.read_failures["0xm"] = 1

        assert await listener.handle_match_created(announce("0xm")) is True

        match = registry.get("0xm")
        assert match.round_deadline == 1000.0
        assert match.round_index is None
        assert recorded_events[0].data["deadline_known"] is False

    @pytest.mark.asyncio
    async def test_repeated_announcement_is_ignored(self, listener, ledger, registry, announce, rs):
        ledger.round_states["0xm"] = rs(1030.0)
        await listener.handle_match_created(announce("0xm"))
        registry.update("0xm", lambda m: m.begin_settlement("a1"))

        assert await listener.handle_match_created(announce("0xm")) is False
        assert registry.get("0xm").last_settlement_attempt_id == "a1"
        assert ledger.read_calls["0xm"] == 1

    @pytest.mark.asyncio
    async def test_retired_match_is_not_rediscovered(self, listener, ledger, registry, announce, rs):
        ledger.round_states["0xm"] = rs(1030.0)
        await listener.handle_match_created(announce("0xm"))
        registry.evict("0xm")

        assert await listener.handle_match_created(announce("0xm")) is False
        assert "0xm" not in registry

    @pytest.mark.asyncio
    async def test_bootstrap_inserts_open_matches(self, listener, ledger, registry, announce, rs):
        ledger.open_matches = [announce("0x1"), announce("0x2"), announce("0x1")]
        ledger.round_states["0x1"] = rs(1010.0)
        ledger.round_states["0x2"] = rs(1020.0)

        assert await listener.bootstrap() == 2
        assert len(registry) == 2
        assert listener.discovered_count == 2

    @pytest.mark.asyncio
    async def test_bootstrap_failure_is_not_fatal(self, listener, ledger, registry):
        async def broken():
            raise TransientLedgerError("log query failed")

        ledger.list_open_matches = broken
        assert await listener.bootstrap() == 0
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_run_resubscribes_after_stream_error(self, listener, ledger, registry, announce, rs, until):
        ledger.round_states["0x1"] = rs(1010.0)
        ledger.round_states["0x2"] = rs(1020.0)
        ledger.announcements.put_nowait(announce("0x1"))
        ledger.announcements.put_nowait(TransientLedgerError("filter expired"))
        ledger.announcements.put_nowait(announce("0x2"))

        task = asyncio.create_task(listener.run())
        try:
            await until(lambda: "0x2" in registry)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert "0x1" in registry
        assert task.cancelled()
