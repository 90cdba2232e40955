"""Auth flow flag ownership, staleness and the broadcast channel."""

from datetime import datetime, timedelta, timezone

import pytest

from lostfound.service.coordination import (
    AUTH_FLOW_END,
    AUTH_FLOW_START,
    FLOW_FLAG_KEY,
    AuthFlowFlag,
    ChannelMessage,
    CrossTabCoordinator,
    LocalBroadcastChannel,
    LocalFlagStore,
)
from lostfound.service.navigation import FlowKind


@pytest.fixture
def flags():
    return LocalFlagStore()


@pytest.fixture
def channel():
    return LocalBroadcastChannel()


class TestFlag:
    async def test_announce_is_visible_to_siblings_only(self, flags, channel):
        tab_a = CrossTabCoordinator("a", flags, channel)
        tab_b = CrossTabCoordinator("b", flags, channel)

        await tab_a.announce(FlowKind.RECOVERY)

        assert await tab_a.active_flow() is None
        assert (await tab_a.active_flow(exclude_self=False)).origin_tab == "a"
        seen = await tab_b.active_flow()
        assert seen.flow == FlowKind.RECOVERY

    async def test_retract_only_removes_own_flag(self, flags, channel):
        tab_a = CrossTabCoordinator("a", flags, channel)
        tab_b = CrossTabCoordinator("b", flags, channel)
        await tab_a.announce(FlowKind.RECOVERY)
        await tab_b.announce(FlowKind.EMAIL_VERIFY)

        assert not await tab_a.retract()
        flag = await tab_a.active_flow()
        assert flag.origin_tab == "b"

        assert await tab_b.retract()
        assert await tab_a.active_flow() is None
        assert not await tab_b.retract()

    async def test_stale_flag_is_dropped(self, flags, channel):
        tab_b = CrossTabCoordinator("b", flags, channel, stale_after=60)
        old = AuthFlowFlag(
            flow=FlowKind.RECOVERY,
            origin_tab="a",
            announced_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        await flags.set(FLOW_FLAG_KEY, old.to_dict(), 900)

        assert await tab_b.active_flow() is None
        assert await flags.get(FLOW_FLAG_KEY) is None

    async def test_malformed_flag_is_dropped(self, flags, channel):
        tab_b = CrossTabCoordinator("b", flags, channel)
        await flags.set(FLOW_FLAG_KEY, {"flow": "teleport"}, 900)

        assert await tab_b.active_flow() is None
        assert await flags.get(FLOW_FLAG_KEY) is None

    async def test_hold_retracts_when_block_fails(self, flags, channel):
        tab_a = CrossTabCoordinator("a", flags, channel)
        with pytest.raises(RuntimeError):
            async with tab_a.hold(FlowKind.RECOVERY):
                assert tab_a.owned_flow == FlowKind.RECOVERY
                raise RuntimeError("reset form crashed")

        assert tab_a.owned_flow is None
        assert await flags.get(FLOW_FLAG_KEY) is None

    def test_flag_round_trip_handles_naive_timestamps(self):
        flag = AuthFlowFlag.from_dict(
            {"flow": "recovery", "origin_tab": "a", "announced_at": "2025-01-06T09:00:00"}
        )
        assert flag.announced_at.tzinfo is timezone.utc
        assert AuthFlowFlag.from_dict({"origin_tab": "a"}) is None


class TestChannel:
    async def test_messages_skip_sender(self, flags, channel):
        tab_a = CrossTabCoordinator("a", flags, channel)
        tab_b = CrossTabCoordinator("b", flags, channel)
        received = {"a": [], "b": []}

        async def _record_a(message):
            received["a"].append(message)

        async def _record_b(message):
            received["b"].append(message)

        tab_a.subscribe(_record_a)
        tab_b.subscribe(_record_b)

        await tab_a.announce(FlowKind.RECOVERY)
        await tab_a.retract()

        assert received["a"] == []
        assert [m.kind for m in received["b"]] == [AUTH_FLOW_START, AUTH_FLOW_END]
        assert received["b"][0].flow == FlowKind.RECOVERY

    async def test_failing_handler_does_not_block_others(self, channel):
        delivered = []

        async def _broken(message):
            raise ValueError("bad tab")

        async def _ok(message):
            delivered.append(message)

        channel.subscribe("b", _broken)
        channel.subscribe("c", _ok)
        await channel.post(ChannelMessage(kind=AUTH_FLOW_START, origin_tab="a"))

        assert len(delivered) == 1

    async def test_unsubscribe(self, channel):
        delivered = []

        async def _ok(message):
            delivered.append(message)

        unsubscribe = channel.subscribe("b", _ok)
        unsubscribe()
        await channel.post(ChannelMessage(kind=AUTH_FLOW_END, origin_tab="a"))

        assert delivered == []

    def test_message_parsing(self):
        parsed = ChannelMessage.from_dict({"kind": AUTH_FLOW_START, "origin_tab": "a", "flow": "recovery"})
        assert parsed == ChannelMessage(AUTH_FLOW_START, "a", FlowKind.RECOVERY)
        assert ChannelMessage.from_dict({"kind": "HELLO", "origin_tab": "a"}) is None
        assert ChannelMessage.from_dict({"kind": AUTH_FLOW_END, "origin_tab": "a", "flow": "x"}) is None
