"""
Tests for the relay engine state machine

Tests cover:
- Join confirmation, peer notifications and capacity
- Verbatim relay and per-recipient failure handling
- Disconnect grace window, resume and final removal
- Identity takeover on reconnect
"""
import asyncio
import json

import pytest

from relay.config import RelayConfig
from relay.engine import REPLACED_CLOSE_CODE, UNREACHABLE_CLOSE_CODE, RelayEngine
from relay.errors import MessageTooLarge


def frame(message_type, **fields):
    return json.dumps({"type": message_type, **fields})


async def join(engine, transport, room_id="r1", **fields):
    connection_id = await engine.connect(transport)
    return await engine.dispatch(connection_id, frame("join", roomId=room_id, **fields))


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ===== Join =====

class TestJoin:
    @pytest.mark.asyncio
    async def test_first_member_gets_confirmation(self, engine, make_transport):
        a = make_transport()
        a_id = await join(engine, a)

        assert a.messages() == [{
            "type": "room_joined",
            "roomId": "r1",
            "isFirst": True,
            "userId": a_id,
            "peerCount": 1,
            "networkConfig": {"isLowBandwidth": True, "recommendedBitrate": 256000},
        }]

    @pytest.mark.asyncio
    async def test_network_hints_can_be_disabled(self, make_transport):
        engine = RelayEngine(RelayConfig(network_hints_enabled=False, room_backend="memory"))
        a = make_transport()
        await join(engine, a)
        assert "networkConfig" not in a.messages("room_joined")[0]

    @pytest.mark.asyncio
    async def test_second_member_notifies_existing_only(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        await join(engine, a)
        b_id = await join(engine, b)

        assert b.messages("room_joined")[0]["isFirst"] is False
        assert a.messages("user_joined") == [{"type": "user_joined", "userId": b_id}]
        assert b.messages("user_joined") == []

    @pytest.mark.asyncio
    async def test_full_room_is_rejected_without_state_change(self, engine, make_transport):
        a, b, c = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        c_id = await join(engine, c)

        assert c.messages() == [{"type": "error", "message": "room_full"}]
        assert engine.rooms.members("r1") == frozenset({a_id, b_id})
        assert engine.rooms.room_of(c_id) is None
        assert a.messages("user_joined") == [{"type": "user_joined", "userId": b_id}]

    @pytest.mark.asyncio
    async def test_join_same_room_again_reports_status(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        await engine.dispatch(a_id, frame("join", roomId="r1"))

        assert a.messages("room_status") == [{"type": "room_status", "roomId": "r1", "peerCount": 2}]
        assert len(b.messages()) == 1

    @pytest.mark.asyncio
    async def test_switching_rooms_leaves_previous_room(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        await engine.dispatch(a_id, frame("join", roomId="r2"))

        assert b.messages("peer_disconnected") == [{"type": "peer_disconnected", "userId": a_id, "temporary": False}]
        assert a.messages("room_joined")[-1]["roomId"] == "r2"
        assert a.messages("room_joined")[-1]["isFirst"] is True
        assert engine.rooms.room_of(a_id) == "r2"

    @pytest.mark.asyncio
    async def test_join_without_room_id_is_dropped(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        await engine.dispatch(a_id, frame("join"))
        await engine.dispatch(a_id, frame("join", roomId="   "))
        assert a.sent == []
        assert engine.rooms.room_count() == 0

    @pytest.mark.asyncio
    async def test_single_membership_holds_across_moves(self, make_transport):
        engine = RelayEngine(RelayConfig(room_capacity=3, room_backend="memory"))
        transports = [make_transport() for _ in range(3)]
        ids = [await engine.connect(t) for t in transports]
        for step, room_id in enumerate(["r1", "r2", "r1", "r3", "r2", "r1"]):
            connection_id = ids[step % 3]
            await engine.dispatch(connection_id, frame("join", roomId=room_id))
            for cid in ids:
                rooms = [rid for rid in ("r1", "r2", "r3") if cid in engine.rooms.members(rid)]
                assert len(rooms) <= 1
            for rid in ("r1", "r2", "r3"):
                assert engine.rooms.exists(rid) == bool(engine.rooms.members(rid))


# ===== Leave =====

class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_is_immediate_and_permanent(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        await engine.dispatch(a_id, frame("leave"))

        assert b.messages("peer_disconnected") == [{"type": "peer_disconnected", "userId": a_id, "temporary": False}]
        assert engine.rooms.members("r1") == frozenset({b_id})
        assert len(engine.grace) == 0

    @pytest.mark.asyncio
    async def test_last_leave_removes_room(self, engine, make_transport):
        a = make_transport()
        a_id = await join(engine, a)
        await engine.leave(a_id)
        await engine.leave(a_id)
        assert not engine.rooms.exists("r1")


# ===== Relay =====

class TestRelay:
    @pytest.mark.asyncio
    async def test_negotiation_is_relayed_verbatim_and_not_echoed(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        before = len(a.sent)

        for message_type in ("offer", "answer", "ice-candidate"):
            raw = json.dumps({"type": message_type, "roomId": "r1", "sdp": {"nested": [1, 2]}}, indent=1)
            await engine.dispatch(a_id, raw)
            assert b.sent[-1] == raw
        assert len(a.sent) == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("extra", [
        {"userId": 7},
        {"target": {"mid": "0"}},
        {"enabled": "maybe"},
        {"roomId": 1},
        {"signal": None, "from": ["x"]},
    ])
    async def test_negotiation_payload_fields_are_opaque(self, engine, make_transport, extra):
        """Field names the relay uses elsewhere do not affect negotiation frames"""
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)

        raw = json.dumps({"type": "offer", "sdp": "v=0", **extra})
        await engine.dispatch(a_id, raw)
        assert b.sent[-1] == raw

    @pytest.mark.asyncio
    async def test_camera_status_with_invalid_flag_is_dropped(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        await engine.dispatch(a_id, frame("camera-status", enabled="maybe"))
        assert b.messages("camera-status") == []

    @pytest.mark.asyncio
    async def test_relay_outside_room_is_dropped(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        assert await engine.relay(a_id, frame("offer")) == 0

    @pytest.mark.asyncio
    async def test_camera_status_carries_sender_identity(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        await engine.dispatch(a_id, frame("camera-status", enabled=False))

        assert b.messages("camera-status") == [{"type": "camera-status", "enabled": False, "userId": a_id}]
        assert a.messages("camera-status") == []

    @pytest.mark.asyncio
    async def test_unreachable_recipient_does_not_stop_fan_out(self, make_transport):
        engine = RelayEngine(RelayConfig(room_capacity=3, room_backend="memory"))
        a, b, c = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        await join(engine, c)
        b.fail_sends = True

        delivered = await engine.relay(a_id, frame("offer", sdp="x"))
        await settle()

        assert delivered == 1
        assert c.messages("offer") == [{"type": "offer", "sdp": "x"}]
        assert b.close_code == UNREACHABLE_CLOSE_CODE
        assert engine.registry.in_grace(b_id)
        assert {"type": "peer_disconnected", "userId": b_id, "temporary": True} in a.messages()
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_targeted_signal_reaches_only_target(self, engine, make_transport):
        a, b, outsider = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        outsider_id = await join(engine, outsider, room_id="r2")

        await engine.dispatch(a_id, frame("signal", target=b_id, signal={"sdp": "v=0"}))
        assert b.messages("signal") == [{"type": "signal", "from": a_id, "signal": {"sdp": "v=0"}}]

        assert await engine.signal(a_id, outsider_id, {"sdp": "v=0"}) is False
        assert outsider.messages("signal") == []


# ===== Ping and inbound validation =====

class TestInbound:
    @pytest.mark.asyncio
    async def test_ping_gets_exactly_one_pong(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await engine.connect(a)
        await engine.dispatch(a_id, frame("ping"))
        assert a.messages() == [{"type": "pong"}]

        await engine.dispatch(a_id, frame("join", roomId="r1"))
        await join(engine, b)
        await engine.dispatch(a_id, frame("ping"))
        assert len(a.messages("pong")) == 2
        assert b.messages("pong") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"roomId": "r1"}', '{"type": 5}'])
    async def test_malformed_messages_are_dropped(self, engine, make_transport, raw):
        a = make_transport()
        a_id = await engine.connect(a)
        assert await engine.dispatch(a_id, raw) == a_id
        assert a.sent == []
        assert a_id in engine.registry

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        await engine.dispatch(a_id, frame("telemetry", value=1))
        assert a.sent == []

    @pytest.mark.asyncio
    async def test_oversized_message_raises(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        with pytest.raises(MessageTooLarge):
            await engine.dispatch(a_id, frame("offer", sdp="x" * 2048))

    @pytest.mark.asyncio
    async def test_heartbeat_ack_marks_alive_and_opts_in(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        engine.registry.clear_alive(a_id)
        assert not engine.registry.heartbeats_enabled(a_id)

        await engine.dispatch(a_id, frame("heartbeat_ack"))
        assert engine.registry.is_alive(a_id)
        assert engine.registry.heartbeats_enabled(a_id)
        assert a.sent == []

    @pytest.mark.asyncio
    async def test_join_with_non_string_room_id_is_dropped(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        await engine.dispatch(a_id, json.dumps({"type": "join", "roomId": 1}))
        assert a.sent == []
        assert engine.rooms.room_count() == 0


# ===== Disconnect and reconnect grace =====

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_unjoined_disconnect_releases_connection(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        await engine.handle_disconnect(a_id, a)
        assert a_id not in engine.registry

    @pytest.mark.asyncio
    async def test_disconnect_enters_grace_and_notifies_once(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        a.open = False

        await engine.handle_disconnect(a_id, a)
        await engine.handle_disconnect(a_id, a)

        assert b.messages("peer_disconnected") == [{"type": "peer_disconnected", "userId": a_id, "temporary": True}]
        assert a_id in engine.rooms.members("r1")
        assert engine.grace.pending_room(a_id) == "r1"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_rejoin_within_grace_restores_membership(self, engine, make_transport):
        a, b, a2 = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        a.open = False
        await engine.handle_disconnect(a_id, a)

        temp_id = await engine.connect(a2)
        resumed_id = await engine.dispatch(temp_id, frame("join", roomId="r1", userId=a_id))

        assert resumed_id == a_id
        assert temp_id not in engine.registry
        assert engine.registry.lookup(a_id) is a2
        assert a_id not in engine.grace
        assert engine.rooms.members("r1") == frozenset({a_id, b_id})
        assert a2.messages("room_joined")[0]["userId"] == a_id
        assert len(b.messages("user_joined")) == 0
        assert b.messages("room_status") == [
            {"type": "room_status", "roomId": "r1", "peerCount": 2, "userId": a_id, "reconnected": True}
        ]

    @pytest.mark.asyncio
    async def test_sole_member_rejoin_keeps_room(self, engine, make_transport):
        a, a2 = make_transport(), make_transport()
        a_id = await join(engine, a)
        a.open = False
        await engine.handle_disconnect(a_id, a)
        assert engine.rooms.exists("r1")

        temp_id = await engine.connect(a2)
        await engine.dispatch(temp_id, frame("join", roomId="r1", userId=a_id))
        assert engine.rooms.members("r1") == frozenset({a_id})
        assert a2.messages("room_joined")[0]["isFirst"] is True

    @pytest.mark.asyncio
    async def test_grace_expiry_removes_member_and_notifies_once(self, make_transport):
        engine = RelayEngine(RelayConfig(reconnect_grace_seconds=0.02, room_backend="memory"))
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)
        a.open = False
        await engine.handle_disconnect(a_id, a)

        await asyncio.sleep(0.08)
        assert b.messages("peer_disconnected") == [
            {"type": "peer_disconnected", "userId": a_id, "temporary": True},
            {"type": "peer_disconnected", "userId": a_id, "temporary": False},
        ]
        assert engine.rooms.members("r1") == frozenset({b_id})
        assert a_id not in engine.registry

    @pytest.mark.asyncio
    async def test_grace_expiry_deletes_sole_member_room(self, make_transport):
        engine = RelayEngine(RelayConfig(reconnect_grace_seconds=0.02, room_backend="memory"))
        a = make_transport()
        a_id = await join(engine, a)
        a.open = False
        await engine.handle_disconnect(a_id, a)

        await asyncio.sleep(0.08)
        assert not engine.rooms.exists("r1")
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_zero_grace_removes_immediately(self, make_transport):
        engine = RelayEngine(RelayConfig(reconnect_grace_seconds=0, room_backend="memory"))
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        a.open = False
        await engine.handle_disconnect(a_id, a)

        assert b.messages("peer_disconnected") == [{"type": "peer_disconnected", "userId": a_id, "temporary": False}]
        assert len(engine.grace) == 0

    @pytest.mark.asyncio
    async def test_finalize_after_resume_is_skipped(self, engine, make_transport):
        a, a2 = make_transport(), make_transport()
        a_id = await join(engine, a)
        a.open = False
        await engine.handle_disconnect(a_id, a)
        temp_id = await engine.connect(a2)
        await engine.dispatch(temp_id, frame("join", roomId="r1", userId=a_id))

        await engine.finalize_disconnect(a_id, "r1")
        assert engine.rooms.members("r1") == frozenset({a_id})

    @pytest.mark.asyncio
    async def test_stale_transport_close_is_ignored(self, engine, make_transport):
        a, a2, b = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        a.open = False
        await engine.handle_disconnect(a_id, a)
        temp_id = await engine.connect(a2)
        await engine.dispatch(temp_id, frame("join", roomId="r1", userId=a_id))

        await engine.handle_disconnect(a_id, a)
        assert not engine.registry.in_grace(a_id)
        assert len(b.messages("peer_disconnected")) == 1


# ===== Identity =====

class TestIdentity:
    @pytest.mark.asyncio
    async def test_duplicate_identity_evicts_old_transport(self, engine, make_transport):
        a, b, a2 = make_transport(), make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)

        temp_id = await engine.connect(a2)
        assert await engine.dispatch(temp_id, frame("join", roomId="r1", userId=a_id)) == a_id
        await settle()

        assert a.close_code == REPLACED_CLOSE_CODE
        assert engine.registry.lookup(a_id) is a2
        assert b.messages("user_joined") == []
        assert b.messages("room_status")[0]["reconnected"] is True

    @pytest.mark.asyncio
    async def test_unknown_user_id_keeps_assigned_identity(self, engine, make_transport):
        a = make_transport()
        a_id = await engine.connect(a)
        assert await engine.dispatch(a_id, frame("join", roomId="r1", userId="forged")) == a_id
        assert "forged" not in engine.registry
        assert a.messages("room_joined")[0]["userId"] == a_id

    @pytest.mark.asyncio
    async def test_joined_connection_cannot_switch_identity(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b, room_id="r2")
        assert await engine.dispatch(a_id, frame("join", roomId="r1", userId=b_id)) == a_id
        assert engine.registry.lookup(b_id) is b


# ===== Lifecycle =====

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_closes_connections_and_timers(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        a.open = False
        await engine.handle_disconnect(a_id, a)
        engine.start()

        await engine.shutdown()
        assert not b.is_open
        assert len(engine.grace) == 0
        assert engine.rooms.room_count() == 0

    @pytest.mark.asyncio
    async def test_stats(self, engine, make_transport):
        a = make_transport()
        await join(engine, a)
        assert engine.stats() == {"connections": 1, "rooms": 1, "pending_reconnects": 0}
        assert engine.room_details("r1") == 1
        assert engine.room_details("missing") is None


# ===== Liveness =====

class TestLiveness:
    @pytest.mark.asyncio
    async def test_idle_joined_peers_survive_sweeps(self, engine, make_transport):
        """Peers quiet during a media session keep their room"""
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        b_id = await join(engine, b)

        for _ in range(4):
            assert await engine.monitor.sweep() == 0
        assert engine.rooms.members("r1") == frozenset({a_id, b_id})
        assert a.messages("peer_disconnected") == []
        assert b.messages("peer_disconnected") == []

    @pytest.mark.asyncio
    async def test_silent_heartbeat_peer_enters_grace(self, engine, make_transport):
        a, b = make_transport(), make_transport()
        a_id = await join(engine, a)
        await join(engine, b)
        await engine.dispatch(a_id, frame("heartbeat_ack"))

        await engine.monitor.sweep()
        assert a.messages("heartbeat") == [{"type": "heartbeat"}]
        assert await engine.monitor.sweep() == 1

        assert not a.is_open
        assert engine.registry.in_grace(a_id)
        assert b.messages("peer_disconnected") == [{"type": "peer_disconnected", "userId": a_id, "temporary": True}]
        await engine.shutdown()
