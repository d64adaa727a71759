"""
Tests for the Session Coordinator state machine.

Transports are replaced by the stand-ins from conftest so every transition
can be checked, including the order in which roles are torn down.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from discovery.models import PeerRecord
from errors import ConnectionFailed, DeliveryError, DiscoveryError, RelayError, StateError
from relay.models import MessageEnvelope, MessageKind
from session.models import ConnectionRole


class TestIdentity:

    @pytest.mark.asyncio
    async def test_set_identity_while_idle(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.set_identity("alicia")
        assert coordinator.state.local_identity == "alicia"

    @pytest.mark.asyncio
    async def test_unchanged_identity_is_noop(self, fakes):
        coordinator = fakes.coordinator("alice")
        events = []

        async def on_event(event_type, data):
            events.append(event_type)

        coordinator.on_event(on_event)
        await coordinator.set_identity("alice")
        assert events == []

    @pytest.mark.asyncio
    async def test_empty_identity_rejected(self, fakes):
        coordinator = fakes.coordinator("alice")
        with pytest.raises(ValueError):
            await coordinator.set_identity("  ")

    @pytest.mark.asyncio
    async def test_identity_locked_outside_idle(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        with pytest.raises(StateError):
            await coordinator.set_identity("mallory")
        assert coordinator.state.local_identity == "alice"


class TestHosting:

    @pytest.mark.asyncio
    async def test_start_hosting(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()

        assert coordinator.state.role == ConnectionRole.HOSTING
        assert coordinator.state.peer_identity == ""
        assert fakes.log == ["relay.start", "beacon.start"]
        record = fakes.beacons[0].record_factory()
        assert record == PeerRecord(identity="alice", address="192.168.1.10", port=8080)

    @pytest.mark.asyncio
    async def test_start_hosting_twice_keeps_running_relay(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        await coordinator.start_hosting()
        assert len(fakes.relays) == 1

    @pytest.mark.asyncio
    async def test_relay_failure_rolls_back(self, fakes):
        fakes.relay_fails = True
        coordinator = fakes.coordinator("alice")
        with pytest.raises(RelayError):
            await coordinator.start_hosting()

        assert coordinator.state.role == ConnectionRole.IDLE
        assert "8080" in coordinator.state.last_error
        assert "beacon.start" not in fakes.log

    @pytest.mark.asyncio
    async def test_beacon_failure_stops_relay(self, fakes):
        fakes.beacon_fails = True
        coordinator = fakes.coordinator("alice")
        with pytest.raises(DiscoveryError):
            await coordinator.start_hosting()

        assert coordinator.state.role == ConnectionRole.IDLE
        assert "relay.stop" in fakes.log
        # a later send has no transport to use
        with pytest.raises(StateError):
            await coordinator.send("hi")

    @pytest.mark.asyncio
    async def test_peer_events_track_peer_identity(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        relay = fakes.relays[0]
        bob = PeerRecord(identity="bob", address="192.168.1.20", port=40000)
        carol = PeerRecord(identity="carol", address="192.168.1.30", port=40001)

        await relay.registry.add(bob)
        await relay.emit("peer_connected", bob)
        assert coordinator.state.peer_identity == "bob"

        await relay.registry.add(carol)
        await relay.emit("peer_connected", carol)
        await relay.registry.remove("carol")
        await relay.emit("peer_disconnected", carol)
        assert coordinator.state.peer_identity == "bob"

        await relay.registry.remove("bob")
        await relay.emit("peer_disconnected", bob)
        assert coordinator.state.peer_identity == ""
        assert coordinator.state.role == ConnectionRole.HOSTING

    @pytest.mark.asyncio
    async def test_peer_connecting_during_startup_is_picked_up_once_hosting(self, fakes):
        fakes.early_peer = PeerRecord(identity="bob", address="192.168.1.20", port=40000)
        coordinator = fakes.coordinator("alice")
        states = []

        async def on_event(event_type, data):
            if event_type == "state":
                states.append(data)

        coordinator.on_event(on_event)
        await coordinator.start_hosting()

        # peer_identity is only ever set together with the hosting role
        assert all(s.role == ConnectionRole.HOSTING for s in states if s.peer_identity)
        assert coordinator.state.role == ConnectionRole.HOSTING
        assert coordinator.state.peer_identity == "bob"

    @pytest.mark.asyncio
    async def test_fan_out_failures_are_forwarded(self, fakes):
        coordinator = fakes.coordinator("alice")
        listener = AsyncMock()
        coordinator.on_event(listener)
        await coordinator.start_hosting()

        report = {"message_id": "m-1", "failed": ["bob"]}
        await fakes.relays[0].emit("delivery_failed", report)
        listener.assert_awaited_with("delivery_failed", report)

    @pytest.mark.asyncio
    async def test_relayed_message_lands_in_history(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        env = MessageEnvelope(sender="bob", content="hi")
        await fakes.relays[0].emit("message", env)
        await fakes.relays[0].emit("message", env)
        assert coordinator.messages == (env,)


class TestConnecting:

    @pytest.mark.asyncio
    async def test_connect_to_peer(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)

        assert coordinator.state.role == ConnectionRole.CONNECTED
        assert coordinator.state.peer_identity == "alice"
        assert fakes.log == ["client.connect:192.168.1.10:8080"]
        assert fakes.clients[0].self_record.identity == "bob"

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self, fakes, alice_host):
        fakes.connect_fails = True
        coordinator = fakes.coordinator("bob")
        with pytest.raises(ConnectionFailed):
            await coordinator.connect_to(alice_host)

        assert coordinator.state.role == ConnectionRole.IDLE
        assert coordinator.state.peer_identity == ""
        assert coordinator.state.last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_reconnect_disconnects_previous_first(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        dave = PeerRecord(identity="dave", address="192.168.1.40", port=8080)
        await coordinator.connect_to(alice_host)
        await coordinator.connect_to(dave)

        assert fakes.log == [
            "client.connect:192.168.1.10:8080",
            "client.disconnect",
            "client.connect:192.168.1.40:8080",
        ]
        assert coordinator.state.peer_identity == "dave"

    @pytest.mark.asyncio
    async def test_inbound_broadcast_lands_in_history(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        env = MessageEnvelope(sender="carol", content="hey")
        await fakes.clients[0].emit("message", env)
        assert coordinator.messages == (env,)


class TestExclusivity:

    @pytest.mark.asyncio
    async def test_hosting_while_connected_disconnects_client_first(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        await coordinator.start_hosting()

        assert fakes.log == [
            "client.connect:192.168.1.10:8080",
            "client.disconnect",
            "relay.start",
            "beacon.start",
        ]
        assert coordinator.state.role == ConnectionRole.HOSTING
        assert coordinator.state.peer_identity == ""

    @pytest.mark.asyncio
    async def test_connecting_while_hosting_stops_relay_first(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.start_hosting()
        await coordinator.connect_to(alice_host)

        assert fakes.log == [
            "relay.start",
            "beacon.start",
            "beacon.stop",
            "relay.stop",
            "client.connect:192.168.1.10:8080",
        ]
        assert coordinator.state.role == ConnectionRole.CONNECTED


class TestSend:

    @pytest.mark.asyncio
    async def test_send_while_idle_is_rejected(self, fakes):
        coordinator = fakes.coordinator("alice")
        with pytest.raises(StateError):
            await coordinator.send("hello?")
        assert coordinator.messages == ()

    @pytest.mark.asyncio
    async def test_send_while_hosting_broadcasts(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        envelope = await coordinator.send("welcome")

        assert coordinator.messages == (envelope,)
        assert fakes.relays[0].submitted == [envelope]
        assert envelope.sender == "alice"
        assert envelope.kind == MessageKind.TEXT

    @pytest.mark.asyncio
    async def test_send_file_reference(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        envelope = await coordinator.send("/sdcard/notes.pdf", MessageKind.FILE)
        assert fakes.clients[0].sent == [envelope]
        assert envelope.kind == MessageKind.FILE

    @pytest.mark.asyncio
    async def test_failed_send_keeps_echo_and_does_not_retry(self, fakes, alice_host):
        fakes.send_fails = True
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        failures = []

        async def on_event(event_type, data):
            if event_type == "send_failed":
                failures.append(data)

        coordinator.on_event(on_event)
        with pytest.raises(DeliveryError):
            await coordinator.send("hi")

        assert len(coordinator.messages) == 1
        assert coordinator.messages[0].content == "hi"
        assert len(fakes.clients[0].sent) == 1
        assert failures[0]["message_id"] == str(coordinator.messages[0].id)
        assert coordinator.state.role == ConnectionRole.CONNECTED
        assert coordinator.state.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_history_keeps_send_order(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        await asyncio.gather(*(coordinator.send(str(i)) for i in range(5)))

        contents = [m.content for m in coordinator.messages]
        assert [m.content for m in fakes.clients[0].sent] == contents


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_discover_replaces_peer_list(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        fakes.discovered = [alice_host]
        assert await coordinator.discover(timeout=0.1) == [alice_host]
        assert coordinator.peers == (alice_host,)

        fakes.discovered = []
        await coordinator.discover(timeout=0.1)
        assert coordinator.peers == ()
        assert fakes.log[0] == "listener.discover:bob"
        assert not coordinator.state.discovering

    @pytest.mark.asyncio
    async def test_concurrent_discovery_rejected_and_cancel(self, fakes):
        fakes.discover_blocks = True
        coordinator = fakes.coordinator("bob")
        task = asyncio.create_task(coordinator.discover(timeout=30))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert coordinator.state.discovering

        with pytest.raises(StateError):
            await coordinator.discover()

        coordinator.cancel_discovery()
        assert await asyncio.wait_for(task, timeout=1) == []
        assert not coordinator.state.discovering

    @pytest.mark.asyncio
    async def test_discovery_does_not_disturb_connection(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        await coordinator.discover(timeout=0.1)
        assert coordinator.state.role == ConnectionRole.CONNECTED
        assert "client.disconnect" not in fakes.log


class TestTeardown:

    @pytest.mark.asyncio
    async def test_teardown_is_repeatable(self, fakes):
        coordinator = fakes.coordinator("alice")
        await coordinator.start_hosting()
        await coordinator.teardown()
        await coordinator.teardown()

        assert coordinator.state.role == ConnectionRole.IDLE
        assert fakes.log.count("relay.stop") == 1
        assert fakes.log.count("beacon.stop") == 1

    @pytest.mark.asyncio
    async def test_disconnect_from_host_keeps_history(self, fakes, alice_host):
        coordinator = fakes.coordinator("bob")
        await coordinator.connect_to(alice_host)
        await coordinator.send("bye")
        await coordinator.disconnect()

        assert coordinator.state.role == ConnectionRole.IDLE
        assert coordinator.state.peer_identity == ""
        assert len(coordinator.messages) == 1
        # identity may change again once idle
        await coordinator.set_identity("robert")


class TestEvents:

    @pytest.mark.asyncio
    async def test_changes_are_emitted_to_listeners(self, fakes):
        coordinator = fakes.coordinator("alice")
        listener = AsyncMock()
        coordinator.on_event(listener)
        await coordinator.start_hosting()
        envelope = await coordinator.send("hi")

        event_types = [c.args[0] for c in listener.await_args_list]
        assert event_types == ["state", "message"]
        listener.assert_awaited_with("message", envelope)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_the_session(self, fakes):
        coordinator = fakes.coordinator("alice")
        broken = AsyncMock(side_effect=RuntimeError("ui gone"))
        coordinator.on_event(broken)
        await coordinator.start_hosting()
        await coordinator.send("still works")

        assert coordinator.state.role == ConnectionRole.HOSTING
        assert len(coordinator.messages) == 1
        assert broken.await_count == 2
