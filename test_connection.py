#!/usr/bin/env python3
"""Connection manager: handshake, subscriptions, backoff, debounce, teardown"""

import asyncio

from connection import ConnectionManager
from models import ConnectionState


def make_manager(config, clock, broker):
    return ConnectionManager(config, clock, transport_factory=broker.open)


def test_handshake_and_subscriptions_sent_after_connect(config, clock, broker, settle):
    async def scenario():
        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/drone-updates", lambda frame: None)
        manager.subscribe("/topic/system-state", lambda frame: None)
        manager.connect()
        await settle()

        assert manager.state == ConnectionState.CONNECTED
        sock = broker.latest
        connect = sock.frames("CONNECT")[0]
        assert connect.headers["accept-version"] == "1.2,1.1,1.0"
        destinations = [f.headers["destination"] for f in sock.frames("SUBSCRIBE")]
        assert destinations == ["/topic/drone-updates", "/topic/system-state"]
        await manager.shutdown()

    asyncio.run(scenario())


def test_messages_routed_to_topic_handler(config, clock, broker, settle):
    async def scenario():
        received = []
        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/a", lambda frame: received.append(("a", frame.body)))
        manager.subscribe("/topic/b", lambda frame: received.append(("b", frame.body)))
        manager.connect()
        await settle()

        broker.publish("/topic/b", '{"x": 1}')
        broker.publish("/topic/a", '{"y": 2}')
        await settle()

        assert received == [("b", '{"x": 1}'), ("a", '{"y": 2}')]
        await manager.shutdown()

    asyncio.run(scenario())


def test_subscribe_while_connected_sends_immediately(config, clock, broker, settle):
    async def scenario():
        manager = make_manager(config, clock, broker)
        manager.connect()
        await settle()
        assert broker.latest.frames("SUBSCRIBE") == []

        manager.subscribe("/topic/late", lambda frame: None)
        await settle()

        assert [f.headers["destination"] for f in broker.latest.frames("SUBSCRIBE")] == ["/topic/late"]
        await manager.shutdown()

    asyncio.run(scenario())


def test_throwing_handler_does_not_affect_other_topics(config, clock, broker, settle):
    async def scenario():
        good = []

        def bad_handler(frame):
            raise RuntimeError("boom")

        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/bad", bad_handler)
        manager.subscribe("/topic/good", lambda frame: good.append(frame.body))
        manager.connect()
        await settle()

        broker.publish("/topic/bad", "1")
        broker.publish("/topic/good", "2")
        broker.publish("/topic/bad", "3")
        broker.publish("/topic/good", "4")
        await settle()

        assert good == ["2", "4"]
        assert manager.state == ConnectionState.CONNECTED
        assert manager.metrics.get_counter("handler_errors", {"topic": "/topic/bad"}) == 2
        await manager.shutdown()

    asyncio.run(scenario())


def test_backoff_doubles_and_caps(config, clock, broker, settle):
    async def scenario():
        broker.refuse = 5
        manager = make_manager(config, clock, broker)
        manager.connect()
        await settle()

        delays = []
        for expected_calls in range(2, 6):
            assert manager.state == ConnectionState.RECONNECTING
            delay = clock.next_due() - clock.now()
            delays.append(delay)

            clock.advance(delay - 0.5)
            await settle()
            assert broker.connect_calls == expected_calls - 1

            clock.advance(0.5)
            await settle()
            assert broker.connect_calls == expected_calls

        assert delays == [5.0, 10.0, 20.0, 30.0]
        assert manager.attempt == 5
        await manager.shutdown()

    asyncio.run(scenario())


def test_attempt_resets_after_successful_connect(config, clock, broker, settle):
    async def scenario():
        broker.refuse = 2
        manager = make_manager(config, clock, broker)
        manager.connect()
        await settle()
        clock.advance(5.0)
        await settle()
        clock.advance(10.0)
        await settle()

        assert manager.state == ConnectionState.CONNECTED
        assert manager.attempt == 0

        broker.latest.drop()
        await settle()
        assert clock.next_due() - clock.now() == 5.0
        await manager.shutdown()

    asyncio.run(scenario())


def test_reentrant_connect_is_noop(config, clock, broker, settle):
    async def scenario():
        manager = make_manager(config, clock, broker)
        manager.connect()
        manager.connect()
        await settle()
        manager.connect()
        await settle()
        assert broker.connect_calls == 1

        broker.latest.drop()
        await settle()
        assert manager.state == ConnectionState.RECONNECTING
        manager.connect()
        await settle()
        assert broker.connect_calls == 1

        clock.advance(5.0)
        await settle()
        assert broker.connect_calls == 2
        await manager.shutdown()

    asyncio.run(scenario())


def test_connected_signal_is_debounced(config, clock, broker, settle):
    async def scenario():
        signals = []
        manager = make_manager(config, clock, broker)
        manager.add_status_listener(signals.append)
        manager.connect()
        await settle()

        assert manager.state == ConnectionState.CONNECTED
        assert manager.connected is False
        clock.advance(0.45)
        assert manager.connected is False
        clock.advance(0.1)
        assert manager.connected is True

        broker.latest.drop()
        await settle()
        assert manager.connected is False
        assert signals == [True, False]

        clock.advance(5.0)
        await settle()
        assert manager.state == ConnectionState.CONNECTED
        assert manager.connected is False
        clock.advance(0.5)
        assert manager.connected is True
        await manager.shutdown()

    asyncio.run(scenario())


def test_short_lived_connection_never_reports_connected(config, clock, broker, settle):
    async def scenario():
        signals = []
        manager = make_manager(config, clock, broker)
        manager.add_status_listener(signals.append)
        manager.connect()
        await settle()
        clock.advance(0.2)
        broker.latest.drop()
        await settle()
        clock.advance(0.5)

        assert signals == []
        assert manager.state == ConnectionState.RECONNECTING
        await manager.shutdown()

    asyncio.run(scenario())


def test_rejected_handshake_takes_backoff_path(config, clock, broker, settle):
    async def scenario():
        broker.reject_handshake = True
        manager = make_manager(config, clock, broker)
        manager.connect()
        await settle()

        assert manager.state == ConnectionState.RECONNECTING
        assert "Bad credentials" in manager.last_error
        assert broker.latest.closed

        broker.reject_handshake = False
        clock.advance(5.0)
        await settle()
        assert manager.state == ConnectionState.CONNECTED
        await manager.shutdown()

    asyncio.run(scenario())


def test_error_frame_mid_session_reconnects_and_resubscribes(config, clock, broker, settle):
    async def scenario():
        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/drone-updates", lambda frame: None)
        manager.connect()
        await settle()
        first = broker.latest

        first.push("ERROR\nmessage:session expired\n\n\x00")
        await settle()
        assert manager.state == ConnectionState.RECONNECTING

        clock.advance(5.0)
        await settle()
        second = broker.latest
        assert second is not first
        assert manager.state == ConnectionState.CONNECTED
        old_id = first.subscription_id("/topic/drone-updates")
        new_id = second.subscription_id("/topic/drone-updates")
        assert old_id != new_id
        await manager.shutdown()

    asyncio.run(scenario())


def test_no_handler_fires_after_shutdown(config, clock, broker, settle):
    async def scenario():
        received = []
        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/a", lambda frame: received.append(frame.body))
        manager.connect()
        await settle()
        sock = broker.latest

        await manager.shutdown()
        broker.publish("/topic/a", "late", sock=sock)
        await settle()
        clock.advance(60.0)

        assert received == []
        assert manager.state == ConnectionState.DISCONNECTED
        assert clock.pending == 0
        assert sock.frames("DISCONNECT")
        assert sock.closed

    asyncio.run(scenario())


def test_shutdown_cancels_pending_retry(config, clock, broker, settle):
    async def scenario():
        broker.refuse = 1
        manager = make_manager(config, clock, broker)
        manager.connect()
        await settle()
        assert manager.state == ConnectionState.RECONNECTING

        await manager.shutdown()
        clock.advance(60.0)
        await settle()

        assert broker.connect_calls == 1
        assert manager.state == ConnectionState.DISCONNECTED
        manager.connect()
        await settle()
        assert broker.connect_calls == 1

    asyncio.run(scenario())


def test_undecodable_body_costs_only_that_frame(config, clock, broker, settle):
    async def scenario():
        bodies = []
        manager = make_manager(config, clock, broker)
        manager.subscribe("/topic/a", lambda frame: bodies.append(frame.body))
        manager.connect()
        await settle()

        sock = broker.latest
        sub_id = sock.subscription_id("/topic/a").encode()
        sock.push(b"MESSAGE\ndestination:/topic/a\nsubscription:" + sub_id + b"\n\n\xff\xfe{}\x00")
        broker.publish("/topic/a", "ok")
        await settle()

        assert manager.state == ConnectionState.CONNECTED
        assert manager.attempt == 0
        assert broker.connect_calls == 1
        assert len(bodies) == 2
        assert bodies[1] == "ok"
        await manager.shutdown()

    asyncio.run(scenario())


def test_unsubscribe_sends_frame_and_stops_delivery(config, clock, broker, settle):
    async def scenario():
        received = []
        manager = make_manager(config, clock, broker)
        subscription = manager.subscribe("/topic/a", lambda frame: received.append(frame.body))
        manager.connect()
        await settle()

        sock = broker.latest
        sub_id = sock.subscription_id("/topic/a")
        broker.publish("/topic/a", "1")
        await settle()

        manager.unsubscribe(subscription)
        await settle()
        assert [f.headers["id"] for f in sock.frames("UNSUBSCRIBE")] == [sub_id]

        broker.publish("/topic/a", "2")
        await settle()
        assert received == ["1"]

        sock.drop()
        await settle()
        clock.advance(5.0)
        await settle()
        assert broker.latest is not sock
        assert broker.latest.frames("SUBSCRIBE") == []
        await manager.shutdown()

    asyncio.run(scenario())
