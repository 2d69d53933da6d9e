# Connection Manager
# File: connection.py

"""
Owns the single persistent STOMP-over-WebSocket stream to the dispatch
backend and multiplexes topic subscriptions over it.

State machine:

    DISCONNECTED --connect()--> CONNECTING --CONNECTED frame--> CONNECTED
    CONNECTING/CONNECTED --failure--> RECONNECTING --backoff timer--> CONNECTING
    any --shutdown()--> DISCONNECTED (final)

Failures (socket errors, handshake rejection, ERROR frames, server close)
all take the same path: the visible "connected" signal drops immediately and
a retry is scheduled after min(base * 2**attempt, max). The visible signal
only rises again once a handshake succeeded and the stabilization delay
passed without another failure.

Usage:
    manager = ConnectionManager(config, scheduler)
    manager.subscribe("/topic/drone-updates", on_frame)
    manager.connect()
    ...
    await manager.shutdown()
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from config import DashboardConfig
from errors import HandshakeError, StompProtocolError
from models import ConnectionState
from monitoring import LivenessMonitor, MetricsCollector
from scheduler import ScheduledTask, Scheduler
from stomp import EOL, Frame, encode_frame, negotiate_heartbeat, parse_frames

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Awaitable]
FrameHandler = Callable[[Frame], None]
StatusListener = Callable[[bool], None]

# Errors that end the current connection attempt and trigger backoff
TRANSPORT_ERRORS = (WebSocketException, OSError, asyncio.TimeoutError, StompProtocolError)


async def open_websocket(url: str):
    """Default transport: a STOMP-subprotocol WebSocket"""
    return await websockets.connect(
        url,
        subprotocols=["v12.stomp", "v11.stomp", "v10.stomp"],
        ping_interval=None,  # STOMP heart-beats cover keepalive
    )


@dataclass
class Subscription:
    """One topic registration; survives reconnects"""
    topic: str
    handler: FrameHandler
    stomp_id: Optional[str] = None  # id on the current connection only
    active: bool = True


class ConnectionManager:
    """Lifecycle of one STOMP stream with backoff reconnects"""

    def __init__(self, config: DashboardConfig, scheduler: Scheduler,
                 transport_factory: Optional[TransportFactory] = None,
                 metrics: Optional[MetricsCollector] = None):
        """
        Args:
            config: Session configuration (URL, delays, heart-beats)
            scheduler: Timer source for backoff, debounce and liveness
            transport_factory: async url -> socket-like object with send(),
                close() and async iteration; defaults to websockets.connect
            metrics: Optional collector
        """
        self.config = config
        self.scheduler = scheduler
        self.transport_factory = transport_factory or open_websocket
        self.metrics = metrics or MetricsCollector()
        self.liveness = LivenessMonitor(scheduler.now, config.liveness_interval, self.metrics)

        self.subscriptions: List[Subscription] = []
        self._by_stomp_id: Dict[str, Subscription] = {}
        self._stomp_ids = itertools.count(1)
        self._status_listeners: List[StatusListener] = []

        self._state = ConnectionState.DISCONNECTED
        self._connected = False
        self._closed = False
        self.attempt = 0
        self.last_error: Optional[str] = None

        self._transport = None
        self._run_task: Optional[asyncio.Task] = None
        self._io_tasks: Set[asyncio.Task] = set()
        self._retry_timer: Optional[ScheduledTask] = None
        self._debounce_timer: Optional[ScheduledTask] = None
        self._liveness_timer: Optional[ScheduledTask] = None
        self._heartbeat_timer: Optional[ScheduledTask] = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """Debounced connectivity signal for the UI"""
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    def add_status_listener(self, listener: StatusListener):
        """listener(connected) is called whenever the visible signal flips"""
        self._status_listeners.append(listener)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the reconnect that follows failure number attempt + 1"""
        return min(self.config.reconnect_base_delay * (2 ** attempt),
                   self.config.reconnect_max_delay)

    def subscribe(self, topic: str, handler: FrameHandler) -> Subscription:
        """
        Register handler for every MESSAGE on topic

        Can be called before connect(); subscriptions are (re-)sent after
        every successful handshake.
        """
        subscription = Subscription(topic=topic, handler=handler)
        self.subscriptions.append(subscription)
        logger.info(f"Subscription registered: {topic}")

        if self._state == ConnectionState.CONNECTED and self._transport is not None:
            self._spawn(self._send_subscribe(self._transport, subscription))
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription not in self.subscriptions:
            return
        subscription.active = False
        self.subscriptions.remove(subscription)
        stomp_id = subscription.stomp_id
        if stomp_id is not None:
            self._by_stomp_id.pop(stomp_id, None)
            if self._state == ConnectionState.CONNECTED and self._transport is not None:
                frame = Frame("UNSUBSCRIBE", {"id": stomp_id})
                self._spawn(self._send(self._transport, frame))
        logger.info(f"Unsubscribed from {subscription.topic}")

    def connect(self):
        """
        Start connecting. No-op while an attempt is in flight, while
        connected, while a backoff retry is pending, or after shutdown.
        Must be called from the event loop.
        """
        if self._closed:
            logger.warning("connect() after shutdown ignored")
            return
        if self._state != ConnectionState.DISCONNECTED:
            logger.debug(f"connect() ignored in state {self._state.value}")
            return
        self._begin_attempt()

    async def shutdown(self):
        """
        Tear the stream down. When this returns no handler will fire again,
        no timer owned by the manager is pending and the socket is closed.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down connection manager")

        for timer in (self._retry_timer, self._debounce_timer,
                      self._liveness_timer, self._heartbeat_timer):
            if timer is not None:
                timer.cancel()

        transport = self._transport
        if transport is not None and self._state == ConnectionState.CONNECTED:
            try:
                await transport.send(encode_frame(Frame("DISCONNECT", {"receipt": "bye"})))
            except Exception as e:
                logger.debug(f"DISCONNECT not sent: {e}")

        tasks = list(self._io_tasks)
        if self._run_task is not None:
            tasks.append(self._run_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._by_stomp_id.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._set_connected(False)

    # ------------------------------------------------------------------
    # Connection task
    # ------------------------------------------------------------------

    def _begin_attempt(self):
        self._retry_timer = None
        if self._closed:
            return
        self._set_state(ConnectionState.CONNECTING)
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        transport = None
        reason = "stream closed by server"
        try:
            transport = await asyncio.wait_for(
                self.transport_factory(self.config.ws_url),
                timeout=self.config.connect_timeout,
            )
            await self._handshake(transport)
            await self._on_connected(transport)
            await self._read_loop(transport)
        except asyncio.CancelledError:
            raise
        except TRANSPORT_ERRORS as e:
            reason = f"{type(e).__name__}: {e}"
        except Exception as e:
            logger.exception(f"Unexpected connection error: {e}")
            reason = f"{type(e).__name__}: {e}"
        finally:
            self._transport = None
            if transport is not None:
                await self._close_transport(transport)

        self._on_failure(reason)

    async def _handshake(self, transport):
        connect = Frame("CONNECT", {
            "accept-version": "1.2,1.1,1.0",
            "host": self.config.stomp_host,
            "heart-beat": f"{self.config.heartbeat_outgoing_ms},{self.config.heartbeat_incoming_ms}",
        })
        await transport.send(encode_frame(connect))

        reply = await asyncio.wait_for(self._first_frame(transport), timeout=self.config.connect_timeout)
        if reply.command == "ERROR":
            raise HandshakeError(f"broker rejected CONNECT: {reply.headers.get('message', reply.body)}",
                                 reply.headers, reply.body)
        if reply.command != "CONNECTED":
            raise HandshakeError(f"expected CONNECTED, got {reply.command}")

        outgoing, incoming = negotiate_heartbeat(
            (self.config.heartbeat_outgoing_ms, self.config.heartbeat_incoming_ms),
            reply.headers.get("heart-beat"),
        )
        if outgoing:
            self._heartbeat_timer = self.scheduler.call_every(outgoing / 1000.0, self._send_heartbeat)
        logger.debug(f"Heart-beat negotiated: send every {outgoing}ms, expect every {incoming}ms "
                     f"(version {reply.headers.get('version', '?')})")

    async def _first_frame(self, transport) -> Frame:
        while True:
            message = await transport.recv()
            self.liveness.mark_activity()
            frames = parse_frames(message)
            if frames:
                return frames[0]

    async def _on_connected(self, transport):
        self._transport = transport
        self.attempt = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        self.metrics.record_counter('connects')
        self.metrics.record_gauge('reconnect_attempt', 0)
        logger.info(f"✅ Connected to {self.config.ws_url}")

        self.liveness.mark_activity()
        self._liveness_timer = self.scheduler.call_every(self.config.liveness_interval, self._check_liveness)
        self._debounce_timer = self.scheduler.call_later(self.config.stabilization_delay, self._stabilized)

        self._by_stomp_id.clear()
        for subscription in list(self.subscriptions):
            await self._send_subscribe(transport, subscription)

    async def _read_loop(self, transport):
        async for message in transport:
            self.liveness.mark_activity()
            for frame in parse_frames(message):
                self.metrics.record_counter('frames_received')
                if frame.command == "MESSAGE":
                    self._dispatch(frame)
                elif frame.command == "ERROR":
                    raise StompProtocolError(
                        f"broker error: {frame.headers.get('message', frame.body)}",
                        frame.headers, frame.body)
                else:
                    logger.debug(f"Ignoring {frame.command} frame")

    def _dispatch(self, frame: Frame):
        if self._closed:
            return
        subscription = self._by_stomp_id.get(frame.headers.get("subscription"))
        if subscription is None:
            subscription = next((s for s in self.subscriptions if s.topic == frame.destination), None)
        if subscription is None or not subscription.active:
            logger.debug(f"No subscription for message on {frame.destination}")
            return

        try:
            subscription.handler(frame)
            self.metrics.record_counter('messages_dispatched')
        except Exception as e:
            logger.exception(f"Handler for {subscription.topic} failed: {e}")
            self.metrics.record_counter('handler_errors', labels={'topic': subscription.topic})

    async def _send_subscribe(self, transport, subscription: Subscription):
        if not subscription.active:
            return
        stomp_id = f"sub-{next(self._stomp_ids)}"
        subscription.stomp_id = stomp_id
        self._by_stomp_id[stomp_id] = subscription
        await self._send(transport, Frame("SUBSCRIBE", {
            "id": stomp_id,
            "destination": subscription.topic,
            "ack": "auto",
        }))
        logger.info(f"Subscribed to {subscription.topic} as {stomp_id}")

    async def _send(self, transport, frame: Frame):
        await transport.send(encode_frame(frame))

    async def _close_transport(self, transport):
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")

    # ------------------------------------------------------------------
    # Failure and timers
    # ------------------------------------------------------------------

    def _on_failure(self, reason: str):
        if self._closed:
            return
        for timer in (self._debounce_timer, self._liveness_timer, self._heartbeat_timer):
            if timer is not None:
                timer.cancel()
        self._debounce_timer = self._liveness_timer = self._heartbeat_timer = None
        self._by_stomp_id.clear()
        self._set_connected(False)

        delay = self.backoff_delay(self.attempt)
        self.attempt += 1
        self.last_error = reason
        self._set_state(ConnectionState.RECONNECTING)

        self.metrics.record_counter('connection_failures')
        self.metrics.record_gauge('reconnect_attempt', self.attempt)
        self.metrics.record_histogram('reconnect_delay_seconds', delay)
        logger.warning(f"Connection lost ({reason}); reconnect attempt {self.attempt} in {delay:.1f}s")

        self._retry_timer = self.scheduler.call_later(delay, self._begin_attempt)

    def _stabilized(self):
        self._debounce_timer = None
        if self._state == ConnectionState.CONNECTED:
            self._set_connected(True)

    def _check_liveness(self):
        self.liveness.check(self._state.value)

    def _send_heartbeat(self):
        if self._transport is not None and self._state == ConnectionState.CONNECTED:
            self._spawn(self._transport.send(EOL))

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._io_tasks.add(task)
        task.add_done_callback(self._io_done)

    def _io_done(self, task: asyncio.Task):
        self._io_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # The read loop sees the same broken socket and drives the reconnect
            logger.debug(f"Send failed: {error}")

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        logger.info(f"Connection state: {self._state.value} -> {state.value}")
        self._state = state

    def _set_connected(self, value: bool):
        if value == self._connected:
            return
        self._connected = value
        for listener in list(self._status_listeners):
            try:
                listener(value)
            except Exception as e:
                logger.exception(f"Status listener failed: {e}")
