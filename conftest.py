"""Shared fixtures: an in-memory STOMP broker and a virtual clock"""

import asyncio
import logging

import pytest

from config import DashboardConfig
from scheduler import ManualScheduler
from stomp import Frame, encode_frame, parse_frames

logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

_CLOSED = object()


class FakeSocket:
    """Socket-like object with the parts of the websockets API the manager uses"""

    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)
        self.broker.on_client_data(self, data)

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise ConnectionResetError("closed by peer")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True

    def push(self, data):
        self.inbox.put_nowait(data)

    def drop(self):
        """Server-side close"""
        self.inbox.put_nowait(_CLOSED)

    def frames(self, command=None):
        out = []
        for data in self.sent:
            out.extend(f for f in parse_frames(data) if command is None or f.command == command)
        return out

    def subscription_id(self, topic):
        for frame in reversed(self.frames("SUBSCRIBE")):
            if frame.headers["destination"] == topic:
                return frame.headers["id"]
        raise KeyError(topic)


class FakeBroker:
    """Accepts or refuses connections and answers CONNECT like a STOMP broker"""

    def __init__(self):
        self.sockets = []
        self.connect_calls = 0
        self.refuse = 0
        self.reject_handshake = False
        self.heartbeat = "0,0"

    async def open(self, url):
        self.connect_calls += 1
        if self.refuse > 0:
            self.refuse -= 1
            raise ConnectionRefusedError(f"refused {url}")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        return sock

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]

    def on_client_data(self, sock, data):
        for frame in parse_frames(data):
            if frame.command != "CONNECT":
                continue
            if self.reject_handshake:
                sock.push(encode_frame(Frame("ERROR", {"message": "Bad credentials"})))
            else:
                sock.push(encode_frame(Frame("CONNECTED", {
                    "version": "1.2", "heart-beat": self.heartbeat})))

    def publish(self, topic, body, sock=None):
        sock = sock or self.latest
        sock.push(encode_frame(Frame("MESSAGE", {
            "destination": topic,
            "subscription": sock.subscription_id(topic),
            "message-id": f"m-{len(sock.sent)}",
            "content-type": "application/json",
        }, body)))


async def _settle(rounds: int = 30):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualScheduler()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def settle():
    """Let pending loop callbacks and tasks run"""
    return _settle


@pytest.fixture
def config():
    return DashboardConfig()
