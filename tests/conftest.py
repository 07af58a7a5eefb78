"""Shared fixtures: an in-memory channel and fresh registry/router instances."""

import json

import pytest

from pairline import protocol
from pairline.registry import ConnectionRegistry
from pairline.router import SessionRouter


class FakeChannel:
    """Records outbound frames as decoded dicts. Closed channels refuse sends like the real one."""

    def __init__(self, is_open=True):
        self.is_open = is_open
        self.sent = []
        self.frames = []
        self.closed_with = None

    async def send(self, frame):
        if not self.is_open:
            return False
        self.frames.append(frame)
        self.sent.append(json.loads(frame))
        return True

    async def send_json(self, message_type, **fields):
        return await self.send(protocol.encode(message_type, **fields))

    async def close(self, code=1000, reason=''):
        self.is_open = False
        self.closed_with = (code, reason)

    def types(self):
        return [m["type"] for m in self.sent]


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def router(registry):
    return SessionRouter(registry)


@pytest.fixture
def connect(registry):
    """Registers a client with a FakeChannel and returns the channel."""
    def _connect(client_id, is_open=True):
        channel = FakeChannel(is_open=is_open)
        registry.register(client_id, channel)
        return channel
    return _connect
