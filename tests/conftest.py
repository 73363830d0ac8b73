import json

import pytest

from relay_router import DeliveryError, RelayRouter, Role


class FakeConnection:
    def __init__(self, name):
        self.name = name
        self.open = True
        self.fail_sends = False
        self.closed_by_relay = False
        self.sent = []

    def __repr__(self):
        return f"FakeConnection({self.name})"


class FakeTransport:
    """In-memory stand-in for the websocket layer"""

    async def send(self, connection, payload):
        if connection.fail_sends or not connection.open:
            raise DeliveryError(f"{connection.name} is closed")
        connection.sent.append(json.loads(json.dumps(payload)))

    async def close(self, connection):
        connection.open = False
        connection.closed_by_relay = True

    def is_open(self, connection):
        return connection.open


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def router(transport):
    return RelayRouter(transport)


@pytest.fixture
def connect(router):
    """Open a fake connection on the router and clear its ack"""
    async def _connect(name, server=False, keep_ack=False):
        connection = FakeConnection(name)
        await router.on_open(connection, Role.SERVER if server else Role.CLIENT)
        if not keep_ack:
            connection.sent.clear()
        return connection

    return _connect


@pytest.fixture
def make_connection():
    return FakeConnection
