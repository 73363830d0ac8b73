"""
Relay router for WebRTC signaling

Tracks which connection is the (single) server peer and which are clients,
and decides for every inbound frame who receives it and in what shape.
The transport is injected: anything with async send(connection, payload),
async close(connection) and is_open(connection) will do.
"""

import asyncio
import itertools
import logging
import threading
from enum import Enum
from urllib.parse import parse_qs, urlsplit

import signal_messages
from signal_messages import MalformedMessage

logger = logging.getLogger(__name__)

NO_SERVER_AVAILABLE = "No server available"
OFFER_FORWARD_FAILED = "Failed to forward offer"


class DeliveryError(Exception):
    """Raised by a transport when a payload cannot be handed to a connection"""


class Role(Enum):
    SERVER = signal_messages.ROLE_SERVER
    CLIENT = signal_messages.ROLE_CLIENT


def role_from_request_path(path):
    """Read the role hint from a request path such as /?role=server"""
    if not path:
        return Role.CLIENT
    query = parse_qs(urlsplit(path).query)
    if signal_messages.ROLE_SERVER in query.get("role", []):
        return Role.SERVER
    return Role.CLIENT


class Peer:
    """A tracked connection. Role and id are fixed when the connection opens."""

    __slots__ = ("connection", "role", "client_id")

    def __init__(self, connection, role, client_id):
        self.connection = connection
        self.role = role
        self.client_id = client_id

    @property
    def is_server(self):
        return self.role is Role.SERVER

    def __repr__(self):
        return f"Peer({self.client_id}, {self.role.value})"


class Registry:
    """
    Connection bookkeeping shared by every connection handler.

    Each public method runs under one lock, so callers on different tasks or
    threads only ever see the state before or after an operation.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._client_seq = itertools.count(1)
        self.clients = {}  # client id -> connection
        self.connection_roles = {}  # connection -> Peer
        self.server_connection = None

    def register(self, connection, role):
        """
        Track a newly opened connection.

        Returns (peer, displaced) where displaced is the previous server
        connection when this one takes over the server role, else None.
        The displaced connection is already untracked when this returns.
        """
        with self._lock:
            client_id = f"client-{next(self._client_seq)}"
            peer = Peer(connection, role, client_id)
            displaced = None

            if role is Role.SERVER:
                displaced = self.server_connection
                if displaced is not None:
                    self.connection_roles.pop(displaced, None)
                self.server_connection = connection
            else:
                self.clients[client_id] = connection

            self.connection_roles[connection] = peer
            return peer, displaced

    def unregister(self, connection):
        """Forget a connection. Returns its Peer, or None if it was not tracked."""
        with self._lock:
            peer = self.connection_roles.pop(connection, None)
            if peer is None:
                return None

            if peer.is_server:
                if self.server_connection is connection:
                    self.server_connection = None
            elif self.clients.get(peer.client_id) is connection:
                del self.clients[peer.client_id]
            return peer

    def lookup(self, connection):
        with self._lock:
            return self.connection_roles.get(connection)

    def server(self):
        with self._lock:
            return self.server_connection

    def client(self, client_id):
        with self._lock:
            return self.clients.get(client_id)

    def client_connections(self):
        """Snapshot of (client id, connection) pairs"""
        with self._lock:
            return list(self.clients.items())

    def __len__(self):
        with self._lock:
            return len(self.connection_roles)


class RelayRouter:
    def __init__(self, transport, registry=None):
        self.transport = transport
        self.registry = registry if registry is not None else Registry()
        self._handlers = {
            signal_messages.OFFER: self._handle_offer,
            signal_messages.ANSWER: self._handle_answer,
            signal_messages.CANDIDATE: self._handle_candidate,
        }
        self._closing = set()

    # Connection lifecycle

    async def on_open(self, connection, role=Role.CLIENT):
        """Register a connection and acknowledge its role"""
        peer, displaced = self.registry.register(connection, role)

        if peer.is_server:
            if displaced is not None:
                logger.warning("Server connection already exists, closing old connection")
                if self.transport.is_open(displaced):
                    self._close_in_background(displaced)
            logger.info(f"Server connected ({peer.client_id})")
            ack = signal_messages.connected(signal_messages.ROLE_SERVER)
        else:
            logger.info(f"Client connected ({peer.client_id})")
            ack = signal_messages.connected(signal_messages.ROLE_CLIENT, peer.client_id)

        await self._deliver(connection, ack, f"connection ack to {peer.client_id}")
        return peer

    async def on_close(self, connection):
        peer = self.registry.unregister(connection)
        if peer is None:
            return None

        if peer.is_server:
            logger.info(f"Server disconnected ({peer.client_id})")
        else:
            logger.info(f"Client disconnected: {peer.client_id}")
        return peer

    async def on_error(self, connection, cause):
        peer = self.registry.lookup(connection)
        name = peer.client_id if peer is not None else "unknown"
        logger.error(f"Connection error for {name}: {cause}")
        return await self.on_close(connection)

    # Inbound frames

    async def on_message(self, connection, raw):
        peer = self.registry.lookup(connection)
        if peer is None:
            logger.warning("Dropping message from untracked connection")
            return

        try:
            message = signal_messages.decode(raw)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message from {peer.client_id}: {e}")
            return

        message_type = message["type"]
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning(f"Unknown message type: {message_type} from {peer.client_id}")
            return

        try:
            await handler(peer, message)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed {message_type} from {peer.client_id}: {e}")

    async def _handle_offer(self, peer, message):
        """Client -> relay -> server"""
        if peer.is_server:
            logger.warning("Server sent offer (unexpected), ignoring")
            return

        server = self._live_server()
        if server is None:
            logger.warning(f"No server connection available, cannot forward offer from {peer.client_id}")
            await self._deliver(peer.connection, signal_messages.error(NO_SERVER_AVAILABLE),
                                f"error to {peer.client_id}")
            return

        forwarded = signal_messages.tag_sender(message, peer.client_id)
        if await self._deliver(server, forwarded, f"offer from {peer.client_id}"):
            logger.info(f"Forwarded offer from client {peer.client_id} to server")
        else:
            await self._deliver(peer.connection, signal_messages.error(OFFER_FORWARD_FAILED),
                                f"error to {peer.client_id}")

    async def _handle_answer(self, peer, message):
        """Server -> relay -> client"""
        if not peer.is_server:
            logger.warning(f"Client {peer.client_id} sent answer (unexpected), ignoring")
            return

        answer = signal_messages.answer_for_client(message)
        to_client_id = self._target_client_id(message)

        if to_client_id is not None:
            target = self._live_client(to_client_id)
            if target is None:
                logger.warning(f"Target client {to_client_id} not found or disconnected")
                return
        else:
            # Without a target only the single-client case is unambiguous
            clients = self.registry.client_connections()
            if len(clients) != 1:
                logger.warning(f"{len(clients)} clients connected but no toClientId specified in answer")
                return
            to_client_id, target = clients[0]
            if not self.transport.is_open(target):
                logger.warning(f"Only client {to_client_id} is disconnected, dropping answer")
                return

        if await self._deliver(target, answer, f"answer to {to_client_id}"):
            logger.info(f"Forwarded answer from server to client {to_client_id}")

    async def _handle_candidate(self, peer, message):
        """ICE candidates go both ways"""
        if peer.is_server:
            await self._candidate_to_clients(message)
        else:
            await self._candidate_to_server(peer, message)

    async def _candidate_to_clients(self, message):
        candidate = signal_messages.candidate_for_client(message)
        to_client_id = self._target_client_id(message)

        if to_client_id is not None:
            target = self._live_client(to_client_id)
            if target is None:
                logger.warning(f"Target client {to_client_id} not found or disconnected")
                return
            if await self._deliver(target, candidate, f"candidate to {to_client_id}"):
                logger.debug(f"Forwarded ICE candidate from server to client {to_client_id}")
            return

        delivered = 0
        for client_id, connection in self.registry.client_connections():
            if not self.transport.is_open(connection):
                continue
            if await self._deliver(connection, candidate, f"candidate to {client_id}"):
                delivered += 1
        logger.debug(f"Broadcasted ICE candidate from server to {delivered} clients")

    async def _candidate_to_server(self, peer, message):
        server = self._live_server()
        if server is None:
            logger.warning(f"No server connection available, cannot forward candidate from {peer.client_id}")
            return

        forwarded = signal_messages.tag_sender(message, peer.client_id)
        if await self._deliver(server, forwarded, f"candidate from {peer.client_id}"):
            logger.debug(f"Forwarded ICE candidate from client {peer.client_id} to server")

    # Helpers

    def _close_in_background(self, connection):
        # The old peer may never answer the close handshake
        task = asyncio.ensure_future(self.transport.close(connection))
        self._closing.add(task)
        task.add_done_callback(self._close_done)

    def _close_done(self, task):
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Failed to close displaced server connection: {task.exception()}")

    async def wait_closed(self):
        """Wait for connections the router is closing in the background"""
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def _live_server(self):
        server = self.registry.server()
        if server is None or not self.transport.is_open(server):
            return None
        return server

    def _live_client(self, client_id):
        connection = self.registry.client(client_id)
        if connection is None or not self.transport.is_open(connection):
            return None
        return connection

    @staticmethod
    def _target_client_id(message):
        to_client_id = message.get("toClientId")
        if to_client_id is not None and not isinstance(to_client_id, str):
            raise MalformedMessage("toClientId must be a string")
        return to_client_id

    async def _deliver(self, connection, payload, what):
        """Fire-and-forget send. Failures are logged, the close event cleans up."""
        try:
            await self.transport.send(connection, payload)
        except DeliveryError as e:
            logger.error(f"Failed to send {what}: {e}")
            return False
        return True
