"""
Peer side of the signaling relay
Connects to the relay as a client or as the server peer, decodes relay
frames and hands them to a SignalingHandler
"""

import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.protocol import State

import signal_messages
from signal_messages import MalformedMessage

logger = logging.getLogger(__name__)


class SignalingHandler:
    """Callbacks for relay events. Override the ones you care about."""

    async def on_connected(self, role, client_id):
        pass

    async def on_disconnected(self):
        pass

    async def on_offer(self, sdp, from_client_id):
        pass

    async def on_answer(self, sdp):
        pass

    async def on_ice_candidate(self, candidate, sdp_mid, sdp_mline_index, from_client_id):
        pass

    async def on_error(self, message):
        pass


def with_role(url, role):
    """Add role=server to the URL query for the server peer"""
    if role != signal_messages.ROLE_SERVER:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "role"]
    query.append(("role", role))
    return urlunsplit(parts._replace(path=parts.path or "/", query=urlencode(query)))


class SignalingClient:
    def __init__(self, url, handler=None, role=signal_messages.ROLE_CLIENT):
        self.url = with_role(url, role)
        self.role = role
        self.handler = handler if handler is not None else SignalingHandler()
        self.websocket = None
        self.client_id = None
        self.acknowledged_role = None

    @property
    def is_connected(self):
        return self.websocket is not None and self.websocket.state is State.OPEN

    async def connect(self):
        """Connect to signaling server"""
        logger.info(f"Connecting to signaling server: {self.url}")
        self.websocket = await websockets.connect(self.url)
        logger.info("Connected to signaling server")

    async def close(self):
        if self.websocket is not None:
            await self.websocket.close()

    async def run(self):
        """Read relay frames until the connection goes away"""
        if self.websocket is None:
            await self.connect()
        try:
            async for message in self.websocket:
                await self.handle_signaling_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Disconnected from signaling server: {e}")
        finally:
            await self.handler.on_disconnected()

    async def handle_signaling_message(self, message):
        """Decode one relay frame and dispatch it to the handler"""
        try:
            data = signal_messages.decode(message)
            message_type = data["type"]

            if message_type == signal_messages.CONNECTED:
                self.client_id = data.get("clientId")
                self.acknowledged_role = data.get("role")
                logger.info(f"Connection acknowledged by signaling server: "
                            f"role={self.acknowledged_role}, clientId={self.client_id}")
                await self.handler.on_connected(self.acknowledged_role, self.client_id)

            elif message_type == signal_messages.OFFER:
                await self.handler.on_offer(
                    signal_messages.require_string(data, "sdp"),
                    data.get("fromClientId"),
                )

            elif message_type == signal_messages.ANSWER:
                await self.handler.on_answer(signal_messages.require_string(data, "sdp"))

            elif message_type == signal_messages.CANDIDATE:
                await self.handler.on_ice_candidate(
                    signal_messages.require_string(data, "candidate"),
                    signal_messages.require_string(data, "sdpMid"),
                    signal_messages.require_int(data, "sdpMLineIndex"),
                    data.get("fromClientId"),
                )

            elif message_type == signal_messages.ERROR:
                error = data.get("message") or "Unknown error"
                logger.error(f"Error from signaling server: {error}")
                await self.handler.on_error(error)

            else:
                logger.warning(f"Unknown message type: {message_type}")

        except MalformedMessage as e:
            logger.error(f"Error parsing message: {e}")
        except Exception as e:
            logger.error(f"Error handling signaling message: {e}")

    async def send_offer(self, sdp):
        return await self._send(signal_messages.OFFER, signal_messages.offer(sdp))

    async def send_answer(self, sdp, to_client_id=None):
        message = signal_messages.answer(sdp)
        if to_client_id is not None:
            message["toClientId"] = to_client_id
        return await self._send(signal_messages.ANSWER, message)

    async def send_ice_candidate(self, candidate, sdp_mid, sdp_mline_index, to_client_id=None):
        message = signal_messages.candidate(candidate, sdp_mid, sdp_mline_index)
        if to_client_id is not None:
            message["toClientId"] = to_client_id
        return await self._send(signal_messages.CANDIDATE, message)

    async def _send(self, message_type, message):
        if not self.is_connected:
            logger.warning(f"Not connected, cannot send {message_type}")
            return False
        try:
            await self.websocket.send(signal_messages.encode(message))
        except websockets.exceptions.ConnectionClosed as e:
            logger.error(f"Failed to send {message_type}: {e}")
            return False
        logger.debug(f"Sent {message_type} to signaling server")
        return True
