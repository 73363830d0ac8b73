#!/usr/bin/env python3
"""
WebRTC signaling relay server using WebSockets
One server peer (ws://host:port/?role=server) and any number of client peers
exchange SDP offers/answers and ICE candidates through the relay router
"""

import argparse
import asyncio
import logging
import os

import websockets
from websockets.protocol import State

import signal_messages
from relay_router import DeliveryError, RelayRouter, role_from_request_path

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 10000
DEFAULT_PING_INTERVAL = 60
DEFAULT_PING_TIMEOUT = 60


class WebSocketTransport:
    """Send/close primitives the router uses, on top of websockets connections"""

    async def send(self, websocket, payload):
        try:
            await websocket.send(signal_messages.encode(payload))
        except websockets.exceptions.ConnectionClosed as e:
            raise DeliveryError(f"connection closed ({e})") from e

    async def close(self, websocket):
        await websocket.close()

    def is_open(self, websocket):
        return websocket.state is State.OPEN


class SignalingServer:
    def __init__(self, router=None):
        self.router = router if router is not None else RelayRouter(WebSocketTransport())

    async def handle_client(self, websocket):
        """Handle WebSocket connection from a peer"""
        path = websocket.request.path if websocket.request is not None else None
        role = role_from_request_path(path)
        try:
            await self.router.on_open(websocket, role)

            # Frames are handled one at a time so each peer's order is kept
            async for message in websocket:
                await self.router.on_message(websocket, message)

        except websockets.exceptions.ConnectionClosed:
            logger.info("Peer disconnected")
        except Exception as e:
            await self.router.on_error(websocket, e)
        finally:
            await self.router.on_close(websocket)

    def serve(self, host=DEFAULT_HOST, port=DEFAULT_PORT,
              ping_interval=DEFAULT_PING_INTERVAL, ping_timeout=DEFAULT_PING_TIMEOUT):
        return websockets.serve(
            self.handle_client,
            host,
            port,
            ping_interval=ping_interval,
            ping_timeout=ping_timeout
        )


def resolve_port(cli_port, environ=None):
    """PORT from the environment wins over --port, as on most cloud platforms"""
    environ = os.environ if environ is None else environ
    env_port = environ.get("PORT")
    if env_port:
        try:
            return int(env_port)
        except ValueError:
            logger.error(f"Invalid PORT env var: {env_port}")
    return cli_port


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="WebRTC signaling relay server")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Bind host (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"WebSocket port (default: {DEFAULT_PORT}, overridden by $PORT)")
    parser.add_argument("--ping-interval", type=float, default=DEFAULT_PING_INTERVAL,
                        help="Seconds between keep-alive pings")
    parser.add_argument("--ping-timeout", type=float, default=DEFAULT_PING_TIMEOUT,
                        help="Seconds without a pong before a peer is dropped")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    return parser.parse_args(argv)


async def main(argv=None):
    """Start the signaling server"""
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))

    port = resolve_port(args.port)
    server = SignalingServer()

    async with server.serve(args.host, port, args.ping_interval, args.ping_timeout):
        logger.info("========================================")
        logger.info("WebRTC Signaling Server Started")
        logger.info(f"Listening on ws://{args.host}:{port}")
        logger.info("Waiting for connections...")
        logger.info("========================================")
        await asyncio.Future()  # Run forever


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    run()
