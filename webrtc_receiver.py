#!/usr/bin/env python3
"""
WebRTC receiver that answers client offers through the signaling relay
Connects as the server peer, keeps one peer connection per client and
sends each client's media straight back to it
"""

import argparse
import asyncio
import logging

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp

import signal_messages
from signaling_client import SignalingClient, SignalingHandler

logger = logging.getLogger(__name__)

DEFAULT_SIGNALING_URL = "ws://localhost:10000"


class WebRTCReceiver(SignalingHandler):
    def __init__(self, signaling=None):
        self.signaling = signaling
        self.peer_connections = {}  # client id -> RTCPeerConnection
        self.relay = MediaRelay()

    def attach(self, signaling):
        self.signaling = signaling
        signaling.handler = self
        return signaling

    async def on_connected(self, role, client_id):
        if role != signal_messages.ROLE_SERVER:
            logger.warning(f"Relay registered this receiver as {role}, offers will not reach it")
        else:
            logger.info("WebRTC receiver ready. Waiting for client offers...")

    async def on_offer(self, sdp, from_client_id):
        """Answer an offer from a client"""
        logger.info(f"Received offer from {from_client_id}")

        # A fresh offer from the same client replaces its old session
        await self.close_peer(from_client_id)
        peer_connection = RTCPeerConnection()
        self.peer_connections[from_client_id] = peer_connection

        @peer_connection.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {from_client_id}")
            peer_connection.addTrack(self.relay.subscribe(track))

        @peer_connection.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Data channel '{channel.label}' opened by {from_client_id}")

            @channel.on("message")
            def on_message(message):
                channel.send(message)

        @peer_connection.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Peer connection with {from_client_id} is {peer_connection.connectionState}")
            if peer_connection.connectionState in ("failed", "closed"):
                if self.peer_connections.get(from_client_id) is peer_connection:
                    await self.close_peer(from_client_id)

        try:
            await peer_connection.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            answer = await peer_connection.createAnswer()
            await peer_connection.setLocalDescription(answer)
        except Exception:
            logger.warning(f"Could not negotiate with {from_client_id}, dropping session")
            await self.close_peer(from_client_id)
            raise

        await self.signaling.send_answer(peer_connection.localDescription.sdp, to_client_id=from_client_id)
        logger.info(f"Sent answer to {from_client_id}")

    async def on_ice_candidate(self, candidate, sdp_mid, sdp_mline_index, from_client_id):
        peer_connection = self.peer_connections.get(from_client_id)
        if peer_connection is None:
            logger.warning(f"ICE candidate from {from_client_id} without a session, ignoring")
            return

        if not candidate:
            # End of candidates
            return

        if candidate.startswith("candidate:"):
            candidate = candidate[len("candidate:"):]
        try:
            ice_candidate = candidate_from_sdp(candidate)
        except (ValueError, IndexError) as e:
            logger.warning(f"Failed to parse ICE candidate from {from_client_id}: {e}")
            return
        ice_candidate.sdpMid = sdp_mid
        ice_candidate.sdpMLineIndex = sdp_mline_index
        await peer_connection.addIceCandidate(ice_candidate)
        logger.debug(f"Added ICE candidate from {from_client_id}")

    async def on_error(self, message):
        logger.error(f"Signaling error: {message}")

    async def on_disconnected(self):
        await self.close()

    async def close_peer(self, client_id):
        peer_connection = self.peer_connections.pop(client_id, None)
        if peer_connection is not None:
            await peer_connection.close()
            logger.info(f"Closed peer connection with {client_id}")

    async def close(self):
        for client_id in list(self.peer_connections):
            await self.close_peer(client_id)

    async def run(self, url=DEFAULT_SIGNALING_URL):
        """Main loop to handle WebRTC connections"""
        signaling = self.attach(SignalingClient(url, self, role=signal_messages.ROLE_SERVER))
        try:
            await signaling.connect()
            await signaling.run()
        finally:
            await self.close()


async def main(argv=None):
    """Start the WebRTC receiver"""
    parser = argparse.ArgumentParser(description="WebRTC loopback receiver")
    parser.add_argument("--signaling-url", default=DEFAULT_SIGNALING_URL,
                        help="WebSocket URL for signaling server")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))

    receiver = WebRTCReceiver()
    await receiver.run(args.signaling_url)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Receiver stopped by user")


if __name__ == "__main__":
    run()
