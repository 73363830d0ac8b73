import json

import pytest
from aiortc import RTCPeerConnection, RTCSessionDescription

from signaling_client import SignalingClient
from webrtc_receiver import WebRTCReceiver


class FakeSignaling:
    def __init__(self):
        self.answers = []
        self.handler = None

    async def send_answer(self, sdp, to_client_id=None):
        self.answers.append((sdp, to_client_id))
        return True


@pytest.fixture
async def receiver():
    receiver = WebRTCReceiver()
    receiver.attach(FakeSignaling())
    yield receiver
    await receiver.close()


async def make_offer():
    offerer = RTCPeerConnection()
    offerer.createDataChannel("chat")
    await offerer.setLocalDescription(await offerer.createOffer())
    return offerer


async def test_offer_is_answered_for_its_client(receiver):
    offerer = await make_offer()
    try:
        await receiver.on_offer(offerer.localDescription.sdp, "client-2")

        [(sdp, to_client_id)] = receiver.signaling.answers
        assert to_client_id == "client-2"
        assert "client-2" in receiver.peer_connections
        await offerer.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
    finally:
        await offerer.close()


async def test_new_offer_replaces_session(receiver):
    first = await make_offer()
    second = await make_offer()
    try:
        await receiver.on_offer(first.localDescription.sdp, "client-2")
        old = receiver.peer_connections["client-2"]
        await receiver.on_offer(second.localDescription.sdp, "client-2")
        assert receiver.peer_connections["client-2"] is not old
        assert old.connectionState == "closed"
    finally:
        await first.close()
        await second.close()


async def test_candidate_without_session_is_ignored(receiver):
    await receiver.on_ice_candidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host", "0", 0, "client-9")
    assert receiver.peer_connections == {}


async def test_disconnect_closes_sessions(receiver):
    offerer = await make_offer()
    try:
        await receiver.on_offer(offerer.localDescription.sdp, "client-2")
        await receiver.on_disconnected()
        assert receiver.peer_connections == {}
    finally:
        await offerer.close()


BROKEN_OFFER = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 0\r\n"


async def test_rejected_offer_drops_half_built_session(receiver):
    with pytest.raises(ValueError):
        await receiver.on_offer(BROKEN_OFFER, "client-2")
    assert receiver.peer_connections == {}
    assert receiver.signaling.answers == []


async def test_receiver_keeps_answering_after_rejected_offer(receiver):
    dispatcher = SignalingClient("ws://relay.test:10000", receiver, role="server")
    await dispatcher.handle_signaling_message(json.dumps(
        {"type": "offer", "sdp": BROKEN_OFFER, "fromClientId": "client-2"}))
    assert receiver.peer_connections == {}

    offerer = await make_offer()
    try:
        await dispatcher.handle_signaling_message(json.dumps(
            {"type": "offer", "sdp": offerer.localDescription.sdp, "fromClientId": "client-3"}))
        assert [to for _, to in receiver.signaling.answers] == ["client-3"]
    finally:
        await offerer.close()
