"""
Wire format for the signaling relay.

Every frame is a JSON object with a "type" discriminator. Frames travelling
toward the server peer keep everything the sender put in them and gain a
"fromClientId" tag; frames travelling toward a client are rebuilt so only
the canonical fields survive.
"""

import json

ROLE_SERVER = "server"
ROLE_CLIENT = "client"

OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
CONNECTED = "connected"
ERROR = "error"


class MalformedMessage(ValueError):
    """Raised when a frame is not a usable signaling message"""


def decode(raw):
    """Parse a text or binary frame into a message dict with a string type"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage("message is not a JSON object")

    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise MalformedMessage("message has no type")

    return data


def encode(message):
    return json.dumps(message)


def require_string(message, field):
    value = message.get(field)
    if not isinstance(value, str):
        raise MalformedMessage(f"{message.get('type')} is missing string field '{field}'")
    return value


def require_int(message, field):
    value = message.get(field)
    # bool is an int subclass but never a valid m-line index
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedMessage(f"{message.get('type')} is missing integer field '{field}'")
    return value


def connected(role, client_id=None):
    """Acknowledgment sent to a peer right after it connects"""
    ack = {"type": CONNECTED, "role": role}
    if role == ROLE_CLIENT:
        ack["clientId"] = client_id
    return ack


def error(message):
    return {"type": ERROR, "message": message}


def tag_sender(message, client_id):
    """Copy of a client frame with the sender's id attached, otherwise untouched"""
    tagged = dict(message)
    tagged["fromClientId"] = client_id
    return tagged


def offer(sdp):
    return {"type": OFFER, "sdp": sdp}


def answer(sdp):
    return {"type": ANSWER, "sdp": sdp}


def candidate(candidate, sdp_mid, sdp_mline_index):
    return {
        "type": CANDIDATE,
        "candidate": candidate,
        "sdpMid": sdp_mid,
        "sdpMLineIndex": sdp_mline_index,
    }


def answer_for_client(message):
    """Rebuild a server answer into the minimal shape a client receives"""
    return answer(require_string(message, "sdp"))


def candidate_for_client(message):
    """Rebuild a server ICE candidate into the minimal shape a client receives"""
    return candidate(
        require_string(message, "candidate"),
        require_string(message, "sdpMid"),
        require_int(message, "sdpMLineIndex"),
    )
