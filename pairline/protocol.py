# pairline/protocol.py
# Wire protocol for the Pairline signaling server.
# Every frame is one JSON object carrying a string 'type' field plus type-specific fields.
# This module names the message types and converts between frames and message dictionaries.

import json             # For parsing and serializing JSON frames.
import logging          # For logging frames that fail to decode.
from datetime import datetime, timezone # For the server-assigned chat timestamps.

# --- Client -> Server Message Types ---
FIND_PARTNER = 'find-partner'       # Enter matchmaking.
OFFER = 'offer'                     # Session description offer, relayed verbatim.
ANSWER = 'answer'                   # Session description answer, relayed verbatim.
ICE_CANDIDATE = 'ice-candidate'     # Connectivity candidate, relayed verbatim.
CHAT_MESSAGE = 'chat-message'       # Text chat (also sent Server -> Client with a timestamp).
END_CHAT = 'end-chat'               # Leave the current session without disconnecting.

# --- Server -> Client Message Types ---
CONNECTED = 'connected'                     # Sent once on connect, carries the assigned clientId.
WAITING_FOR_PARTNER = 'waiting-for-partner' # Queued, no partner available yet.
PARTNER_FOUND = 'partner-found'             # Paired, carries the partner's id.
PARTNER_DISCONNECTED = 'partner-disconnected' # The partner left (end-chat or connection closed).
ERROR = 'error'                             # Transport-level error sent right before a forced close.

# RELAY_TYPES: Session-establishment messages forwarded to the partner untouched.
RELAY_TYPES = frozenset([OFFER, ANSWER, ICE_CANDIDATE])


def decode_frame(frame):
    """
    Parses one inbound frame into a message dictionary.

    Args:
        frame (str | bytes): The raw frame received from the transport.

    Returns:
        dict | None: The decoded message, or None when the frame is not a JSON object
                     with a non-empty string 'type' field.
    """
    try:
        # Binary frames are accepted as long as they carry UTF-8 JSON.
        if isinstance(frame, (bytes, bytearray)):
            frame = frame.decode('utf-8')
        message = json.loads(frame)
    except (UnicodeDecodeError, ValueError, RecursionError):
        # ValueError covers JSONDecodeError and integers past the int-string digit limit.
        # RecursionError comes from deeply nested arrays or objects.
        logging.warning("Dropping frame that is not decodable UTF-8 JSON.")
        return None

    if not isinstance(message, dict):
        logging.warning(f"Dropping frame that is not a JSON object: {type(message).__name__}")
        return None

    message_type = message.get('type')
    if not isinstance(message_type, str) or not message_type:
        logging.warning("Dropping frame with a missing or non-string 'type'.")
        return None

    return message


def encode(message_type, **fields):
    """Builds the JSON frame for a server-originated message."""
    return json.dumps({'type': message_type, **fields})


def utc_timestamp():
    """Returns the current UTC time as ISO-8601 with millisecond precision and a 'Z' suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
