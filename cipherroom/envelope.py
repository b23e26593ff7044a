"""
envelope.py
-----------
Wire format for room traffic: one JSON object per WebSocket text frame.

    {"from", "sent_at", "message_type", "filename"?, "content", "iv"?, "transfer_id"?}

decode() never raises. Unknown message types are kept as-is so newer servers
stay readable, and a frame that is not an envelope at all is turned into a
synthetic text envelope carrying the raw payload.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import DecodeError

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    TEXT = "text"
    FILE_START = "file_start"
    FILE_CHUNK = "file_chunk"
    FILE_END = "file_end"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"
    ROOM_SETTINGS = "room_settings"


FILE_TYPES = (MessageType.FILE_START, MessageType.FILE_CHUNK, MessageType.FILE_END)
NOTICE_TYPES = (MessageType.CLIENT_CONNECTED, MessageType.CLIENT_DISCONNECTED)

SYSTEM_SENDER = "System"

# serialization order of the known keys
FIELDS = ("from", "sent_at", "message_type", "filename", "content", "iv", "transfer_id")
OPTIONAL = ("sent_at", "filename", "iv", "transfer_id")


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Envelope:
    sender: str
    sent_at: Optional[str]
    message_type: str
    content: Any
    filename: Optional[str] = None
    iv: Optional[str] = None
    transfer_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    # set on synthetic envelopes built from frames that did not parse
    raw: bool = False

    @property
    def kind(self) -> Optional[MessageType]:
        """The known MessageType, or None for types this client does not know."""
        try:
            return MessageType(self.message_type)
        except ValueError:
            return None

    @property
    def is_file(self) -> bool:
        return self.kind in FILE_TYPES

    def to_dict(self) -> Dict[str, Any]:
        values = {
            "from": self.sender,
            "sent_at": self.sent_at,
            "message_type": self.message_type,
            "filename": self.filename,
            "content": self.content,
            "iv": self.iv,
            "transfer_id": self.transfer_id,
        }
        # a known key kept in extra was an explicit null; keep it in place
        out = {k: values[k] for k in FIELDS
               if values[k] is not None or k == "content" or k in self.extra}
        for k, v in self.extra.items():
            out.setdefault(k, v)
        return out


def encode(envelope: Envelope) -> str:
    return json.dumps(envelope.to_dict(), ensure_ascii=False)


def _raw_text(raw: Any) -> Envelope:
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    return Envelope(
        sender=SYSTEM_SENDER,
        sent_at=now_iso(),
        message_type=MessageType.TEXT.value,
        content=str(raw),
        raw=True,
    )


def load_object(raw: Any) -> Dict[str, Any]:
    """json.loads one frame into a dict, or raise DecodeError."""
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as e:
        # RecursionError: nesting deeper than the parser's stack
        raise DecodeError(f"frame is not JSON: {type(e).__name__}") from e
    if not isinstance(obj, dict):
        raise DecodeError("frame is not a JSON object")
    return obj


def parse(raw: Any) -> Envelope:
    """Strict decode: raises DecodeError for anything that is not an envelope."""
    obj = load_object(raw)
    sender = obj.get("from")
    mtype = obj.get("message_type")
    if not isinstance(sender, str) or not isinstance(mtype, str) or "content" not in obj:
        raise DecodeError("frame is missing envelope fields")

    return Envelope(
        sender=sender,
        sent_at=obj.get("sent_at"),
        message_type=mtype,
        content=obj["content"],
        filename=obj.get("filename"),
        iv=obj.get("iv"),
        transfer_id=obj.get("transfer_id"),
        # explicit nulls ride along in extra so re-encoding keeps them
        extra={k: v for k, v in obj.items() if k not in FIELDS or (v is None and k in OPTIONAL)},
    )


def decode(raw: Any) -> Envelope:
    """Parse one frame. Never raises; see module docstring."""
    try:
        return parse(raw)
    except DecodeError as e:
        logger.warning("%s, showing it as raw text", e)
        return _raw_text(raw)

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def text_envelope(sender: str, ciphertext: str, iv: str) -> Envelope:
    return Envelope(sender, now_iso(), MessageType.TEXT.value, ciphertext, iv=iv)


def file_start_envelope(sender: str, filename: str, size: int, transfer_id: str,
                        sent_at: Optional[str] = None) -> Envelope:
    return Envelope(sender, sent_at or now_iso(), MessageType.FILE_START.value, str(size),
                    filename=filename, transfer_id=transfer_id)


def file_chunk_envelope(sender: str, filename: str, ciphertext: str, iv: str,
                        transfer_id: str) -> Envelope:
    return Envelope(sender, now_iso(), MessageType.FILE_CHUNK.value, ciphertext,
                    filename=filename, iv=iv, transfer_id=transfer_id)


def file_end_envelope(sender: str, filename: str, transfer_id: str) -> Envelope:
    return Envelope(sender, now_iso(), MessageType.FILE_END.value, filename,
                    filename=filename, transfer_id=transfer_id)


def notice_envelope(message_type: MessageType, username: str, sender: str = "system") -> Envelope:
    return Envelope(sender, now_iso(), MessageType(message_type).value, username)


def settings_envelope(settings: Dict[str, str], sender: str = "system") -> Envelope:
    return Envelope(sender, now_iso(), MessageType.ROOM_SETTINGS.value, dict(settings))
