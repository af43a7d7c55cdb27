"""
Custom Transfer Wire Protocol

Design Decision: Message Format
===============================

Options Considered:
1. Length-prefixed binary frames
   - Compact, but every agent author must implement framing
2. Line-delimited JSON
   - Any language can read a line and parse JSON
   - Easy to debug by hand (agents can be shell scripts)
3. JSON with an explicit "event" discriminant
   - Unambiguous decoding
   - Breaks existing agents that never send one

Decision: Line-delimited JSON, decoded structurally
- One JSON object per line, UTF-8, terminated by a single '\\n'
- JSON string escaping guarantees no embedded line terminators
- Responses carry no type tag, so a reader tries the candidate
  schemas in priority order; the first one that validates wins
- Distinguishing fields are *required*, so a progress line never
  validates as a bare "anything goes" model by accident
- Unknown fields are ignored so agents can add their own

Message Flow (one worker):
```
client -> agent   {"operation": "upload", "concurrent": true, "concurrenttransfers": 3}
agent  -> client  {}
client -> agent   {"oid": "...", "size": 123, "path": "...", "action": {...}}
agent  -> client  {"oid": "...", "bytesSoFar": 64, "bytesSinceLast": 64}    (0..N)
agent  -> client  {"oid": "..."}                                             (terminal)
...
client -> agent   {"complete": true}
```
"""

import logging
from typing import Dict, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ProtocolError

logger = logging.getLogger(__name__)

# Agents may send arbitrarily large lines (e.g. long error messages);
# anything past this is treated as a broken agent.
MAX_LINE_LENGTH = 1024 * 1024

M = TypeVar('M', bound='WireMessage')


class WireMessage(BaseModel):
    """Base for every message on the wire."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    def to_line(self) -> bytes:
        """Serialize to one UTF-8 JSON line, newline included."""
        return encode_message(self)


# === Shared Structures ===

class ObjectError(WireMessage):
    """An error embedded in a response (not a communication failure)."""
    code: int = 0
    message: str = ''

    @model_validator(mode='before')
    @classmethod
    def _accept_plain_string(cls, data):
        # Simple agents often reply {"error": "some text"}
        if isinstance(data, str):
            return {'message': data}
        return data

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} (code {self.code})"
        return self.message


class Action(WireMessage):
    """
    A pre-resolved resource action: where the agent should send or fetch
    the bytes, plus any headers (credentials) needed to do so.
    """
    href: str
    header: Dict[str, str] = Field(default_factory=dict)
    expires_at: Optional[str] = None


# === Requests (client -> agent) ===

class InitRequest(WireMessage):
    operation: str
    concurrent: bool
    concurrent_transfers: int = Field(alias='concurrenttransfers')


class UploadRequest(WireMessage):
    oid: str
    size: int
    local_path: str = Field(alias='path')
    action: Action


class DownloadRequest(WireMessage):
    oid: str
    size: int
    action: Action


class TerminateRequest(WireMessage):
    complete: bool = True


# === Responses (agent -> client) ===

class InitResponse(WireMessage):
    error: Optional[ObjectError] = None


class ProgressResponse(WireMessage):
    oid: str
    bytes_so_far: int = Field(alias='bytesSoFar')
    bytes_since_last: int = Field(alias='bytesSinceLast')


class TransferResponse(WireMessage):
    """Terminal response for one transfer; common to upload and download."""
    oid: str
    path: Optional[str] = None  # download only
    error: Optional[ObjectError] = None


# Progress first: every progress line also satisfies TransferResponse
TRANSFER_RESPONSES: Tuple[Type[WireMessage], ...] = (ProgressResponse, TransferResponse)


# === Encode / Decode ===

def encode_message(message: WireMessage) -> bytes:
    """
    Encode a message as a single line of compact JSON.

    Fields left as None are omitted; field names use their wire aliases.
    """
    text = message.model_dump_json(by_alias=True, exclude_none=True)
    return text.encode('utf-8') + b'\n'


def decode_one_of(line: Union[str, bytes],
                  candidates: Sequence[Type[WireMessage]]) -> Tuple[int, WireMessage]:
    """
    Decode a line against an ordered list of candidate message types.

    Returns:
        (index, message) for the first candidate that validates

    Raises:
        ProtocolError: if the line matches none of the candidates
    """
    if isinstance(line, bytes):
        try:
            line = line.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Response is not valid UTF-8: {e}") from e

    for index, candidate in enumerate(candidates):
        try:
            return index, candidate.model_validate_json(line)
        except ValidationError:
            continue

    names = ', '.join(c.__name__ for c in candidates)
    raise ProtocolError(
        f"Response {line.rstrip()!r} did not match any of possible responses [{names}]"
    )


def decode_message(line: Union[str, bytes], message_type: Type[M]) -> M:
    """Decode a line that must be exactly one message type."""
    _, message = decode_one_of(line, [message_type])
    return message
