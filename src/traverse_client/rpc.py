"""Content-Length framed JSON-RPC messages over a byte stream.

A frame is a header block terminated by ``\\r\\n\\r\\n`` that declares
``Content-Length: N``, followed by exactly ``N`` bytes of UTF-8 JSON. The
declared length is the only frame boundary; nothing inside the body is ever
interpreted as a delimiter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, TypeAlias
import json
import re

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]

HEADER_TERMINATOR = b"\r\n\r\n"
MAX_HEADER_BYTES = 8 * 1024
_CONTENT_LENGTH = re.compile(rb"(?im)^.*content-length:[ \t]*(\d+)[ \t]*\r?$")


@dataclass(frozen=True)
class MalformedFrame:
    reason: str
    raw: bytes = b""


def encode_message(message: JSONObject) -> bytes:
    payload = json.dumps(message).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("utf-8")
    return header + payload


def write_rpc(stream, message: JSONObject) -> None:
    stream.write(encode_message(message))
    stream.flush()


def _content_length(head: bytes) -> int | None:
    # Stray output ahead of a header (log lines, leftovers) must not hide the length.
    matches = _CONTENT_LENGTH.findall(head)
    if not matches:
        return None
    return int(matches[-1])


class FrameDecoder:
    """Accumulates stream chunks and yields complete messages in arrival order."""

    def __init__(self, *, max_header_bytes: int = MAX_HEADER_BYTES) -> None:
        self._buffer = bytearray()
        self._pending_length: int | None = None
        self._max_header_bytes = max_header_bytes

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Iterator[JSONObject | MalformedFrame]:
        if chunk:
            self._buffer.extend(chunk)
        while True:
            if self._pending_length is None:
                end = self._buffer.find(HEADER_TERMINATOR)
                if end < 0:
                    if len(self._buffer) > self._max_header_bytes:
                        raw = bytes(self._buffer)
                        self._buffer.clear()
                        yield MalformedFrame("header exceeds size limit", raw[:256])
                    return
                head = bytes(self._buffer[:end])
                del self._buffer[: end + len(HEADER_TERMINATOR)]
                length = _content_length(head)
                if length is None or length <= 0:
                    yield MalformedFrame("missing or invalid Content-Length", head[:256])
                    continue
                self._pending_length = length
            length = self._pending_length
            if len(self._buffer) < length:
                return
            body = bytes(self._buffer[:length])
            del self._buffer[:length]
            self._pending_length = None
            yield _decode_body(body)


def _decode_body(body: bytes) -> JSONObject | MalformedFrame:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        return MalformedFrame(f"invalid JSON body: {exc}", body[:256])
    if not isinstance(message, dict):
        return MalformedFrame(f"message is {type(message).__name__}, not an object", body[:256])
    return message


def request_message(request_id: int, method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def notification_message(method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def response_message(request_id: JSONValue, result: JSONValue = None) -> JSONObject:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}
