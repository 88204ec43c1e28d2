"""Message framing: turning byte streams into JSON-RPC message readers and writers."""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

from mcpkit.jsonrpc2.messages import Message, decode_message, encode_message

_CHUNK = 4096
_WHITESPACE = b" \t\r\n"
_SCALAR_DELIMITERS = frozenset(b' \t\r\n,:[]{}"')
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_OPENERS = frozenset(b"{[")
_CLOSERS = frozenset(b"}]")
_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


class Reader(Protocol):
    def read(self) -> Message: ...


class Writer(Protocol):
    def write(self, msg: Message) -> None: ...


class _Buffered:
    """A growable read buffer over a byte stream."""

    def __init__(self, stream: Any) -> None:
        self._read = getattr(stream, "read1", None) or stream.read
        self.buffer = bytearray()
        self.eof = False

    def fill(self) -> bool:
        """Read more bytes into the buffer; False once the stream is exhausted."""
        if self.eof:
            return False
        data = self._read(_CHUNK)
        if not data:
            self.eof = True
            return False
        self.buffer += data
        return True

    def readline(self) -> tuple[bytes, bool]:
        """Return the next line and whether it ended with a newline."""
        while True:
            newline = self.buffer.find(b"\n")
            if newline >= 0:
                line = bytes(self.buffer[: newline + 1])
                del self.buffer[: newline + 1]
                return line, True
            if not self.fill():
                line = bytes(self.buffer)
                self.buffer.clear()
                return line, False

    def read_exact(self, size: int) -> bytes:
        while len(self.buffer) < size:
            if not self.fill():
                raise ValueError("unexpected EOF")
        data = bytes(self.buffer[:size])
        del self.buffer[:size]
        return data


def _flush(stream: Any) -> None:
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


def _encode(msg: Message) -> bytes:
    try:
        return encode_message(msg)
    except ValueError as exc:
        raise ValueError(f"marshaling message: {exc}") from exc


def _value_end(buf: bytearray, start: int, at_eof: bool) -> int | None:
    """Return the end of the JSON value starting at start, or None if more input is needed."""
    if buf[start] not in _OPENERS and buf[start] != _QUOTE:
        for pos, c in enumerate(buf[start + 1 :], start + 1):
            if c in _SCALAR_DELIMITERS:
                return pos
        return len(buf) if at_eof else None

    depth = 0
    in_string = False
    escaped = False
    for pos, c in enumerate(buf[start:], start):
        if in_string:
            if escaped:
                escaped = False
            elif c == _BACKSLASH:
                escaped = True
            elif c == _QUOTE:
                in_string = False
                if depth == 0:
                    return pos + 1
        elif c == _QUOTE:
            in_string = True
        elif c in _OPENERS:
            depth += 1
        elif c in _CLOSERS:
            depth -= 1
            if depth <= 0:
                return pos + 1
    return None


class RawReader:
    """Reads messages that follow one another with no framing but their JSON syntax."""

    def __init__(self, stream: Any) -> None:
        self._in = _Buffered(stream)

    def read(self) -> Message:
        """Return the next message; raise EOFError at a clean end of stream."""
        while True:
            at_eof = self._in.eof
            buf = self._in.buffer
            start = len(buf) - len(buf.lstrip(_WHITESPACE))
            if start:
                del buf[:start]
            if buf:
                end = _value_end(buf, 0, at_eof)
                if end is not None:
                    data = bytes(buf[:end])
                    del buf[:end]
                    return decode_message(data)
            if at_eof:
                if buf:
                    raise ValueError("unexpected EOF in JSON value")
                raise EOFError("end of stream")
            self._in.fill()


class RawWriter:
    """Writes messages as bare JSON values."""

    def __init__(self, stream: Any) -> None:
        self._out = stream

    def write(self, msg: Message) -> None:
        self._out.write(_encode(msg))
        _flush(self._out)


class HeaderReader:
    """Reads messages preceded by a Content-Length header block."""

    def __init__(self, stream: Any) -> None:
        self._in = _Buffered(stream)

    def read(self) -> Message:
        """Return the next message; raise EOFError at a clean end of stream."""
        first_read = True
        content_length = 0
        while True:
            line, complete = self._in.readline()
            if not complete:
                if first_read and not line:
                    raise EOFError("end of stream")
                raise ValueError("failed reading header line: unexpected EOF")
            first_read = False

            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                break
            name, colon, value = text.partition(":")
            if not colon:
                raise ValueError(f"invalid header line {json.dumps(text)}")
            value = value.strip()
            if name == "Content-Length":
                if not _INTEGER.fullmatch(value) or not _INT32_MIN <= int(value) <= _INT32_MAX:
                    raise ValueError(f"failed parsing Content-Length: {value}")
                content_length = int(value)
                if content_length <= 0:
                    raise ValueError(f"invalid Content-Length: {content_length}")
        if content_length == 0:
            raise ValueError("missing Content-Length header")
        return decode_message(self._in.read_exact(content_length))


class HeaderWriter:
    """Writes messages preceded by a Content-Length header block."""

    def __init__(self, stream: Any) -> None:
        self._out = stream

    def write(self, msg: Message) -> None:
        data = _encode(msg)
        self._out.write(f"Content-Length: {len(data)}\r\n\r\n".encode("ascii"))
        self._out.write(data)
        _flush(self._out)


class RawFramer:
    """Frames messages with no wrapping, relying on JSON syntax for boundaries."""

    def reader(self, stream: Any) -> RawReader:
        return RawReader(stream)

    def writer(self, stream: Any) -> RawWriter:
        return RawWriter(stream)


class HeaderFramer:
    """Frames messages with a Content-Length header, as LSP does."""

    def reader(self, stream: Any) -> HeaderReader:
        return HeaderReader(stream)

    def writer(self, stream: Any) -> HeaderWriter:
        return HeaderWriter(stream)


def raw_framer() -> RawFramer:
    return RawFramer()


def header_framer() -> HeaderFramer:
    return HeaderFramer()