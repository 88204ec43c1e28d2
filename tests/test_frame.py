import io

import pytest

from mcpkit.jsonrpc2.frame import header_framer, raw_framer
from mcpkit.jsonrpc2.messages import (
    ID,
    Request,
    new_call,
    new_error,
    new_notification,
    new_response,
    string_id,
)


class Trickle:
    """A stream that hands out one byte per read."""

    def __init__(self, data: bytes) -> None:
        self._data = io.BytesIO(data)

    def read(self, n: int = -1) -> bytes:
        return self._data.read(1)


def _messages():
    return [
        new_notification("alive", None),
        new_call(string_id("msg1"), "ping", {"text": "a } tricky \" string {"}),
        new_response(ID(3), None, new_error(0, "computing fix edits")),
        new_response(string_id("msg2"), "pong", None),
    ]


def _write_all(framer, messages) -> bytes:
    out = io.BytesIO()
    writer = framer.writer(out)
    for msg in messages:
        writer.write(msg)
    return out.getvalue()


def test_header_writer_wire_bytes():
    body = b'{"jsonrpc":"2.0","method":"alive"}'
    data = _write_all(header_framer(), [new_notification("alive", None)])
    assert data == f"Content-Length: {len(body)}\r\n\r\n".encode() + body


def test_raw_writer_wire_bytes():
    data = _write_all(raw_framer(), [new_call(string_id("msg1"), "ping", None)])
    assert data == b'{"jsonrpc":"2.0","id":"msg1","method":"ping"}'


@pytest.mark.parametrize("framer", [raw_framer(), header_framer()])
def test_round_trip(framer):
    messages = _messages()
    reader = framer.reader(io.BytesIO(_write_all(framer, messages)))
    assert [reader.read() for _ in messages] == messages
    with pytest.raises(EOFError):
        reader.read()


@pytest.mark.parametrize("framer", [raw_framer(), header_framer()])
def test_round_trip_one_byte_at_a_time(framer):
    messages = _messages()
    reader = framer.reader(Trickle(_write_all(framer, messages)))
    assert [reader.read() for _ in messages] == messages


def test_raw_reader_skips_whitespace_between_values():
    data = b'  {"jsonrpc":"2.0","method":"a"}\n\t{"jsonrpc":"2.0","id":1,"method":"b"}  \n'
    reader = raw_framer().reader(io.BytesIO(data))
    assert reader.read() == Request(method="a")
    assert reader.read() == Request(method="b", id=ID(1))
    with pytest.raises(EOFError):
        reader.read()


def test_raw_reader_empty_stream_is_clean_eof():
    with pytest.raises(EOFError):
        raw_framer().reader(io.BytesIO(b"")).read()


def test_raw_reader_rejects_invalid_json():
    with pytest.raises(ValueError):
        raw_framer().reader(io.BytesIO(b"invalid json")).read()


def test_raw_reader_rejects_truncated_value():
    with pytest.raises(ValueError):
        raw_framer().reader(io.BytesIO(b'{"jsonrpc":"2.0","method":')).read()


def test_header_reader_empty_stream_is_clean_eof():
    with pytest.raises(EOFError):
        header_framer().reader(io.BytesIO(b"")).read()


def test_header_reader_ignores_unknown_headers():
    body = b'{"jsonrpc":"2.0","method":"alive"}'
    data = (
        b"Content-Type: application/vscode-jsonrpc\r\n"
        + f"Content-Length: {len(body)}\r\n\r\n".encode()
        + body
    )
    assert header_framer().reader(io.BytesIO(data)).read() == new_notification("alive", None)


@pytest.mark.parametrize(
    "data, match",
    [
        (b"X-Other: 1\r\n\r\n{}", "missing Content-Length header"),
        (b"Content-Length: 0\r\n\r\n", "invalid Content-Length"),
        (b"Content-Length: abc\r\n\r\n", "failed parsing Content-Length"),
        (b"no colon here\r\n\r\n", "invalid header line"),
        (b"Content-Length: 10", "unexpected EOF"),
        (b"Content-Length: 50\r\n\r\n{}", "unexpected EOF"),
    ],
)
def test_header_reader_errors(data, match):
    with pytest.raises(ValueError, match=match):
        header_framer().reader(io.BytesIO(data)).read()


def test_writer_rejects_unserializable_message():
    msg = Request(method="m", params={1, 2})
    with pytest.raises(ValueError, match="marshaling message"):
        header_framer().writer(io.BytesIO()).write(msg)