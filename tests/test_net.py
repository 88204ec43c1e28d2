import threading

import pytest

from mcpkit.jsonrpc2.frame import header_framer
from mcpkit.jsonrpc2.messages import int64_id, new_call
from mcpkit.jsonrpc2.net import (
    ClosedError,
    net_dialer,
    net_listener,
    net_pipe_listener,
)


def _accept_in_thread(listener):
    box = {}

    def run():
        try:
            box["stream"] = listener.accept()
        except ClosedError:
            box["closed"] = True
        except Exception as exc:
            box["error"] = exc

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, box


def _read_exact(stream, size):
    data = b""
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _connect(listener):
    thread, box = _accept_in_thread(listener)
    client = listener.dialer().dial()
    thread.join(5)
    return client, box["stream"]


def test_pipe_round_trip():
    listener = net_pipe_listener()
    client, server = _connect(listener)
    try:
        client.write(b"ping")
        assert _read_exact(server, 4) == b"ping"
        server.write(b"pong")
        assert _read_exact(client, 4) == b"pong"
    finally:
        client.close()
        server.close()
        listener.close()


def test_pipe_close_gives_eof_to_peer():
    listener = net_pipe_listener()
    client, server = _connect(listener)
    client.close()
    assert server.read(10) == b""
    server.close()
    listener.close()


def test_pipe_accept_after_close_raises():
    listener = net_pipe_listener()
    listener.close()
    with pytest.raises(ClosedError):
        listener.accept()


def test_pipe_dial_after_close_raises():
    listener = net_pipe_listener()
    listener.close()
    with pytest.raises(ClosedError):
        listener.dial()


def test_pipe_close_unblocks_accept():
    listener = net_pipe_listener()
    thread, box = _accept_in_thread(listener)
    listener.close()
    thread.join(5)
    assert not thread.is_alive()
    assert box == {"closed": True}


def test_tcp_round_trip():
    listener = net_listener("tcp", "127.0.0.1:0")
    client, server = _connect(listener)
    try:
        client.write(b"hello")
        assert _read_exact(server, 5) == b"hello"
    finally:
        client.close()
        server.close()
        listener.close()


def test_tcp_close_unblocks_accept():
    listener = net_listener("tcp", "127.0.0.1:0")
    thread, box = _accept_in_thread(listener)
    listener.close()
    thread.join(5)
    assert not thread.is_alive()
    assert box == {"closed": True}


def test_tcp_dialer_points_at_bound_port():
    listener = net_listener("tcp", "127.0.0.1:0")
    dialer = listener.dialer()
    listener.close()
    assert dialer.network == "tcp"
    assert dialer.address.startswith("127.0.0.1:")
    assert not dialer.address.endswith(":0")


def test_dial_refused_after_listener_closed():
    listener = net_listener("tcp", "127.0.0.1:0")
    address = listener.dialer().address
    listener.close()
    with pytest.raises(OSError):
        net_dialer("tcp", address).dial()


def test_unknown_network_rejected():
    with pytest.raises(ValueError, match="unknown network"):
        net_listener("carrier-pigeon", "127.0.0.1:0")


def test_missing_port_rejected():
    with pytest.raises(ValueError, match="missing port"):
        net_listener("tcp", "127.0.0.1")


def test_framed_messages_over_pipe():
    listener = net_pipe_listener()
    client, server = _connect(listener)
    try:
        msg = new_call(int64_id(7), "ping", {"x": [1, 2]})
        header_framer().writer(client).write(msg)
        assert header_framer().reader(server).read() == msg
    finally:
        client.close()
        server.close()
        listener.close()