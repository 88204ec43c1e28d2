"""Listeners and dialers over sockets and in-process pipes."""

from __future__ import annotations

import os
import select
import socket
import threading
from dataclasses import dataclass
from typing import Any

_POLL_INTERVAL = 0.05


class ClosedError(OSError):
    """Raised when using a listener that has been closed."""

    def __init__(self, message: str = "use of closed network connection") -> None:
        super().__init__(message)


class _SocketStream:
    """A byte stream over a connected socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._lock = threading.Lock()
        self._closed = False

    def read(self, size: int = -1) -> bytes:
        return self._sock.recv(size if size and size > 0 else 65536)

    read1 = read

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def __enter__(self) -> _SocketStream:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def _split_host_port(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, bracket, rest = address[1:].partition("]")
        if not bracket or not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        port = rest[1:]
    else:
        host, colon, port = address.rpartition(":")
        if not colon:
            raise ValueError(f"address {address}: missing port in address")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"address {address}: invalid port") from None


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _tcp_family(network: str) -> int:
    families = {"tcp": socket.AF_UNSPEC, "tcp4": socket.AF_INET, "tcp6": socket.AF_INET6}
    try:
        return families[network]
    except KeyError:
        raise ValueError(f"unknown network {network}") from None


class NetListener:
    """Accepts connections on a TCP or Unix socket."""

    def __init__(self, network: str, address: str) -> None:
        self._network = network
        self._closed = threading.Event()
        self._lock = threading.Lock()
        if network == "unix":
            if not hasattr(socket, "AF_UNIX"):
                raise ValueError("unix sockets are not supported on this platform")
            family, sockaddr = socket.AF_UNIX, address
        else:
            host, port = _split_host_port(address)
            infos = socket.getaddrinfo(host or None, port, _tcp_family(network),
                                       socket.SOCK_STREAM, 0, socket.AI_PASSIVE)
            family, _, _, _, sockaddr = infos[0]
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.bind(sockaddr)
            sock.listen()
        except BaseException:
            sock.close()
            raise
        self._sock = sock
        self._family = family
        self._addr = sock.getsockname()

    def accept(self) -> _SocketStream:
        """Block until a connection arrives; raise ClosedError once closed."""
        while not self._closed.is_set():
            with self._lock:
                if self._closed.is_set():
                    break
                try:
                    ready, _, _ = select.select([self._sock], [], [], _POLL_INTERVAL)
                    if ready:
                        conn, _ = self._sock.accept()
                        conn.setblocking(True)
                        return _SocketStream(conn)
                except (OSError, ValueError):
                    if self._closed.is_set():
                        break
                    raise
        raise ClosedError()

    def close(self) -> None:
        """Stop listening; connections already accepted stay open."""
        if self._closed.is_set():
            return
        self._closed.set()
        with self._lock:
            self._sock.close()
        if self._network == "unix":
            os.remove(self._addr)

    def dialer(self) -> NetDialer:
        if self._network == "unix":
            return NetDialer(self._network, self._addr)
        host, port = self._addr[0], self._addr[1]
        return NetDialer(self._network, _join_host_port(host, port))


@dataclass(frozen=True)
class NetDialer:
    """Connects to a TCP or Unix socket address."""

    network: str
    address: str

    def dial(self) -> _SocketStream:
        if self.network == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(self.address)
            except BaseException:
                sock.close()
                raise
            return _SocketStream(sock)
        _tcp_family(self.network)
        host, port = _split_host_port(self.address)
        return _SocketStream(socket.create_connection((host or None, port)))


class _Offer:
    def __init__(self, stream: _SocketStream) -> None:
        self.stream = stream
        self.taken = False


class PipeListener:
    """A listener reachable only through its own dialer, over in-process pipes."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._closed = False
        self._offers: list[_Offer] = []

    def accept(self) -> _SocketStream:
        """Block until dialed or closed, preferring closed."""
        with self._cond:
            while not self._offers and not self._closed:
                self._cond.wait()
            if self._closed:
                raise ClosedError()
            offer = self._offers.pop(0)
            offer.taken = True
            self._cond.notify_all()
            return offer.stream

    def close(self) -> None:
        """Unblock pending accept and dial calls; accepted pipes stay open."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def dialer(self) -> PipeListener:
        return self

    def dial(self) -> _SocketStream:
        """Create a pipe, hand one end to accept and return the other."""
        client_sock, server_sock = socket.socketpair()
        client, server = _SocketStream(client_sock), _SocketStream(server_sock)
        with self._cond:
            offer = _Offer(server)
            if not self._closed:
                self._offers.append(offer)
                self._cond.notify_all()
                while not offer.taken and not self._closed:
                    self._cond.wait()
            if offer.taken:
                return client
            if offer in self._offers:
                self._offers.remove(offer)
        client.close()
        server.close()
        raise ClosedError()


def net_listener(network: str, address: str) -> NetListener:
    return NetListener(network, address)


def net_dialer(network: str, address: str) -> NetDialer:
    return NetDialer(network, address)


def net_pipe_listener() -> PipeListener:
    return PipeListener()