"""Request contexts, pending calls and connection configuration."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from mcpkit.jsonrpc2.messages import ID, Response


class RequestContext:
    """A cancellation signal for one request, optionally tied to a parent."""

    def __init__(self, parent: Optional[RequestContext] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: set[RequestContext] = set()
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: RequestContext) -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.add(child)
                return
        child.cancel()

    def _detach(self, child: RequestContext) -> None:
        with self._lock:
            self._children.discard(child)

    def cancel(self) -> None:
        """Cancel this context and every context derived from it."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            children, self._children = self._children, set()
        for child in children:
            child.cancel()
        if self._parent is not None:
            self._parent._detach(self)

    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timed out; report whether cancelled."""
        return self._event.wait(timeout)


class AsyncCall:
    """An outgoing call whose response may not have arrived yet."""

    def __init__(self, id: ID) -> None:
        self._id = id
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[Response] = None

    def id(self) -> ID:
        return self._id

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def _retire(self, response: Response) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError(f"jsonrpc2: retire called twice for ID {self._id.raw()!r}")
            self._response = response
            self._ready.set()

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the response and return its result, raising its error if it has one."""
        if not self._ready.wait(timeout):
            raise TimeoutError(f"call {self._id.raw()!r} did not complete within {timeout}s")
        assert self._response is not None
        if self._response.error is not None:
            raise self._response.error
        return self._response.result


@dataclass
class ConnectionOptions:
    """Options for a new connection; as a binder it returns itself."""

    framer: Any = None
    preempter: Any = None
    handler: Any = None
    on_internal_error: Optional[Callable[[BaseException], None]] = None

    def bind(self, conn: Any) -> ConnectionOptions:
        return self


@dataclass
class BinderFunc:
    """Adapts a plain callable into a binder."""

    func: Callable[[Any], ConnectionOptions]

    def bind(self, conn: Any) -> ConnectionOptions:
        return self.func(conn)


@dataclass
class ConnectionConfig:
    """Everything needed to run a connection over an existing reader and writer."""

    reader: Any
    writer: Any
    closer: Any
    bind: Callable[[Any], Any]
    preempter: Any = None
    on_done: Optional[Callable[[], None]] = None
    on_internal_error: Optional[Callable[[BaseException], None]] = None