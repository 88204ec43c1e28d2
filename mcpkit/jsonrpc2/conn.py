"""A bidirectional JSON-RPC connection that routes responses back to their calls."""

from __future__ import annotations

import itertools
import json
import threading
from collections import deque
from concurrent.futures import CancelledError
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from mcpkit.jsonrpc2.call import AsyncCall, ConnectionConfig, RequestContext
from mcpkit.jsonrpc2.messages import (
    ERR_CLIENT_CLOSING,
    ERR_INTERNAL,
    ERR_INVALID_REQUEST,
    ERR_METHOD_NOT_FOUND,
    ERR_SERVER_CLOSING,
    ERR_UNKNOWN,
    ID,
    AsyncResponseError,
    NotHandledError,
    Request,
    Response,
    WireError,
    int64_id,
    is_error,
    new_call,
    new_notification,
    new_response,
)


def _wrap(base: WireError, detail: Any) -> WireError:
    """Return an error with base's code whose message adds detail."""
    err = WireError(base.code, f"{base.message}: {detail}")
    if isinstance(detail, BaseException):
        err.__cause__ = detail
    return err


class _DefaultHandler:
    """Handles nothing: every call is answered with method not found."""

    def preempt(self, ctx: Any, req: Request) -> Any:
        raise NotHandledError()

    def handle(self, ctx: Any, req: Request) -> Any:
        raise NotHandledError()


@dataclass
class _IncomingRequest:
    request: Request
    ctx: RequestContext

    @property
    def method(self) -> str:
        return self.request.method

    def is_call(self) -> bool:
        return self.request.is_call()


@dataclass
class _InFlightState:
    closer: Any = None
    conn_closing: bool = False
    reading: bool = False
    read_err: Optional[BaseException] = None
    write_err: Optional[BaseException] = None
    close_err: Optional[BaseException] = None
    outgoing_calls: dict[ID, AsyncCall] = field(default_factory=dict)
    outgoing_notifications: int = 0
    incoming: int = 0
    incoming_by_id: dict[ID, _IncomingRequest] = field(default_factory=dict)
    handler_queue: deque[_IncomingRequest] = field(default_factory=deque)
    handler_running: bool = False

    def idle(self) -> bool:
        """Report whether no calls, notifications or handlers are pending."""
        return (
            not self.outgoing_calls
            and self.outgoing_notifications == 0
            and self.incoming == 0
            and not self.handler_running
        )

    def shutting_down(self, err_closing: WireError) -> Optional[WireError]:
        """Return an error with err_closing's code if new work must be refused."""
        if self.conn_closing:
            return err_closing
        if self.read_err is not None:
            return _wrap(err_closing, self.read_err)
        if self.write_err is not None:
            return _wrap(err_closing, self.write_err)
        return None


def _label(source: Any) -> str:
    return source if isinstance(source, str) else type(source).__name__


class Connection:
    """Manages the JSON-RPC protocol over one stream, in both directions."""

    def __init__(self, closer: Any, on_done: Optional[Callable[[], None]] = None) -> None:
        self._seq = itertools.count(1)
        self._seq_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = _InFlightState(closer=closer)
        self._done = threading.Event()
        self._write_lock = threading.Lock()
        self._writer: Any = None
        self._handler: Any = _DefaultHandler()
        self._on_done = on_done
        self._on_internal_error: Optional[Callable[[BaseException], None]] = None

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @contextmanager
    def _update(self) -> Iterator[_InFlightState]:
        """Lock the in-flight state, and close the connection once it is idle and shutting down."""
        with self._state_lock:
            yield self._state
            self._settle()

    def _settle(self) -> None:
        s = self._state
        if self._done.is_set():
            if not s.idle():
                raise RuntimeError("jsonrpc2: update transitioned to non-idle when already done")
            return
        if s.idle() and s.shutting_down(ERR_UNKNOWN) is not None:
            if s.closer is not None:
                closer, s.closer = s.closer, None
                try:
                    closer.close()
                except Exception as exc:
                    s.close_err = exc
            if not s.reading:
                if self._on_done is not None:
                    self._on_done()
                self._done.set()

    def _start(
        self,
        reader: Any,
        writer: Any,
        handler: Any = None,
        preempter: Any = None,
        on_internal_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        """Install the handler and writer and begin reading incoming messages."""
        self._handler = handler if handler is not None else _DefaultHandler()
        self._writer = writer
        self._on_internal_error = on_internal_error
        with self._update() as s:
            if self._done.is_set():
                return
            s.reading = True
            threading.Thread(
                target=self._read_incoming, args=(reader, preempter), daemon=True
            ).start()

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification without waiting for any response."""
        attempted = False
        err: Optional[BaseException] = None
        with self._update() as s:
            # While shutting down, notifications are allowed only alongside calls
            # still in flight, since they may cancel those calls.
            if not s.outgoing_calls and not s.incoming_by_id:
                err = s.shutting_down(ERR_CLIENT_CLOSING)
            if err is None:
                s.outgoing_notifications += 1
                attempted = True
        try:
            if err is not None:
                raise err
            try:
                notification = new_notification(method, params)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"marshaling notify parameters: {exc}") from exc
            write_err = self._write(notification)
            if write_err is not None:
                raise write_err
        finally:
            if attempted:
                with self._update() as s:
                    s.outgoing_notifications -= 1

    def call(self, method: str, params: Any = None) -> AsyncCall:
        """Send a call and return a handle on its eventual response."""
        with self._seq_lock:
            call_id = int64_id(next(self._seq))
        ac = AsyncCall(call_id)
        try:
            request = new_call(call_id, method, params)
        except (TypeError, ValueError) as exc:
            err = ValueError(f"marshaling call parameters: {exc}")
            err.__cause__ = exc
            ac._retire(Response(id=call_id, error=err))
            return ac

        shutdown_err: Optional[WireError] = None
        with self._update() as s:
            shutdown_err = s.shutting_down(ERR_CLIENT_CLOSING)
            if shutdown_err is None:
                s.outgoing_calls[call_id] = ac
        if shutdown_err is not None:
            ac._retire(Response(id=call_id, error=shutdown_err))
            return ac

        write_err = self._write(request)
        if write_err is not None:
            with self._update() as s:
                # The reader may already have retired it if the stream broke.
                if s.outgoing_calls.get(call_id) is ac:
                    del s.outgoing_calls[call_id]
                    ac._retire(Response(id=call_id, error=write_err))
        return ac

    def respond(self, id: ID, result: Any, error: Optional[BaseException] = None) -> None:
        """Deliver the response to a call whose handler raised AsyncResponseError."""
        with self._update() as s:
            req = s.incoming_by_id.get(id)
        if req is None:
            raise self._internal_error(f"Request not found for ID {id.raw()!r}")
        if isinstance(error, AsyncResponseError):
            error = self._internal_error(
                f"Respond called with AsyncResponseError for {json.dumps(req.method)}"
            )
        err = self._process_result("Respond", req, result, error)
        if err is not None:
            raise err

    def cancel(self, id: ID) -> None:
        """Cancel the context of the incoming call with the given ID, if it is active."""
        with self._update() as s:
            req = s.incoming_by_id.get(id)
        if req is not None:
            req.ctx.cancel()

    def wait(self) -> None:
        """Block until the connection is fully closed, without closing it."""
        self._done.wait()
        with self._update() as s:
            err = s.close_err
        if err is not None:
            raise err

    def close(self) -> None:
        """Refuse new work, wait for in-flight requests, then close the stream."""
        with self._update() as s:
            s.conn_closing = True
        self.wait()

    def _read_incoming(self, reader: Any, preempter: Any) -> None:
        err: BaseException = EOFError("end of stream")
        try:
            while True:
                try:
                    msg = reader.read()
                except Exception as exc:
                    err = exc
                    break
                if isinstance(msg, Request):
                    self._accept_request(msg, preempter)
                elif isinstance(msg, Response):
                    with self._update() as s:
                        ac = s.outgoing_calls.pop(msg.id, None)
                        if ac is not None:
                            ac._retire(msg)
                else:
                    self._internal_error(
                        f"Read returned an unexpected message of type {type(msg).__name__}"
                    )
        except BaseException as exc:
            err = exc
            raise
        finally:
            with self._update() as s:
                s.reading = False
                s.read_err = err
                calls, s.outgoing_calls = s.outgoing_calls, {}
                for call_id, ac in calls.items():
                    ac._retire(Response(id=call_id, error=err))

    def _accept_request(self, msg: Request, preempter: Any) -> None:
        req = _IncomingRequest(request=msg, ctx=RequestContext())
        err: Optional[BaseException] = None
        with self._update() as s:
            s.incoming += 1
            if req.is_call():
                if req.request.id in s.incoming_by_id:
                    err = _wrap(
                        ERR_INVALID_REQUEST,
                        f"request ID {req.request.id.raw()!r} already in use",
                    )
                    # Do not attribute this error to the request already using the ID.
                    req.request.id = ID()
                else:
                    s.incoming_by_id[req.request.id] = req
                    # Refuse new calls while shutting down, even preemptible ones.
                    err = s.shutting_down(ERR_SERVER_CLOSING)
        if err is not None:
            self._process_result("acceptRequest", req, None, err)
            return

        if preempter is not None:
            result: Any = None
            perr: Optional[BaseException] = None
            try:
                result = preempter.preempt(req.ctx, req.request)
            except Exception as exc:
                perr = exc
            if req.is_call() and is_error(perr, AsyncResponseError):
                return
            if not is_error(perr, NotHandledError):
                self._process_result("Preempt", req, result, perr)
                return

        with self._update() as s:
            # While shutting down nothing is queued, so the handler drains.
            err = s.shutting_down(ERR_SERVER_CLOSING)
            if err is None:
                s.handler_queue.append(req)
                if not s.handler_running:
                    s.handler_running = True
                    threading.Thread(target=self._handle_async, daemon=True).start()
        if err is not None:
            self._process_result("acceptRequest", req, None, err)

    def _handle_async(self) -> None:
        while True:
            req: Optional[_IncomingRequest] = None
            with self._update() as s:
                if s.handler_queue:
                    req = s.handler_queue.popleft()
                else:
                    s.handler_running = False
            if req is None:
                return

            if req.ctx.cancelled():
                err: BaseException = CancelledError("context canceled")
                with self._update() as s:
                    if s.write_err is not None:
                        err = _wrap(ERR_SERVER_CLOSING, s.write_err)
                self._process_result("handleAsync", req, None, err)
                continue

            result: Any = None
            herr: Optional[BaseException] = None
            try:
                result = self._handler.handle(req.ctx, req.request)
            except Exception as exc:
                herr = exc
            self._process_result(self._handler, req, result, herr)

    def _process_result(
        self,
        source: Any,
        req: _IncomingRequest,
        result: Any,
        err: Optional[BaseException],
    ) -> Optional[BaseException]:
        label = _label(source)
        if isinstance(err, AsyncResponseError):
            if not req.is_call():
                return self._internal_error(
                    f"{label} raised AsyncResponseError for a {json.dumps(req.method)} "
                    "Request without an ID"
                )
            return None
        if isinstance(err, NotHandledError) or err is ERR_METHOD_NOT_FOUND:
            err = _wrap(ERR_METHOD_NOT_FOUND, json.dumps(req.method))

        if result is not None and err is not None:
            self._internal_error(
                f"{label} returned a non-nil result with an error for {req.method}:\n"
                f"{err}\n{result!r}"
            )
            result = None

        if req.is_call():
            if result is None and err is None:
                err = self._internal_error(
                    f"{label} returned no result and no error for a "
                    f"{json.dumps(req.method)} Request that requires a Response"
                )
            response: Optional[Response] = None
            resp_err: Optional[BaseException] = None
            try:
                response = new_response(req.request.id, result, err)
            except (TypeError, ValueError) as exc:
                resp_err = exc
            # The peer may reuse the ID once it sees the response.
            with self._update() as s:
                s.incoming_by_id.pop(req.request.id, None)
            if response is not None:
                write_err = self._write(response)
                if err is None:
                    err = write_err
            else:
                err = self._internal_error(
                    f"{label} returned a malformed result for {json.dumps(req.method)}: {resp_err}"
                )
        else:
            if result is not None:
                err = self._internal_error(
                    f"{label} returned a non-nil result for a {json.dumps(req.method)} "
                    "Request without an ID"
                )
            elif err is not None:
                err = _wrap(ERR_INTERNAL, f"{json.dumps(req.method)} notification failed: {err}")

        req.ctx.cancel()
        with self._update() as s:
            if s.incoming == 0:
                raise RuntimeError(
                    "jsonrpc2: result processed when incoming count is already zero"
                )
            s.incoming -= 1
        return None

    def _write(self, msg: Any) -> Optional[BaseException]:
        """Write one message atomically; return the error if the write failed."""
        with self._write_lock:
            try:
                self._writer.write(msg)
                return None
            except Exception as exc:
                err = exc
        # The writer is broken: responses can no longer be delivered, so cancel
        # the incoming calls.
        with self._update() as s:
            if s.write_err is None:
                s.write_err = err
                for incoming in s.incoming_by_id.values():
                    incoming.ctx.cancel()
        return err

    def _internal_error(self, message: str) -> WireError:
        """Report an internal error; without a callback it is raised as RuntimeError."""
        if self._on_internal_error is None:
            raise RuntimeError(f"jsonrpc2: {message}")
        self._on_internal_error(Exception(message))
        return _wrap(ERR_INTERNAL, message)


def new_connection(config: ConnectionConfig) -> Connection:
    """Create a connection from config and start processing incoming messages."""
    conn = Connection(closer=config.closer, on_done=config.on_done)
    handler = config.bind(conn)
    conn._start(
        config.reader,
        config.writer,
        handler,
        config.preempter,
        on_internal_error=config.on_internal_error,
    )
    return conn