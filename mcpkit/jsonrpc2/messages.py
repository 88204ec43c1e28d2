"""JSON-RPC 2.0 message types, wire errors and their encoding."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from typing import Any, Callable, Union

WIRE_VERSION = "2.0"


class WireError(Exception):
    """A structured error carried in a JSON-RPC response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"WireError(code={self.code!r}, message={self.message!r}, data={self.data!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WireError):
            return NotImplemented
        return (self.code, self.message, self.data) == (other.code, other.message, other.data)

    def __hash__(self) -> int:
        return hash((self.code, self.message))

    def is_same(self, other: object) -> bool:
        """Report whether other is a wire error with the same code."""
        return isinstance(other, WireError) and self.code == other.code


def new_error(code: int, message: str) -> WireError:
    """Return an error that encodes on the wire with the given code."""
    return WireError(code, message)


def is_error(err: BaseException | None, target: Any) -> bool:
    """Report whether err, or any error it was raised from, matches target.

    target may be an exception instance (matched by identity, or by code for
    wire errors) or an exception class (matched by isinstance).
    """
    seen: set[int] = set()
    current = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if current is target:
            return True
        if isinstance(target, type):
            if isinstance(current, target):
                return True
        elif isinstance(current, WireError) and current.is_same(target):
            return True
        current = current.__cause__
    return False


ERR_PARSE = new_error(-32700, "parse error")
ERR_INVALID_REQUEST = new_error(-32600, "invalid request")
ERR_METHOD_NOT_FOUND = new_error(-32601, "method not found")
ERR_INVALID_PARAMS = new_error(-32602, "invalid params")
ERR_INTERNAL = new_error(-32603, "internal error")
ERR_SERVER_OVERLOADED = new_error(-32000, "overloaded")
ERR_UNKNOWN = new_error(-32001, "unknown error")
ERR_SERVER_CLOSING = new_error(-32004, "server is closing")
ERR_CLIENT_CLOSING = new_error(-32003, "client is closing")


class NotHandledError(Exception):
    """Raised by a handler or preempter that did not handle a request."""

    def __init__(self, message: str = "JSON RPC not handled") -> None:
        super().__init__(message)


class AsyncResponseError(Exception):
    """Raised by a handler that will respond to a call later."""

    def __init__(self, message: str = "JSON RPC asynchronous response") -> None:
        super().__init__(message)


class IdleTimeoutError(Exception):
    """Raised when serving timed out waiting for new connections."""

    def __init__(self, message: str = "timed out waiting for new connections") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ID:
    """A request identifier: a string, an integer, or absent."""

    value: Union[int, str, None] = None

    def is_valid(self) -> bool:
        return self.value is not None

    def raw(self) -> Union[int, str, None]:
        return self.value


def string_id(s: str) -> ID:
    return ID(str(s))


def int64_id(i: int) -> ID:
    return ID(int(i))


def make_id(v: Any) -> ID:
    """Build an ID from a decoded JSON value: None, a number or a string."""
    if v is None:
        return ID()
    if isinstance(v, bool):
        raise WireError(ERR_PARSE.code, f"{ERR_PARSE.message}: invalid ID type bool")
    if isinstance(v, (int, float)):
        return int64_id(int(v))
    if isinstance(v, str):
        return string_id(v)
    raise WireError(ERR_PARSE.code, f"{ERR_PARSE.message}: invalid ID type {type(v).__name__}")


@dataclass
class Request:
    """A call (with an ID) or a notification (without one)."""

    method: str
    id: ID = dataclasses.field(default_factory=ID)
    params: Any = None

    def is_call(self) -> bool:
        return self.id.is_valid()


@dataclass
class Response:
    """The reply to a call, carrying a result or an error."""

    id: ID
    result: Any = None
    error: BaseException | None = None


Message = Union[Request, Response]


@dataclass
class HandlerFunc:
    """Adapts a plain callable into a handler."""

    func: Callable[[Any, Request], Any]

    def handle(self, ctx: Any, req: Request) -> Any:
        return self.func(ctx, req)


@dataclass
class PreempterFunc:
    """Adapts a plain callable into a preempter."""

    func: Callable[[Any, Request], Any]

    def preempt(self, ctx: Any, req: Request) -> Any:
        return self.func(ctx, req)


def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _to_json_value(obj: Any) -> Any:
    if obj is None:
        return None
    text = json.dumps(obj, default=_json_default, allow_nan=False)
    return json.loads(text)


def new_notification(method: str, params: Any) -> Request:
    """Build a notification; params must be JSON-serializable."""
    return Request(method=method, params=_to_json_value(params))


def new_call(id: ID, method: str, params: Any) -> Request:
    """Build a call with the given ID; params must be JSON-serializable."""
    return Request(method=method, id=id, params=_to_json_value(params))


def new_response(id: ID, result: Any, error: BaseException | None) -> Response:
    """Build a response; the result must be JSON-serializable."""
    return Response(id=id, result=_to_json_value(result), error=error)


def _to_wire_error(err: BaseException | None) -> WireError | None:
    if err is None:
        return None
    if isinstance(err, WireError):
        return err
    result = WireError(0, str(err))
    cause = err.__cause__
    seen: set[int] = set()
    while cause is not None and id(cause) not in seen:
        seen.add(id(cause))
        if isinstance(cause, WireError):
            result.code = cause.code
            break
        cause = cause.__cause__
    return result


def _to_wire(msg: Message) -> dict[str, Any]:
    wire: dict[str, Any] = {"jsonrpc": WIRE_VERSION}
    if msg.id.is_valid():
        wire["id"] = msg.id.raw()
    if isinstance(msg, Request):
        if msg.method:
            wire["method"] = msg.method
        if msg.params is not None:
            wire["params"] = msg.params
    elif isinstance(msg, Response):
        if msg.result is not None:
            wire["result"] = msg.result
        error = _to_wire_error(msg.error)
        if error is not None:
            body: dict[str, Any] = {"code": error.code, "message": error.message}
            if error.data is not None:
                body["data"] = error.data
            wire["error"] = body
    else:
        raise TypeError(f"not a jsonrpc message: {type(msg).__name__}")
    return wire


def encode_message(msg: Message) -> bytes:
    """Encode a message as compact JSON."""
    try:
        text = json.dumps(_to_wire(msg), separators=(",", ":"), ensure_ascii=False,
                          default=_json_default, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"marshaling jsonrpc message: {exc}") from exc
    return text.encode("utf-8")


def encode_indent(msg: Message, prefix: str, indent: str) -> bytes:
    """Encode a message as indented JSON; every line after the first starts with prefix."""
    try:
        text = json.dumps(_to_wire(msg), indent=indent, ensure_ascii=False,
                          default=_json_default, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"marshaling jsonrpc message: {exc}") from exc
    if prefix:
        text = text.replace("\n", "\n" + prefix)
    return text.encode("utf-8")


def _decode_error(body: Any) -> WireError | None:
    if body is None:
        return None
    if not isinstance(body, dict):
        raise ValueError("unmarshaling jsonrpc message: error is not an object")
    code = body.get("code", 0)
    if isinstance(code, bool) or not isinstance(code, int):
        raise ValueError("unmarshaling jsonrpc message: error code is not an integer")
    message = body.get("message", "")
    if not isinstance(message, str):
        raise ValueError("unmarshaling jsonrpc message: error message is not a string")
    return WireError(code, message, body.get("data"))


def decode_message(data: bytes | str) -> Message:
    """Decode a request or a response from its JSON form."""
    try:
        wire = json.loads(data)
    except ValueError as exc:
        raise ValueError(f"unmarshaling jsonrpc message: {exc}") from exc
    if not isinstance(wire, dict):
        raise ValueError("unmarshaling jsonrpc message: not a JSON object")
    tag = wire.get("jsonrpc", "")
    if tag != WIRE_VERSION:
        raise ValueError(
            f"invalid message version tag {json.dumps(tag)}; expected {json.dumps(WIRE_VERSION)}"
        )
    method = wire.get("method", "")
    if not isinstance(method, str):
        raise ValueError("unmarshaling jsonrpc message: method is not a string")
    msg_id = make_id(wire.get("id"))
    if method:
        return Request(method=method, id=msg_id, params=wire.get("params"))
    if not msg_id.is_valid():
        raise WireError(ERR_INVALID_REQUEST.code, ERR_INVALID_REQUEST.message)
    return Response(id=msg_id, result=wire.get("result"), error=_decode_error(wire.get("error")))