"""Request, result and routing types shared by producers, workers and flows."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Category of an inference failure; decides retry and shedding."""

    RATE_LIMIT = "RATE_LIMIT"
    SERVER = "SERVER_ERROR"
    INVALID_REQUEST = "INVALID_REQ"
    AUTH = "AUTH_ERROR"
    PARSE = "PARSE_ERROR"
    UNKNOWN = "UNKNOWN"

    def fatal(self) -> bool:
        """True if errors of this category must not be retried."""
        return self not in (ErrorCategory.RATE_LIMIT, ErrorCategory.SERVER)

    def sheddable(self) -> bool:
        """True if errors of this category mean rate limiting or load shedding."""
        return self is ErrorCategory.RATE_LIMIT


class InferenceError(Exception):
    """An inference failure carrying an :class:`ErrorCategory`."""

    def __init__(self, category: ErrorCategory | str, message: str) -> None:
        super().__init__(message)
        self.category = ErrorCategory(category)
        self.message = message

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"


class ClientError(InferenceError):
    """Error raised by an inference client.

    ``retry_after`` is the server-requested delay in seconds (0 when unset).
    """

    def __init__(
        self,
        category: ErrorCategory | str,
        message: str,
        raw_error: BaseException | None = None,
        retry_after: float = 0.0,
    ) -> None:
        super().__init__(category, message)
        self.raw_error = raw_error
        self.retry_after = retry_after
        if raw_error is not None:
            self.__cause__ = raw_error

    def __str__(self) -> str:
        base = super().__str__()
        if self.raw_error is not None:
            return f"{base} (caused by: {self.raw_error})"
        return base


class RequestDecodeError(ValueError):
    """Raised when a serialized request cannot be decoded."""


class InferenceClient(ABC):
    """Sends inference requests; implementations raise InferenceError on failure."""

    @abstractmethod
    async def send_request(self, url: str, headers: Mapping[str, str], payload: bytes) -> bytes:
        """POST ``payload`` to ``url`` and return the response body."""


def _to_wire(obj: Any, always: frozenset[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if f.name in always or value:
            out[f.name] = dict(value) if isinstance(value, dict) else value
    return out


def _decode_value(type_name: str, name: str, value: Any) -> Any:
    if type_name.startswith("int"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise RequestDecodeError(f"field {name!r} must be an integer, got {value!r}")
        return value
    if type_name.startswith("dict"):
        if not isinstance(value, dict):
            raise RequestDecodeError(f"field {name!r} must be an object, got {value!r}")
        if type_name.startswith("dict[str, str]") and not all(
            isinstance(v, str) for v in value.values()
        ):
            raise RequestDecodeError(f"field {name!r} must map strings to strings")
        return dict(value)
    if not isinstance(value, str):
        raise RequestDecodeError(f"field {name!r} must be a string, got {value!r}")
    return value


def _from_wire(cls: type, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise RequestDecodeError(f"expected a JSON object for {cls.__name__}, got {data!r}")
    kwargs = {
        f.name: _decode_value(str(f.type), f.name, data[f.name])
        for f in fields(cls)
        if f.init and data.get(f.name) is not None
    }
    return cls(**kwargs)


_ALWAYS_PRESENT = frozenset({"id", "created", "deadline", "payload"})


@dataclass
class RequestMessage:
    """Caller-visible request. ``created`` and ``deadline`` are Unix seconds.

    ``metadata`` is opaque pass-through data; ``endpoint`` overrides the
    request path of the channel the request arrives on.
    """

    id: str = ""
    created: int = 0
    deadline: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    endpoint: str = ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping; empty optional fields are left out."""
        return _to_wire(self, _ALWAYS_PRESENT)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RequestMessage:
        """Build a request from a decoded JSON object."""
        return _from_wire(cls, data)


@dataclass
class RedisRequest(RequestMessage):
    """Request for Redis flows; queue names override producer defaults."""

    request_queue_name: str = ""
    result_queue_name: str = ""


@dataclass
class PubSubRequest(RequestMessage):
    """Request for Pub/Sub flows."""

    pubsub_id: str = ""


@dataclass
class InternalRouting:
    """Resolved routing fields used by the infrastructure, not by callers."""

    retry_count: int = 0
    request_queue_name: str = ""
    result_queue_name: str = ""
    transport_correlation_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping; zero fields are left out."""
        return _to_wire(self, frozenset())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InternalRouting:
        """Build routing from a decoded JSON object."""
        return _from_wire(cls, data)


@dataclass
class ResultMessage:
    """Inference result returned to callers.

    Only ``id`` and ``payload`` go on the wire; routing and metadata are
    infrastructure pass-through.
    """

    id: str
    payload: str
    routing: InternalRouting = field(default_factory=InternalRouting)
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """The wire form of the result."""
        return {"id": self.id, "payload": self.payload}


_KIND_BY_TYPE: dict[type, str] = {
    RequestMessage: "plain",
    RedisRequest: "redis",
    PubSubRequest: "pubsub",
}
_TYPE_BY_KIND: dict[str, type] = {kind: typ for typ, kind in _KIND_BY_TYPE.items()}


@dataclass
class InternalRequest:
    """Internal envelope: routing data plus the concrete public request."""

    routing: InternalRouting = field(default_factory=InternalRouting)
    request: RequestMessage | None = None

    def to_json(self) -> str:
        """Encode as a tagged envelope so the concrete request type round-trips."""
        if self.request is None:
            raise ValueError("internal request has no public request")
        kind = _KIND_BY_TYPE.get(type(self.request))
        if kind is None:
            raise TypeError(f"unsupported public request type {type(self.request).__name__}")
        wire = {
            "internal": self.routing.to_dict(),
            "request_kind": kind,
            "data": self.request.to_dict(),
        }
        return json.dumps(wire, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str | bytes) -> InternalRequest | None:
        """Decode a tagged envelope; the JSON literal ``null`` gives None."""
        if not text:
            raise RequestDecodeError("unexpected end of JSON input")
        try:
            wire = json.loads(text)
        except (ValueError, UnicodeDecodeError) as exc:
            raise RequestDecodeError(f"invalid JSON: {exc}") from exc
        if wire is None:
            return None
        if not isinstance(wire, dict):
            raise RequestDecodeError("internal request must be a JSON object")
        kind = wire.get("request_kind")
        if kind is not None and not isinstance(kind, str):
            raise RequestDecodeError("request_kind must be a string")
        if not kind:
            raise RequestDecodeError("missing required field request_kind")
        internal = wire.get("internal")
        routing = InternalRouting.from_dict({} if internal is None else internal)
        if "data" not in wire:
            raise RequestDecodeError("internal request data is empty")
        request_type = _TYPE_BY_KIND.get(kind)
        if request_type is None:
            raise RequestDecodeError(f"unknown request_kind {kind!r}")
        data = wire["data"]
        request = request_type.from_dict({} if data is None else data)
        return cls(routing, request)