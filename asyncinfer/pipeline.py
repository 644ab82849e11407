"""Contracts between message-queue flows, merge policies, gates and workers."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from asyncinfer.api import InternalRequest


@dataclass(frozen=True)
class Characteristics:
    """Capabilities of a flow."""

    has_external_backoff: bool = False
    supports_message_latency: bool = False


class DispatchGate(ABC):
    """Decides how much capacity is available to forward requests."""

    @abstractmethod
    def budget(self) -> float:
        """Fraction of capacity available, in [0.0, 1.0]; never raises."""


@dataclass(frozen=True)
class DispatchGateFunc(DispatchGate):
    """A gate backed by a plain function."""

    func: Callable[[], float]

    def budget(self) -> float:
        return self.func()


class GateFactory(ABC):
    """Creates dispatch gates from a type name and parameters."""

    @abstractmethod
    def create_gate(self, gate_type: str, params: Mapping[str, str] | None) -> DispatchGate:
        """Return a gate for ``gate_type``."""


def const_open_gate() -> DispatchGate:
    """A gate that is always fully open."""
    return DispatchGateFunc(lambda: 1.0)


@dataclass(eq=False)
class RequestChannel:
    """A stream of internal requests together with its dispatch context.

    Producers put :class:`InternalRequest` objects on ``queue``; closing the
    channel puts ``None`` on it, which marks the end of the stream. The queue
    is unbounded so that closing never blocks.
    """

    igw_base_url: str = ""
    inference_objective: str = ""
    request_path_url: str = ""
    gate: DispatchGate = field(default_factory=const_open_gate)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    closed: bool = field(default=False, init=False)

    def close(self) -> None:
        """Mark the end of the stream; closing twice is an error."""
        if self.closed:
            raise RuntimeError("request channel is already closed")
        self.closed = True
        self.queue.put_nowait(None)


@dataclass
class EmbellishedRequest:
    """An internal request decorated with its HTTP dispatch context."""

    request: InternalRequest
    headers: dict[str, str] = field(default_factory=dict)
    request_url: str = ""


@dataclass
class RetryMessage:
    """A request to be re-queued after ``backoff_duration_seconds``."""

    message: EmbellishedRequest
    backoff_duration_seconds: float


class RequestMergePolicy(ABC):
    """Merges several request channels into one stream of embellished requests."""

    @abstractmethod
    def merge_request_channels(self, channels: Sequence[RequestChannel]) -> asyncio.Queue:
        """Return a queue of EmbellishedRequest, ending with ``None``."""


class Flow(ABC):
    """A message-queue implementation feeding the workers.

    Concrete flows provide ``retry_queue`` (of RetryMessage) and
    ``result_queue`` (of ResultMessage).
    """

    retry_queue: asyncio.Queue
    result_queue: asyncio.Queue

    @abstractmethod
    def characteristics(self) -> Characteristics:
        """The capabilities of this flow."""

    @abstractmethod
    async def start(self) -> None:
        """Start the flow's background tasks and return."""

    @abstractmethod
    def request_channels(self) -> list[RequestChannel]:
        """The request channels this flow produces."""