"""Process-wide counters and histograms for the async processor."""

from __future__ import annotations

import threading
from collections.abc import Iterable

SCHEDULER_SUBSYSTEM = "llm_d_async"


class Counter:
    """A monotonically increasing value."""

    def __init__(self, name: str, help_text: str, subsystem: str = "") -> None:
        self.name = f"{subsystem}_{name}" if subsystem else name
        self.help = help_text
        self.value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        """Add ``amount``; counters cannot decrease."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self.value += amount


class Histogram:
    """Cumulative bucketed observations with a running sum and count."""

    def __init__(
        self, name: str, help_text: str, buckets: Iterable[float], subsystem: str = ""
    ) -> None:
        bounds = tuple(float(b) for b in buckets)
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        self.name = f"{subsystem}_{name}" if subsystem else name
        self.help = help_text
        self.buckets = bounds
        self.counts = dict.fromkeys(bounds, 0)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        """Record one observation."""
        with self._lock:
            for bound in self.buckets:
                if value <= bound:
                    self.counts[bound] += 1
            self.count += 1
            self.sum += value


RETRIES = Counter(
    "async_request_retries_total", "Total number of async request retries.", SCHEDULER_SUBSYSTEM
)
ASYNC_REQUESTS = Counter(
    "async_request_total", "Total number of async requests.", SCHEDULER_SUBSYSTEM
)
EXCEEDED_DEADLINE_REQUESTS = Counter(
    "async_exceeded_deadline_requests_total",
    "Total number of async requests that exceeded their deadline.",
    SCHEDULER_SUBSYSTEM,
)
FAILED_REQUESTS = Counter(
    "async_failed_requests_total", "Total number of async requests that failed.",
    SCHEDULER_SUBSYSTEM,
)
SUCCESSFUL_REQUESTS = Counter(
    "async_successful_requests_total", "Total number of async requests that succeeded.",
    SCHEDULER_SUBSYSTEM,
)
SHEDDED_REQUESTS = Counter(
    "async_shedded_requests_total", "Total number of async requests that were shedded.",
    SCHEDULER_SUBSYSTEM,
)
MESSAGE_LATENCY_TIME = Histogram(
    "async_message_latency_time_millis",
    "Time from message publish to message being successfully processed.",
    [100, 1000, 5000, 10000, 20000, 50000, 100000, 200000, 500000, 1000000],
    SCHEDULER_SUBSYSTEM,
)


def get_async_processor_collectors(supports_message_latency: bool) -> list[Counter | Histogram]:
    """All collectors of the processor; latency only if the flow supports it."""
    collectors: list[Counter | Histogram] = [
        RETRIES,
        ASYNC_REQUESTS,
        EXCEEDED_DEADLINE_REQUESTS,
        FAILED_REQUESTS,
        SUCCESSFUL_REQUESTS,
        SHEDDED_REQUESTS,
    ]
    if supports_message_latency:
        collectors.append(MESSAGE_LATENCY_TIME)
    return collectors


_registry: list[Counter | Histogram] = []
_registered = False
_register_lock = threading.Lock()


def register(*collectors: Counter | Histogram) -> None:
    """Register collectors; only the first call has any effect."""
    global _registered
    with _register_lock:
        if _registered:
            return
        _registered = True
        for collector in collectors:
            if any(existing.name == collector.name for existing in _registry):
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.name}"
                )
            _registry.append(collector)


def registered_collectors() -> tuple[Counter | Histogram, ...]:
    """The collectors registered so far."""
    with _register_lock:
        return tuple(_registry)