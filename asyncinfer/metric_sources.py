"""Metric sources that feed dispatch gates: PromQL, cached and cascading."""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from urllib.parse import urlsplit

import httpx

from asyncinfer.logsetup import DEFAULT, level_for_verbosity

logger = logging.getLogger("asyncinfer.metric_sources")

_API_ERROR_CODES = frozenset({400, 422, 503})


class MetricSourceError(Exception):
    """Raised when a metric source cannot produce samples."""


@dataclass(frozen=True)
class Sample:
    """One metric sample: its value and its labels."""

    value: float
    labels: dict[str, str] = field(default_factory=dict)


class MetricSource(ABC):
    """A preconfigured query against a metrics backend."""

    @abstractmethod
    def query(self) -> list[Sample]:
        """Return the current samples; raise MetricSourceError on failure."""


class PromQLMetricSource(MetricSource):
    """Runs a PromQL expression as an instant query against a Prometheus API."""

    def __init__(
        self,
        address: str,
        expr: str,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        parts = urlsplit(address)
        if not parts.scheme or not parts.netloc:
            raise ValueError(
                f"error creating Prometheus API client: invalid address {address!r}"
            )
        self.address = address
        self.expr = expr
        self._url = address.rstrip("/") + "/api/v1/query"
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Release the underlying HTTP client."""
        self._client.close()

    def query(self) -> list[Sample]:
        """Execute the expression and return the resulting vector as samples."""
        try:
            response = self._client.post(
                self._url, data={"query": self.expr, "time": f"{time.time():.3f}"}
            )
        except httpx.HTTPError as exc:
            raise MetricSourceError(f"error querying Prometheus: {exc}") from exc

        code = response.status_code
        if code // 100 != 2 and code not in _API_ERROR_CODES:
            raise MetricSourceError(
                f"error querying Prometheus: server_error: server error: {code}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise MetricSourceError(
                f"error querying Prometheus: bad_response: {exc}"
            ) from exc
        if not isinstance(body, dict):
            raise MetricSourceError("error querying Prometheus: bad_response: not an object")
        if body.get("status") != "success":
            raise MetricSourceError(
                f"error querying Prometheus: {body.get('errorType', 'error')}: "
                f"{body.get('error', 'unknown error')}"
            )

        warnings = body.get("warnings") or []
        if warnings:
            logger.log(
                level_for_verbosity(DEFAULT),
                "Prometheus query returned warnings warnings=%s",
                warnings,
            )

        data = body.get("data") or {}
        result_type = data.get("resultType") if isinstance(data, dict) else None
        if result_type != "vector":
            raise MetricSourceError(f"expected Vector result, got {result_type}")
        return [_parse_sample(entry) for entry in data.get("result") or []]


def _parse_sample(entry: Any) -> Sample:
    try:
        metric = entry.get("metric") or {}
        _, raw_value = entry["value"]
        value = float(raw_value)
        labels = {str(k): str(v) for k, v in metric.items()}
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise MetricSourceError(f"malformed vector sample: {entry!r}") from exc
    return Sample(value=value, labels=labels)


class CachedMetricSource(MetricSource):
    """Wraps a source and reuses its result, or its error, for ``ttl`` seconds."""

    def __init__(self, source: MetricSource, ttl: float) -> None:
        self.source = source
        self.ttl = ttl
        self._lock = threading.Lock()
        self._samples: list[Sample] = []
        self._error: Exception | None = None
        self._expiry = float("-inf")

    def query(self) -> list[Sample]:
        """Cached samples while fresh; otherwise query the wrapped source."""
        with self._lock:
            now = time.monotonic()
            if now >= self._expiry:
                try:
                    self._samples = self.source.query()
                    self._error = None
                except Exception as exc:  # noqa: BLE001 - errors are cached too
                    self._samples = []
                    self._error = exc
                self._expiry = now + self.ttl
            if self._error is not None:
                raise self._error
            return self._samples


class CascadeMetricSource(MetricSource):
    """Tries sources in order and returns the first non-empty result.

    Transitions between sources are logged once rather than on every query.
    """

    def __init__(self, *sources: MetricSource) -> None:
        if len(sources) < 2:
            raise ValueError("CascadeMetricSource requires at least two sources")
        self.sources = sources
        self.active_index = 0
        self._lock = threading.Lock()

    def query(self) -> list[Sample]:
        """Samples from the first source that answers with data."""
        for index, source in enumerate(self.sources):
            try:
                samples = source.query()
            except Exception:  # noqa: BLE001 - any failure moves to the next source
                continue
            if not samples:
                continue
            with self._lock:
                previous, self.active_index = self.active_index, index
            if index != previous:
                level = level_for_verbosity(DEFAULT)
                if index == 0:
                    logger.log(level, "primary metric source recovered")
                else:
                    logger.log(
                        level,
                        "using fallback metric source fallbackIndex=%d previousIndex=%d",
                        index,
                        previous,
                    )
            return samples
        raise MetricSourceError("all metric sources unavailable")


_SPECIAL_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def _quote(text: str) -> str:
    out = ['"']
    for ch in text:
        if ch in _SPECIAL_ESCAPES:
            out.append(_SPECIAL_ESCAPES[ch])
        elif ch.isprintable():
            out.append(ch)
        elif ord(ch) < 0x80:
            out.append(f"\\x{ord(ch):02x}")
        elif ord(ch) < 0x10000:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(f"\\U{ord(ch):08x}")
    out.append('"')
    return "".join(out)


def _format_number(value: float) -> str:
    """Shortest form of a float, exponent notation outside 1e-4 .. 1e6."""
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    dec = Decimal(repr(value)).normalize()
    sign, digits, exponent = dec.as_tuple()
    exp = len(digits) + exponent - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = str(digits[0])
        if len(digits) > 1:
            mantissa += "." + "".join(str(d) for d in digits[1:])
        exp_sign = "+" if exp >= 0 else "-"
        return f"{prefix}{mantissa}e{exp_sign}{abs(exp):02d}"
    return format(dec, "f")


def build_promql(metric_name: str, labels: Mapping[str, str] | None) -> str:
    """An instant vector selector with labels in sorted order."""
    if not labels:
        return metric_name
    matchers = ",".join(f"{key}={_quote(labels[key])}" for key in sorted(labels))
    return f"{metric_name}{{{matchers}}}"


def saturation_promql_source(address: str, params: Mapping[str, str] | None) -> PromQLMetricSource:
    """Source returning ``1 - pool saturation`` for the ``pool`` parameter."""
    pool = (params or {}).get("pool", "")
    if not pool:
        raise ValueError("inference pool name is required for saturation PromQL")
    expr = "1 - " + build_promql(
        "inference_extension_flow_control_pool_saturation", {"inference_pool": pool}
    )
    return PromQLMetricSource(address, expr)


def promql_source_from_labels(
    address: str, metric_name: str, labels: Mapping[str, str] | None
) -> PromQLMetricSource:
    """Source for a metric name filtered by label matchers."""
    return PromQLMetricSource(address, build_promql(metric_name, labels))


def _capacity_source(
    address: str, inference_pool: str, max_concurrency: float, what: str, numerator: str
) -> PromQLMetricSource:
    if not inference_pool:
        raise ValueError(f"inference pool name is required for {what} PromQL")
    if not max_concurrency > 0:
        raise ValueError(
            f"maxConcurrency must be positive, got {_format_number(max_concurrency)}"
        )
    label = _quote(inference_pool)
    expr = (
        f"1 - ({numerator.format(label=label)} / on() "
        f"(inference_pool_ready_pods{{name={label}}} * {_format_number(max_concurrency)}))"
    )
    try:
        return PromQLMetricSource(address, expr)
    except ValueError as exc:
        raise ValueError(f"failed to create Prometheus metric source: {exc}") from exc


def flow_control_queue_size_promql(
    address: str, inference_pool: str, max_concurrency: float
) -> PromQLMetricSource:
    """Budget ``1 - queue_size / (ready_pods * max_concurrency)`` from EPP metrics."""
    return _capacity_source(
        address,
        inference_pool,
        max_concurrency,
        "flow control queue size",
        "sum by(inference_pool)"
        "(inference_extension_flow_control_queue_size{{inference_pool={label}}})",
    )


def vllm_saturation_promql(
    address: str, inference_pool: str, max_concurrency: float
) -> PromQLMetricSource:
    """Budget ``1 - running / (ready_pods * max_concurrency)`` from vLLM metrics."""
    return _capacity_source(
        address,
        inference_pool,
        max_concurrency,
        "vLLM saturation",
        "sum(vllm:num_requests_running{{inference_pool={label}}})",
    )