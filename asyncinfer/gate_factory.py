"""Creation of dispatch gates from a gate type and its parameters."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from asyncinfer import pipeline
from asyncinfer.gates import budget_dispatch_gate, saturation_dispatch_gate
from asyncinfer.metric_sources import (
    CachedMetricSource,
    CascadeMetricSource,
    MetricSource,
    flow_control_queue_size_promql,
    saturation_promql_source,
    vllm_saturation_promql,
)
from asyncinfer.pipeline import DispatchGate, const_open_gate

DEFAULT_CACHE_TTL = 5.0
DEFAULT_BUDGET_KEY = "dispatch-gate-budget"


class GateConfigError(ValueError):
    """Raised when a gate cannot be created from its configuration."""


def _parse_float(name: str, text: str | None, default: float) -> float:
    if not text:
        return default
    if text != text.strip() or "_" in text:
        raise GateConfigError(f"invalid {name} value '{text}': invalid syntax")
    try:
        return float(text)
    except ValueError as exc:
        raise GateConfigError(f"invalid {name} value '{text}': invalid syntax") from exc


def _cached(source: MetricSource, ttl: float) -> MetricSource:
    return CachedMetricSource(source, ttl) if ttl > 0 else source


class GateFactory(pipeline.GateFactory):
    """Creates gates by type.

    Supported types:

    * ``constant``: always fully open.
    * ``redis``: budget read from Redis; needs ``address`` and optionally
      ``budget_key``. Requires ``redis_connect`` (address -> client) and
      ``redis_gate`` (client, budget key -> gate); one client is kept per
      address.
    * ``prometheus-saturation``: ``pool`` (required), ``threshold`` (0.8),
      ``fallback`` (0.0).
    * ``prometheus-budget``: EPP queue size with a vLLM fallback; ``pool``
      (required), ``max_concurrency`` (100), ``baseline`` (0.05),
      ``fallback`` (0.0).

    Any other type gives an always-open gate. Prometheus sources are cached
    for ``cache_ttl`` seconds; 0 disables caching.
    """

    def __init__(
        self,
        prometheus_url: str = "",
        cache_ttl: float = DEFAULT_CACHE_TTL,
        redis_connect: Callable[[str], Any] | None = None,
        redis_gate: Callable[[Any, str], DispatchGate] | None = None,
    ) -> None:
        self.prometheus_url = prometheus_url
        self.cache_ttl = cache_ttl
        self.redis_connect = redis_connect
        self.redis_gate = redis_gate
        self.redis_clients: dict[str, Any] = {}

    def create_gate(self, gate_type: str, params: Mapping[str, str] | None) -> DispatchGate:
        """Build the gate for ``gate_type``; raise GateConfigError on bad settings."""
        params = params or {}
        if gate_type == "constant":
            return const_open_gate()
        if gate_type == "redis":
            return self._redis_gate(params)
        if gate_type == "prometheus-saturation":
            return self._saturation_gate(params)
        if gate_type == "prometheus-budget":
            return self._budget_gate(params)
        return const_open_gate()

    def _redis_gate(self, params: Mapping[str, str]) -> DispatchGate:
        address = params.get("address", "")
        if not address:
            raise GateConfigError("redis gate requires an 'address' in gate_params")
        if self.redis_connect is None or self.redis_gate is None:
            raise GateConfigError("redis gate requires a Redis connector to be configured")
        client = self.redis_clients.get(address)
        if client is None:
            client = self.redis_connect(address)
            self.redis_clients[address] = client
        budget_key = params.get("budget_key") or DEFAULT_BUDGET_KEY
        return self.redis_gate(client, budget_key)

    def _saturation_gate(self, params: Mapping[str, str]) -> DispatchGate:
        if not self.prometheus_url:
            raise GateConfigError(
                "prometheus-saturation gate type requires --prometheus-url flag to be set"
            )
        threshold = _parse_float("threshold", params.get("threshold"), 0.8)
        fallback = _parse_float("fallback", params.get("fallback"), 0.0)
        try:
            source = saturation_promql_source(self.prometheus_url, params)
        except ValueError as exc:
            raise GateConfigError(str(exc)) from exc
        return saturation_dispatch_gate(_cached(source, self.cache_ttl), threshold, fallback)

    def _budget_gate(self, params: Mapping[str, str]) -> DispatchGate:
        if not self.prometheus_url:
            raise GateConfigError(
                "prometheus-budget gate type requires --prometheus-url flag to be set"
            )
        pool = params.get("pool", "")
        if not pool:
            raise GateConfigError("inference pool name is required for prometheus-budget gate")
        max_concurrency = _parse_float("max_concurrency", params.get("max_concurrency"), 100.0)
        if max_concurrency <= 0:
            raise GateConfigError(f"max_concurrency must be positive, got {max_concurrency:g}")
        baseline = _parse_float("baseline", params.get("baseline"), 0.05)
        if baseline < 0 or baseline >= 1:
            raise GateConfigError(f"baseline must be in [0, 1), got {baseline:g}")
        fallback = _parse_float("fallback", params.get("fallback"), 0.0)

        try:
            primary = flow_control_queue_size_promql(self.prometheus_url, pool, max_concurrency)
            secondary = vllm_saturation_promql(self.prometheus_url, pool, max_concurrency)
        except ValueError as exc:
            raise GateConfigError(str(exc)) from exc

        source = CascadeMetricSource(
            _cached(primary, self.cache_ttl),
            _cached(secondary, self.cache_ttl),
        )
        return budget_dispatch_gate(source, baseline, fallback)