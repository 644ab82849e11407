"""Dispatch gates whose budget is derived from a metric source."""

from __future__ import annotations

import logging
import math

from asyncinfer.logsetup import DEFAULT, level_for_verbosity
from asyncinfer.metric_sources import MetricSource
from asyncinfer.pipeline import DispatchGate

logger = logging.getLogger("asyncinfer.gates")


class BinaryMetricDispatchGate(DispatchGate):
    """Fully open while the first sample is zero, closed otherwise.

    Query failures and empty results leave the gate open.
    """

    def __init__(self, source: MetricSource) -> None:
        self.source = source

    def budget(self) -> float:
        """1.0 if the metric is zero or unavailable, else 0.0."""
        try:
            samples = self.source.query()
        except Exception as exc:  # noqa: BLE001 - the gate fails open
            logger.log(
                level_for_verbosity(DEFAULT), "MetricSource error, failing open error=%s", exc
            )
            return 1.0
        if not samples:
            logger.log(level_for_verbosity(DEFAULT), "No metrics found, failing open")
            return 1.0
        return 1.0 if samples[0].value == 0.0 else 0.0


class MetricDispatchGate(DispatchGate):
    """Budget ``D - threshold`` clamped to [0, 1], where D comes from the source.

    The gate is closed while D is at or below ``threshold``. When the source
    fails, returns nothing, or returns NaN or infinity, ``fallback`` is used;
    the fallback is clamped to [0, 1].
    """

    def __init__(self, source: MetricSource, threshold: float, fallback: float) -> None:
        self.source = source
        self.threshold = threshold
        self.fallback = max(0.0, min(1.0, fallback))

    def budget(self) -> float:
        """The available budget, or the fallback when no valid value is known."""
        try:
            samples = self.source.query()
        except Exception as exc:  # noqa: BLE001 - any failure uses the fallback
            logger.error(
                "MetricSource error, using fallback value fallback=%s error=%s",
                self.fallback,
                exc,
            )
            return self.fallback
        if not samples:
            logger.error("no metric samples found, using fallback value fallback=%s",
                         self.fallback)
            return self.fallback

        value = samples[0].value
        if math.isnan(value) or math.isinf(value):
            logger.error("invalid metric value: %s, using fallback value fallback=%s",
                         value, self.fallback)
            return self.fallback

        if value <= self.threshold:
            return 0.0
        return min(1.0, max(0.0, value - self.threshold))


def saturation_dispatch_gate(
    source: MetricSource, threshold: float, fallback: float
) -> MetricDispatchGate:
    """Gate for a source returning ``1 - saturation``.

    ``threshold`` and ``fallback`` are given as saturations and converted to
    budgets as ``1 - value``.
    """
    return MetricDispatchGate(source, 1.0 - threshold, 1.0 - fallback)


def budget_dispatch_gate(
    source: MetricSource, baseline: float, fallback: float
) -> MetricDispatchGate:
    """Gate for a source returning a dispatch budget D, reserving ``baseline``.

    The gate closes when D <= baseline and otherwise returns D - baseline.
    """
    return MetricDispatchGate(source, baseline, fallback)