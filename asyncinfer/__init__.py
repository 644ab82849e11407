"""Asynchronous inference request processing: request types, merging, workers, metric-driven dispatch gates."""

__version__ = "0.1.0"