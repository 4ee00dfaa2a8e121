"""Observability helpers for PairGate."""

from pairgate.observability.metrics import metrics

__all__ = ["metrics"]
