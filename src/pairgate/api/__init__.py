"""PairGate REST API."""

from pairgate.api.router import router

__all__ = ["router"]
