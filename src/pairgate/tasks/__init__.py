"""PairGate background tasks."""

from pairgate.tasks.sweep import start_expiry_sweep, stop_expiry_sweep

__all__ = ["start_expiry_sweep", "stop_expiry_sweep"]
