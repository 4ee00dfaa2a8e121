"""Expiry sweep background task."""

import asyncio
import logging
import random
from typing import Optional

from pairgate.config import settings
from pairgate.engine import PairGateEngine
from pairgate.store import DocumentStore

logger = logging.getLogger("pairgate.sweep")

_sweep_task: Optional[asyncio.Task] = None
_shutdown_event: Optional[asyncio.Event] = None


async def run_sweep(engine: PairGateEngine) -> tuple[int, int]:
    """
    One sweep pass.

    Ends admin sessions past their deadline and marks expired pending
    codes. Expiry is also detected lazily on every use; the sweep only
    keeps stored state tidy between uses.
    """
    sessions = await engine.sweep_expired_sessions()
    codes = await engine.sweep_expired_codes()
    return sessions.unwrap(), codes.unwrap()


async def expiry_sweep_loop(store: DocumentStore):
    """Background loop running run_sweep with a jittered interval."""
    base_interval = settings.session_sweep_interval_seconds
    logger.info(f"Expiry sweep loop started (base interval: {base_interval}s with ±20% jitter)")

    engine = PairGateEngine(store, settings)
    while not _shutdown_event.is_set():
        try:
            expired_sessions, expired_codes = await run_sweep(engine)
            if expired_sessions or expired_codes:
                logger.info(
                    f"Expired {expired_sessions} admin sessions and {expired_codes} pairing codes"
                )
        except Exception as e:
            logger.error(f"Expiry sweep error: {e}", exc_info=True)

        # Jitter keeps several instances from sweeping in lockstep
        jittered_interval = base_interval * random.uniform(0.8, 1.2)

        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=jittered_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Expiry sweep loop stopped")


async def start_expiry_sweep(store: DocumentStore):
    """Start the expiry sweep background task."""
    global _sweep_task, _shutdown_event

    _shutdown_event = asyncio.Event()
    _sweep_task = asyncio.create_task(expiry_sweep_loop(store))


async def stop_expiry_sweep():
    """Stop the expiry sweep background task."""
    global _sweep_task, _shutdown_event

    if _shutdown_event:
        _shutdown_event.set()

    if _sweep_task:
        try:
            await asyncio.wait_for(_sweep_task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Expiry sweep task did not stop gracefully, cancelling")
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass

    _sweep_task = None
    _shutdown_event = None
