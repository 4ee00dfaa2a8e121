"""
Expiry sweep and metrics counters.
"""

import asyncio

import pytest

from conftest import CONTROLLER, SUBJECT
from pairgate.models import CodeStatus, SessionEndReason
from pairgate.observability.metrics import metrics
from pairgate.store.memory import MemoryDocumentStore
from pairgate.tasks.sweep import run_sweep, start_expiry_sweep, stop_expiry_sweep


@pytest.mark.asyncio
async def test_run_sweep_expires_sessions_and_codes(engine, admin_session, clock):
    stale = (await engine.generate_code("subject-erin", expiration_hours=1)).unwrap()
    clock.advance(hours=2)

    expired_sessions, expired_codes = await run_sweep(engine)

    assert expired_sessions == 1
    assert expired_codes == 1
    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.end_reason == SessionEndReason.EXPIRED
    assert (await engine.codes.codes.get(stale.code)).status == CodeStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_do(engine, admin_session):
    assert await run_sweep(engine) == (0, 0)


@pytest.mark.asyncio
async def test_sweep_task_starts_and_stops():
    await start_expiry_sweep(MemoryDocumentStore())
    await asyncio.sleep(0)

    await stop_expiry_sweep()


@pytest.mark.asyncio
async def test_counters_track_lifecycle(engine):
    metrics.reset()

    issued = (await engine.generate_code(SUBJECT)).unwrap()
    relationship = (await engine.redeem_code(issued.code, CONTROLLER)).unwrap()
    session = (await engine.start_session(relationship.id, CONTROLLER)).unwrap()
    await engine.perform_action(session.id, CONTROLLER, "view_data")
    await engine.perform_action(session.id, CONTROLLER, "export_data")
    await engine.terminate_relationship(relationship.id, SUBJECT)

    assert metrics.counter_value("codes.generated") == 1
    assert metrics.counter_value("codes.redeemed") == 1
    assert metrics.counter_value("relationships.created") == 1
    assert metrics.counter_value("sessions.started") == 1
    assert metrics.counter_value("gate.allowed") == 1
    assert metrics.counter_value("gate.denied") == 1
    assert metrics.counter_value("actions.recorded") == 1
    assert metrics.counter_value("relationships.terminated") == 1
