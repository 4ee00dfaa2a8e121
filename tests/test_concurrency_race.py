"""
Concurrency and race condition tests.
"""

import asyncio

import pytest

from conftest import CONTROLLER, OTHER_CONTROLLER, SUBJECT, make_settings
from pairgate.engine import PairGateEngine
from pairgate.models import CodeStatus, ErrorKind
from pairgate.store.memory import MemoryDocumentStore


@pytest.mark.asyncio
async def test_concurrent_redemption_only_one_wins(engine):
    """Two controllers redeeming the same code at once: one success, one AlreadyUsed."""
    issued = (await engine.generate_code(SUBJECT)).unwrap()

    result_a, result_b = await asyncio.gather(
        engine.redeem_code(issued.code, CONTROLLER),
        engine.redeem_code(issued.code, OTHER_CONTROLLER),
    )

    outcomes = sorted([result_a.ok, result_b.ok])
    assert outcomes == [False, True]
    loser = result_a if not result_a.ok else result_b
    winner = result_a if result_a.ok else result_b
    assert loser.kind == ErrorKind.ALREADY_USED

    code = await engine.codes.codes.get(issued.code)
    assert code.status == CodeStatus.USED
    assert code.used_by == winner.value.controller_id
    assert code.use_count == 1

    relationships = (await engine.list_relationships(SUBJECT, include_inactive=True)).unwrap()
    assert len(relationships) == 1


@pytest.mark.asyncio
async def test_many_concurrent_redemptions(clock):
    """Ten racing redeemers of one single-use code produce exactly one relationship."""
    engine = PairGateEngine(
        MemoryDocumentStore(), make_settings(single_controller_per_subject=False), clock
    )
    issued = (await engine.generate_code(SUBJECT)).unwrap()

    results = await asyncio.gather(
        *(engine.redeem_code(issued.code, f"controller-{i}") for i in range(10))
    )

    assert sum(1 for r in results if r.ok) == 1
    assert all(r.kind == ErrorKind.ALREADY_USED for r in results if not r.ok)


@pytest.mark.asyncio
async def test_concurrent_session_start_yields_one_active_session(engine, relationship):
    """Racing start_session calls: exactly one active session, the rest Conflict."""
    results = await asyncio.gather(
        *(engine.start_session(relationship.id, CONTROLLER) for _ in range(5))
    )

    started = [r for r in results if r.ok]
    assert len(started) == 1
    assert all(r.kind == ErrorKind.CONFLICT for r in results if not r.ok)

    active = await engine.sessions.sessions.list_for_relationship(relationship.id, active_only=True)
    assert [s.id for s in active] == [started[0].value.id]


@pytest.mark.asyncio
async def test_concurrent_action_recording_counts_every_action(engine, admin_session):
    """Optimistic retries keep counter increments from being lost."""
    results = await asyncio.gather(
        *(engine.record_action(admin_session.id, CONTROLLER, "views") for _ in range(3))
    )

    assert all(r.ok for r in results)
    recorded = sum(1 for r in results if r.value)
    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.actions.views == recorded
    assert recorded >= 1


@pytest.mark.asyncio
async def test_terminate_racing_session_start(engine, relationship):
    """Termination and session start racing never leave an active session behind."""
    await asyncio.gather(
        engine.start_session(relationship.id, CONTROLLER),
        engine.terminate_relationship(relationship.id, SUBJECT),
    )

    active = await engine.sessions.sessions.list_for_relationship(relationship.id, active_only=True)
    assert active == []


@pytest.mark.asyncio
async def test_concurrent_policy_updates_never_lose_a_write(engine, relationship):
    """Two subject patches from the same instant: each acknowledged grant survives."""
    flags = ["emergency_override", "export_data"]
    results = await asyncio.gather(
        *(
            engine.update_relationship(relationship.id, SUBJECT, {"permissions": {flag: True}})
            for flag in flags
        )
    )

    assert any(r.ok for r in results)
    assert all(r.kind == ErrorKind.CONFLICT for r in results if not r.ok)

    stored = (await engine.get_relationship(relationship.id, SUBJECT)).unwrap()
    for flag, result in zip(flags, results):
        assert getattr(stored.permissions, flag) is result.ok

