"""
Admin session lifecycle: start, touch, expiry, reauth and action counters.
"""

from datetime import timedelta

import pytest

from conftest import CONTROLLER, STRANGER, SUBJECT, make_settings
from pairgate.engine import PairGateEngine
from pairgate.models import ErrorKind, SessionEndReason
from pairgate.store.memory import MemoryDocumentStore


@pytest.mark.asyncio
async def test_start_session(engine, relationship, clock, config):
    session = (
        await engine.start_session(
            relationship.id, CONTROLLER, ip_address="192.0.2.10", user_agent="pytest"
        )
    ).unwrap()

    assert session.is_active is True
    assert session.relationship_id == relationship.id
    assert session.subject_id == SUBJECT
    assert session.started_at == clock.now()
    assert session.expires_at == clock.now() + timedelta(
        minutes=config.default_session_timeout_minutes
    )
    assert session.actions.total() == 0
    assert session.ip_address == "192.0.2.10"
    assert session.user_agent == "pytest"


@pytest.mark.asyncio
async def test_only_controller_may_start(engine, relationship):
    by_subject = await engine.start_session(relationship.id, SUBJECT)
    by_stranger = await engine.start_session(relationship.id, STRANGER)
    missing = await engine.start_session("missing", CONTROLLER)

    assert by_subject.kind == ErrorKind.PERMISSION_DENIED
    assert by_stranger.kind == ErrorKind.PERMISSION_DENIED
    assert missing.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_second_start_conflicts_until_first_ends(engine, relationship):
    """An active session blocks another; ending it lets a new one start."""
    first = (await engine.start_session(relationship.id, CONTROLLER)).unwrap()

    blocked = await engine.start_session(relationship.id, CONTROLLER)
    assert blocked.kind == ErrorKind.CONFLICT

    ended = (await engine.end_session(first.id, CONTROLLER)).unwrap()
    assert ended.is_active is False
    assert ended.end_reason == SessionEndReason.ENDED

    second = await engine.start_session(relationship.id, CONTROLLER)
    assert second.ok
    assert second.value.id != first.id


@pytest.mark.asyncio
async def test_end_session_is_idempotent(engine, admin_session):
    first = (await engine.end_session(admin_session.id, CONTROLLER)).unwrap()
    second = (await engine.end_session(admin_session.id, CONTROLLER)).unwrap()

    assert first.is_active is False
    assert second.is_active is False
    assert second.ended_at == first.ended_at


@pytest.mark.asyncio
async def test_only_controller_may_end(engine, admin_session):
    result = await engine.end_session(admin_session.id, SUBJECT)
    assert result.kind == ErrorKind.PERMISSION_DENIED


@pytest.mark.asyncio
async def test_expired_session_can_be_replaced(engine, relationship, admin_session, clock, config):
    """A session past its deadline no longer blocks a new one and is ended lazily."""
    clock.advance(minutes=config.default_session_timeout_minutes)

    replacement = (await engine.start_session(relationship.id, CONTROLLER)).unwrap()

    old = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert old.is_active is False
    assert old.end_reason == SessionEndReason.EXPIRED
    assert replacement.is_active is True


@pytest.mark.asyncio
async def test_touch_is_hard_capped_by_default(engine, admin_session, clock):
    clock.advance(minutes=10)

    touched = (await engine.touch_session(admin_session.id, CONTROLLER)).unwrap()

    assert touched.last_activity_at == clock.now()
    assert touched.expires_at == admin_session.expires_at


@pytest.mark.asyncio
async def test_touch_expired_session_fails_and_ends_it(engine, admin_session, clock):
    clock.advance(minutes=31)

    result = await engine.touch_session(admin_session.id, CONTROLLER)

    assert result.kind == ErrorKind.EXPIRED
    stored = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert stored.is_active is False
    assert stored.end_reason == SessionEndReason.EXPIRED


@pytest.mark.asyncio
async def test_sliding_expiration_is_capped_by_lifetime(clock):
    engine = PairGateEngine(
        MemoryDocumentStore(),
        make_settings(session_sliding_expiration=True, max_session_lifetime_minutes=45),
        clock,
    )
    issued = (await engine.generate_code(SUBJECT)).unwrap()
    relationship = (await engine.redeem_code(issued.code, CONTROLLER)).unwrap()
    session = (await engine.start_session(relationship.id, CONTROLLER)).unwrap()

    clock.advance(minutes=10)
    touched = (await engine.touch_session(session.id, CONTROLLER)).unwrap()
    assert touched.expires_at == clock.now() + timedelta(minutes=30)

    clock.advance(minutes=25)
    capped = (await engine.touch_session(session.id, CONTROLLER)).unwrap()
    assert capped.expires_at == session.started_at + timedelta(minutes=45)

    # The lock follows the extended deadline, so the session still blocks others
    clock.advance(minutes=5)
    assert (await engine.start_session(relationship.id, CONTROLLER)).kind == ErrorKind.CONFLICT


@pytest.mark.asyncio
async def test_is_expired(engine, admin_session, clock):
    assert engine.sessions.is_expired(admin_session) is False

    clock.advance(minutes=30)

    assert engine.sessions.is_expired(admin_session) is True


@pytest.mark.asyncio
async def test_needs_reauth_only_when_required(engine, relationship, admin_session, clock):
    clock.advance(minutes=29, seconds=30)

    status = (await engine.needs_reauth(admin_session.id, CONTROLLER)).unwrap()
    assert status.needs_reauth is False, "require_reauth is off by default"
    assert status.remaining_seconds == 30

    await engine.update_relationship(relationship.id, SUBJECT, {"security": {"require_reauth": True}})

    status = (await engine.needs_reauth(admin_session.id, CONTROLLER)).unwrap()
    assert status.needs_reauth is True
    assert status.expired is False


@pytest.mark.asyncio
async def test_needs_reauth_outside_threshold(engine, relationship, admin_session, clock):
    await engine.update_relationship(relationship.id, SUBJECT, {"security": {"require_reauth": True}})
    clock.advance(minutes=5)

    status = (await engine.needs_reauth(admin_session.id, SUBJECT)).unwrap()

    assert status.needs_reauth is False
    assert status.remaining_seconds == 25 * 60


@pytest.mark.asyncio
async def test_expired_session_reports_expired_not_reauth(engine, relationship, admin_session, clock):
    await engine.update_relationship(relationship.id, SUBJECT, {"security": {"require_reauth": True}})
    clock.advance(hours=1)

    status = (await engine.needs_reauth(admin_session.id, CONTROLLER)).unwrap()

    assert status.expired is True
    assert status.needs_reauth is False
    assert status.remaining_seconds == 0


@pytest.mark.asyncio
async def test_record_action_increments_counter(engine, admin_session):
    assert (await engine.record_action(admin_session.id, CONTROLLER, "views")).value is True
    assert (await engine.record_action(admin_session.id, CONTROLLER, "views")).value is True
    assert (await engine.record_action(admin_session.id, CONTROLLER, "state_changes")).value is True

    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.actions.views == 2
    assert session.actions.state_changes == 1
    assert session.actions.total() == 3


@pytest.mark.asyncio
async def test_record_action_on_ended_session_is_dropped(engine, admin_session):
    """An action outliving its session is never attributed to it, and never raises."""
    await engine.end_session(admin_session.id, CONTROLLER)

    result = await engine.record_action(admin_session.id, CONTROLLER, "state_changes")

    assert result.ok
    assert result.value is False
    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.actions.state_changes == 0


@pytest.mark.asyncio
async def test_record_action_on_expired_or_missing_session_is_dropped(engine, admin_session, clock):
    clock.advance(hours=1)

    expired = await engine.record_action(admin_session.id, CONTROLLER, "views")
    missing = await engine.record_action("no-such-session", CONTROLLER, "views")

    assert expired.ok and expired.value is False
    assert missing.ok and missing.value is False


@pytest.mark.asyncio
async def test_record_action_rejects_unknown_category(engine, admin_session):
    result = await engine.record_action(admin_session.id, CONTROLLER, "teleports")
    assert result.kind == ErrorKind.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_record_action_requires_the_sessions_controller(engine, admin_session):
    stranger = await engine.record_action(admin_session.id, STRANGER, "views")
    anonymous = await engine.record_action(admin_session.id, None, "views")

    assert stranger.kind == ErrorKind.PERMISSION_DENIED
    assert anonymous.kind == ErrorKind.UNAUTHENTICATED
    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.actions.total() == 0


@pytest.mark.asyncio
async def test_record_action_passes_the_gate(engine, relationship, admin_session):
    """A category whose permissions are all off is never counted."""
    denied = await engine.record_action(admin_session.id, CONTROLLER, "emergency_actions")

    assert denied.kind == ErrorKind.PERMISSION_DENIED
    assert denied.error.details["reason"] == "permission_disabled"

    await engine.update_relationship(
        relationship.id, SUBJECT, {"permissions": {"force_end": True}}
    )
    allowed = await engine.record_action(admin_session.id, CONTROLLER, "emergency_actions")

    assert allowed.value is True
    session = (await engine.get_session(admin_session.id, CONTROLLER)).unwrap()
    assert session.actions.emergency_actions == 1


@pytest.mark.asyncio
async def test_ip_restrictions(engine, relationship):
    await engine.update_relationship(
        relationship.id, SUBJECT, {"security": {"ip_restrictions": ["192.0.2.0/24", "2001:db8::1"]}}
    )

    outside = await engine.start_session(relationship.id, CONTROLLER, ip_address="198.51.100.7")
    unknown = await engine.start_session(relationship.id, CONTROLLER)
    inside = await engine.start_session(relationship.id, CONTROLLER, ip_address="192.0.2.55")

    assert outside.kind == ErrorKind.PERMISSION_DENIED
    assert unknown.kind == ErrorKind.PERMISSION_DENIED
    assert inside.ok


@pytest.mark.asyncio
async def test_sweep_ends_expired_sessions(engine, relationship, admin_session, clock):
    clock.advance(minutes=45)

    swept = (await engine.sweep_expired_sessions()).unwrap()

    assert swept == 1
    session = (await engine.get_session(admin_session.id, SUBJECT)).unwrap()
    assert session.is_active is False
    assert session.end_reason == SessionEndReason.EXPIRED
    assert (await engine.start_session(relationship.id, CONTROLLER)).ok


@pytest.mark.asyncio
async def test_session_visible_to_parties_only(engine, admin_session):
    assert (await engine.get_session(admin_session.id, SUBJECT)).ok
    assert (await engine.get_session(admin_session.id, STRANGER)).kind == ErrorKind.PERMISSION_DENIED
    assert (await engine.get_session("missing", CONTROLLER)).kind == ErrorKind.NOT_FOUND
