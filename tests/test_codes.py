"""
Pairing code generation, validation, revocation and expiry.
"""

import asyncio
import json

import pytest

from conftest import CONTROLLER, SUBJECT, make_settings
from pairgate.engine import PairGateEngine, generate_code_string
from pairgate.models import CodeStatus, ErrorKind
from pairgate.store.memory import MemoryDocumentStore

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def test_generated_codes_have_fixed_length_and_alphabet():
    """Every code has the configured length and only alphabet characters."""
    for _ in range(500):
        code = generate_code_string(12, ALPHABET)
        assert len(code) == 12
        assert set(code) <= set(ALPHABET)


def test_ten_thousand_codes_are_unique_with_reduced_alphabet():
    """Pigeonhole check: 10,000 generations over 32^8 codes produce no duplicates."""
    codes = {generate_code_string(8, ALPHABET) for _ in range(10_000)}
    assert len(codes) == 10_000


def test_biased_bytes_are_rejected():
    """Bytes above the largest multiple of the alphabet size are discarded."""
    chunks = iter([bytes([255, 255, 255, 255, 255, 255]), bytes([0, 1, 2, 3, 4, 5])])

    code = generate_code_string(3, "ABC", token_source=lambda n: next(chunks))

    # 256 % 3 == 1, so 255 is rejected and 0, 1, 2 map to A, B, C
    assert code == "ABC"


@pytest.mark.asyncio
async def test_generate_requires_caller(engine):
    result = await engine.generate_code(None)

    assert not result.ok
    assert result.kind == ErrorKind.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_generate_returns_share_payloads(engine, config):
    issued = (await engine.generate_code(SUBJECT, share_method="qr")).unwrap()

    assert issued.expires_in == "24 hours"
    assert issued.max_uses == 1
    assert issued.share_url == f"{config.app_url}/link/{issued.code}"

    payload = json.loads(issued.qr_code_data)
    assert payload == {
        "type": "pairgate_link",
        "code": issued.code,
        "version": "1.0",
        "appUrl": config.app_url,
    }


@pytest.mark.asyncio
async def test_manual_share_has_no_qr_payload(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()
    assert issued.qr_code_data is None


@pytest.mark.asyncio
async def test_generate_rejects_bad_options(engine):
    too_long = await engine.generate_code(SUBJECT, expiration_hours=1000)
    zero_uses = await engine.generate_code(SUBJECT, max_uses=0)
    bad_method = await engine.generate_code(SUBJECT, share_method="carrier-pigeon")

    assert too_long.kind == ErrorKind.VALIDATION_FAILED
    assert zero_uses.kind == ErrorKind.VALIDATION_FAILED
    assert bad_method.kind == ErrorKind.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_active_code_quota(engine, config):
    """A subject may hold at most max_active_codes_per_subject usable codes."""
    for _ in range(config.max_active_codes_per_subject):
        assert (await engine.generate_code(SUBJECT)).ok

    result = await engine.generate_code(SUBJECT)

    assert result.kind == ErrorKind.CONFLICT
    assert result.error.details["quota_type"] == "active_codes"


@pytest.mark.asyncio
async def test_expired_codes_do_not_count_toward_quota(engine, clock, config):
    for _ in range(config.max_active_codes_per_subject):
        assert (await engine.generate_code(SUBJECT, expiration_hours=1)).ok

    clock.advance(hours=2)

    assert (await engine.generate_code(SUBJECT)).ok


@pytest.mark.asyncio
async def test_collision_is_retried_then_gives_up(store, config, clock):
    """A code string that is already taken is regenerated, up to the attempt limit."""
    engine = PairGateEngine(store, config, clock, token_source=lambda n: bytes(n))

    first = await engine.generate_code(SUBJECT)
    second = await engine.generate_code(SUBJECT)

    assert first.ok
    assert first.value.code == "A" * config.code_length
    assert second.kind == ErrorKind.CONFLICT


@pytest.mark.asyncio
async def test_validate_is_read_only(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()

    first = (await engine.validate_code(issued.code)).unwrap()
    second = (await engine.validate_code(issued.code)).unwrap()

    assert first.valid is True
    assert first.subject_id == SUBJECT
    assert first.uses_left == 1
    assert first == second
    stored = await engine.codes.codes.get(issued.code)
    assert stored.status == CodeStatus.PENDING
    assert stored.use_count == 0


@pytest.mark.asyncio
async def test_validate_normalizes_input(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()
    messy = f"  {issued.code[:4].lower()}-{issued.code[4:8]} {issued.code[8:]} "

    assert (await engine.validate_code(messy)).ok


@pytest.mark.asyncio
async def test_validate_rejects_malformed_codes(engine):
    for bad in ["", "SHORT", "O0O0O0O0O0O0", "ABCDEFGHJKLMN"]:
        result = await engine.validate_code(bad)
        assert result.kind == ErrorKind.VALIDATION_FAILED, bad


@pytest.mark.asyncio
async def test_validate_unknown_code(engine):
    result = await engine.validate_code("ABCDEFGHJKLM")
    assert result.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_past_deadline_code_is_expired_without_sweep(engine, clock):
    """A code past expires_at fails with Expired even though nothing marked it."""
    issued = (await engine.generate_code(SUBJECT, expiration_hours=1)).unwrap()
    clock.advance(hours=1)

    result = await engine.validate_code(issued.code)

    assert result.kind == ErrorKind.EXPIRED
    stored = await engine.codes.codes.get(issued.code)
    assert stored.status == CodeStatus.PENDING


@pytest.mark.asyncio
async def test_short_lived_code_expires_in_real_time(config):
    """A code issued for ~1 second is expired after waiting 2 seconds."""
    engine = PairGateEngine(MemoryDocumentStore(), config)
    issued = (await engine.generate_code(SUBJECT, expiration_hours=0.0003)).unwrap()

    await asyncio.sleep(2)

    result = await engine.validate_code(issued.code)
    assert result.kind == ErrorKind.EXPIRED


@pytest.mark.asyncio
async def test_redeeming_expired_code_marks_it_expired(engine, clock):
    issued = (await engine.generate_code(SUBJECT, expiration_hours=1)).unwrap()
    clock.advance(hours=2)

    result = await engine.redeem_code(issued.code, CONTROLLER)

    assert result.kind == ErrorKind.EXPIRED
    stored = await engine.codes.codes.get(issued.code)
    assert stored.status == CodeStatus.EXPIRED
    assert stored.used_by is None


@pytest.mark.asyncio
async def test_revoke_code(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()

    revoked = (await engine.revoke_code(issued.code, SUBJECT)).unwrap()
    again = await engine.revoke_code(issued.code, SUBJECT)
    validation = await engine.validate_code(issued.code)
    redemption = await engine.redeem_code(issued.code, CONTROLLER)

    assert revoked.status == CodeStatus.REVOKED
    assert revoked.revoked_at is not None
    assert again.ok, "Revoking twice is a no-op"
    assert validation.kind == ErrorKind.ALREADY_USED
    assert redemption.kind == ErrorKind.ALREADY_USED


@pytest.mark.asyncio
async def test_only_issuer_may_revoke(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()

    result = await engine.revoke_code(issued.code, CONTROLLER)

    assert result.kind == ErrorKind.PERMISSION_DENIED


@pytest.mark.asyncio
async def test_revoke_used_code_fails(engine):
    issued = (await engine.generate_code(SUBJECT)).unwrap()
    assert (await engine.redeem_code(issued.code, CONTROLLER)).ok

    result = await engine.revoke_code(issued.code, SUBJECT)

    assert result.kind == ErrorKind.ALREADY_USED


@pytest.mark.asyncio
async def test_list_codes_shows_only_usable(engine, clock):
    kept = (await engine.generate_code(SUBJECT, expiration_hours=48)).unwrap()
    lapsed = (await engine.generate_code(SUBJECT, expiration_hours=1)).unwrap()
    withdrawn = (await engine.generate_code(SUBJECT)).unwrap()
    await engine.revoke_code(withdrawn.code, SUBJECT)
    clock.advance(hours=2)

    codes = (await engine.list_codes(SUBJECT)).unwrap()

    assert [c.code for c in codes] == [kept.code]
    assert lapsed.code not in {c.code for c in codes}


@pytest.mark.asyncio
async def test_sweep_marks_expired_codes(engine, clock):
    issued = (await engine.generate_code(SUBJECT, expiration_hours=1)).unwrap()
    fresh = (await engine.generate_code(SUBJECT, expiration_hours=5)).unwrap()
    clock.advance(hours=2)

    swept = (await engine.sweep_expired_codes()).unwrap()

    assert swept == 1
    assert (await engine.codes.codes.get(issued.code)).status == CodeStatus.EXPIRED
    assert (await engine.codes.codes.get(fresh.code)).status == CodeStatus.PENDING


@pytest.mark.asyncio
async def test_custom_code_length():
    engine = PairGateEngine(MemoryDocumentStore(), make_settings(code_length=6))

    issued = (await engine.generate_code(SUBJECT)).unwrap()

    assert len(issued.code) == 6
    assert (await engine.validate_code(issued.code)).ok
