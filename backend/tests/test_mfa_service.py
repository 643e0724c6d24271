from __future__ import annotations

import copy

import pytest

from noorah.db.dynamodb.errors import DdbConflict
from noorah.errors import InvalidCode, MfaConflict, MfaLocked, MfaNotEnabled, MfaNotFound
from noorah.modules.mfa import mfa_service, totp
from noorah.repositories import mfa_repo

T0 = 1_700_000_000.0
USER = "user_parent_1"


def _code(secret: str, at: float) -> str:
    return totp.totp(secret, at)


def _enroll(at: float = T0) -> mfa_service.MfaSetup:
    setup = mfa_service.begin_setup(user_id=USER, account_name="pat@example.com", now=at)
    mfa_service.confirm_setup(user_id=USER, code=_code(setup.secret, at), now=at)
    return setup


def test_setup_creates_pending_enrollment_with_encrypted_secret(fake_table):
    setup = mfa_service.begin_setup(user_id=USER, account_name="pat@example.com", now=T0)

    assert len(setup.backup_codes) == 10
    assert setup.provisioning_uri.startswith("otpauth://totp/NannyRadar:pat@example.com?")

    stored = fake_table.items[("USER#" + USER, "MFA")]
    assert stored["status"] == "pending"
    assert setup.secret not in str(stored)
    assert stored["secretEnc"].startswith("v1:")
    assert all(c not in str(stored) for c in setup.backup_codes)

    status = mfa_service.get_status(user_id=USER, now=T0)
    assert status.enabled is False and status.pending is True
    assert mfa_service.is_required(user_id=USER) is False


def test_confirm_enables_and_verify_accepts_totp(fake_table):
    setup = _enroll()
    assert mfa_service.is_required(user_id=USER) is True

    at = T0 + 60
    res = mfa_service.verify(user_id=USER, code=_code(setup.secret, at), now=at)
    assert res.ok and res.method == "totp"
    assert res.backup_codes_remaining == 10


def test_totp_code_cannot_be_replayed(fake_table):
    setup = _enroll()
    at = T0 + 60
    code = _code(setup.secret, at)
    mfa_service.verify(user_id=USER, code=code, now=at)
    with pytest.raises(InvalidCode):
        mfa_service.verify(user_id=USER, code=code, now=at + 1)


def test_setup_again_while_enabled_conflicts(fake_table):
    _enroll()
    with pytest.raises(MfaConflict):
        mfa_service.begin_setup(user_id=USER, account_name="", now=T0 + 30)


def test_wrong_code_on_enable_keeps_pending(fake_table):
    mfa_service.begin_setup(user_id=USER, account_name="", now=T0)
    with pytest.raises(InvalidCode):
        mfa_service.confirm_setup(user_id=USER, code="000000", now=T0)
    record = mfa_repo.get_enrollment(USER)
    assert record["status"] == "pending"
    assert record["failedAttempts"] == 1


def test_verify_without_enrollment(fake_table):
    with pytest.raises(MfaNotEnabled):
        mfa_service.verify(user_id=USER, code="123456", now=T0)
    with pytest.raises(MfaNotFound):
        mfa_service.confirm_setup(user_id=USER, code="123456", now=T0)


def test_backup_code_is_single_use_and_case_insensitive(fake_table):
    setup = _enroll()
    code = setup.backup_codes[3]

    res = mfa_service.verify(user_id=USER, code=code.lower(), now=T0 + 100)
    assert res.method == "backup_code"
    assert res.backup_codes_remaining == 9

    with pytest.raises(InvalidCode):
        mfa_service.verify(user_id=USER, code=code, now=T0 + 200)


def test_lockout_after_five_failures_then_backoff_doubles(fake_table):
    setup = _enroll()

    for _ in range(4):
        with pytest.raises(InvalidCode):
            mfa_service.verify(user_id=USER, code="000000", now=T0 + 10)
    with pytest.raises(MfaLocked) as ei:
        mfa_service.verify(user_id=USER, code="000000", now=T0 + 10)
    assert ei.value.retry_after_seconds == 900

    # Even a correct code is refused while locked.
    at = T0 + 500
    with pytest.raises(MfaLocked) as locked:
        mfa_service.verify(user_id=USER, code=_code(setup.secret, at), now=at)
    assert 0 < locked.value.retry_after_seconds <= 900

    status = mfa_service.get_status(user_id=USER, now=at)
    assert status.locked_until is not None

    # Second lockout in a row doubles.
    after = T0 + 10 + 901
    for _ in range(4):
        with pytest.raises(InvalidCode):
            mfa_service.verify(user_id=USER, code="000000", now=after)
    with pytest.raises(MfaLocked) as second:
        mfa_service.verify(user_id=USER, code="000000", now=after)
    assert second.value.retry_after_seconds == 1800


def test_success_resets_lockout_counters(fake_table):
    setup = _enroll()
    for _ in range(3):
        with pytest.raises(InvalidCode):
            mfa_service.verify(user_id=USER, code="000000", now=T0 + 40)

    at = T0 + 60
    mfa_service.verify(user_id=USER, code=_code(setup.secret, at), now=at)
    record = mfa_repo.get_enrollment(USER)
    assert record["failedAttempts"] == 0
    assert record["lockoutLevel"] == 0
    assert record.get("lockedUntil") is None


def test_lockout_survives_restarting_setup(fake_table):
    mfa_service.begin_setup(user_id=USER, account_name="", now=T0)
    for _ in range(4):
        with pytest.raises(InvalidCode):
            mfa_service.confirm_setup(user_id=USER, code="000000", now=T0)
    with pytest.raises(MfaLocked):
        mfa_service.confirm_setup(user_id=USER, code="000000", now=T0)

    setup = mfa_service.begin_setup(user_id=USER, account_name="", now=T0 + 5)
    with pytest.raises(MfaLocked):
        mfa_service.confirm_setup(user_id=USER, code=_code(setup.secret, T0 + 5), now=T0 + 5)


def test_disable_requires_a_valid_code_when_enabled(fake_table):
    setup = _enroll()
    with pytest.raises(InvalidCode):
        mfa_service.disable(user_id=USER, code="000000", now=T0 + 60)
    assert mfa_service.is_required(user_id=USER) is True

    status = mfa_service.disable(user_id=USER, code=setup.backup_codes[0], now=T0 + 60)
    assert status.enabled is False
    assert mfa_repo.get_enrollment(USER) is None


def test_pending_enrollment_can_be_abandoned_without_code(fake_table):
    mfa_service.begin_setup(user_id=USER, account_name="", now=T0)
    mfa_service.disable(user_id=USER, code=None, now=T0)
    assert mfa_repo.get_enrollment(USER) is None


def test_regenerate_backup_codes_replaces_the_set(fake_table):
    setup = _enroll()
    at = T0 + 90
    codes = mfa_service.regenerate_backup_codes(user_id=USER, code=_code(setup.secret, at), now=at)

    assert len(codes) == 10
    assert set(codes).isdisjoint(setup.backup_codes)
    with pytest.raises(InvalidCode):
        mfa_service.verify(user_id=USER, code=setup.backup_codes[0], now=at + 30)
    res = mfa_service.verify(user_id=USER, code=codes[0], now=at + 30)
    assert res.method == "backup_code"


def test_non_ascii_backup_code_is_an_invalid_code(fake_table):
    _enroll()
    with pytest.raises(InvalidCode):
        mfa_service.verify(user_id=USER, code="ABCD-EFGHé", now=T0 + 100)
    assert mfa_repo.get_enrollment(USER)["failedAttempts"] == 1


def _serve_stale_first_read(monkeypatch, snapshot):
    """Each verify call first sees `snapshot`, as a request racing the others would."""
    real_get = mfa_repo.get_enrollment
    pending = []

    def get_enrollment(user_id):
        if pending:
            pending.pop()
            return copy.deepcopy(snapshot)
        return real_get(user_id)

    monkeypatch.setattr(mfa_repo, "get_enrollment", get_enrollment)
    return pending


def test_concurrent_wrong_guesses_all_count_toward_lockout(fake_table, monkeypatch):
    _enroll()
    stale = _serve_stale_first_read(monkeypatch, mfa_repo.get_enrollment(USER))

    for _ in range(4):
        stale.append(True)
        with pytest.raises(InvalidCode):
            mfa_service.verify(user_id=USER, code="000000", now=T0 + 10)
    stale.append(True)
    with pytest.raises(MfaLocked):
        mfa_service.verify(user_id=USER, code="000000", now=T0 + 10)

    for _ in range(3):
        stale.append(True)
        with pytest.raises(MfaLocked):
            mfa_service.verify(user_id=USER, code="000000", now=T0 + 20)

    record = fake_table.items[("USER#" + USER, "MFA")]
    assert record["lockoutLevel"] == 1
    assert record["failedAttempts"] == 0


def test_concurrent_reuse_of_one_totp_code_succeeds_once(fake_table, monkeypatch):
    setup = _enroll()
    stale = _serve_stale_first_read(monkeypatch, mfa_repo.get_enrollment(USER))
    at = T0 + 60
    code = _code(setup.secret, at)

    stale.append(True)
    assert mfa_service.verify(user_id=USER, code=code, now=at).ok
    stale.append(True)
    with pytest.raises(DdbConflict):
        mfa_service.verify(user_id=USER, code=code, now=at)


def test_concurrent_reuse_of_one_backup_code_succeeds_once(fake_table, monkeypatch):
    setup = _enroll()
    stale = _serve_stale_first_read(monkeypatch, mfa_repo.get_enrollment(USER))
    code = setup.backup_codes[0]

    stale.append(True)
    assert mfa_service.verify(user_id=USER, code=code, now=T0 + 100).backup_codes_remaining == 9
    stale.append(True)
    with pytest.raises(DdbConflict):
        mfa_service.verify(user_id=USER, code=code, now=T0 + 100)
    assert len(mfa_repo.get_enrollment(USER)["backupCodeHashes"]) == 9
