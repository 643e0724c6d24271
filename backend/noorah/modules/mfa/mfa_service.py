"""
MFA enrollment lifecycle: setup -> confirm -> verify -> disable.

Each user has at most one enrollment record (pending or enabled). Every
code-checking path goes through the same lockout accounting: after
`mfa_lockout_max_attempts` consecutive failures the record is locked for an
exponentially growing period.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Literal, NoReturn

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidCode, MfaConflict, MfaLocked, MfaNotEnabled, MfaNotFound
from ...observability.logging import get_logger
from ...repositories import mfa_repo
from ...settings import settings
from . import totp

log = get_logger("mfa")

# Bounded reload-and-retry when a failed attempt loses a version race.
FAILURE_WRITE_ATTEMPTS = 5


@dataclass
class MfaSetup:
    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass
class MfaStatus:
    enabled: bool
    pending: bool = False
    backup_codes_remaining: int = 0
    locked_until: int | None = None


@dataclass
class VerifyResult:
    ok: bool
    method: Literal["totp", "backup_code"]
    backup_codes_remaining: int


def _now(now: float | None) -> float:
    return time.time() if now is None else float(now)


def _match_totp(record: dict[str, Any], code: str, now: float) -> int | None:
    return totp.verify_totp(
        record["secret"],
        code,
        now,
        window=settings.mfa_window_steps,
        last_used_step=record.get("lastUsedStep"),
        digits=settings.mfa_digits,
        period=settings.mfa_period_seconds,
    )


def _ensure_not_locked(record: dict[str, Any], now: float) -> None:
    locked_until = record.get("lockedUntil")
    if locked_until and now < locked_until:
        raise MfaLocked(
            "Too many failed attempts; try again later",
            retry_after_seconds=max(1, math.ceil(locked_until - now)),
        )


def _require(user_id: str) -> dict[str, Any]:
    record = mfa_repo.get_enrollment(user_id)
    if not record:
        raise MfaNotFound("MFA is not set up for this account")
    return record


def _save(user_id: str, record: dict[str, Any], **changes: Any) -> dict[str, Any]:
    return mfa_repo.save_enrollment(
        user_id=user_id,
        record={**record, **changes},
        expected_version=record.get("version"),
    )


def _save_success(user_id: str, record: dict[str, Any], **changes: Any) -> dict[str, Any]:
    return _save(user_id, record, failedAttempts=0, lockoutLevel=0, lockedUntil=None, **changes)


def _backup_hash(code: str) -> str | None:
    try:
        return totp.hash_backup_code(code)
    except ValueError:
        return None


def _failure_changes(record: dict[str, Any], now: float) -> tuple[dict[str, Any], int | None]:
    failed = int(record.get("failedAttempts") or 0) + 1
    level = int(record.get("lockoutLevel") or 0)
    if failed < settings.mfa_lockout_max_attempts:
        return {"failedAttempts": failed}, None

    locked_for = min(settings.mfa_lockout_max_seconds, settings.mfa_lockout_base_seconds * (2**level))
    return {
        "failedAttempts": 0,
        "lockoutLevel": level + 1,
        "lockedUntil": int(math.ceil(now)) + int(locked_for),
    }, locked_for


def _fail(user_id: str, record: dict[str, Any], now: float, *, action: str) -> NoReturn:
    """
    Count a failed attempt, lock if over the limit, and raise.

    Concurrent wrong guesses race on the same version; the loser reloads and
    counts again so every guess lands on the counter.
    """
    for attempt in range(1, FAILURE_WRITE_ATTEMPTS + 1):
        changes, locked_for = _failure_changes(record, now)
        try:
            _save(user_id, record, **changes)
            break
        except DdbConflict:
            if attempt >= FAILURE_WRITE_ATTEMPTS:
                log.warning("mfa_failure_not_recorded", user_id=user_id, action=action, attempts=attempt)
                raise
            fresh = mfa_repo.get_enrollment(user_id)
            if not fresh:
                raise InvalidCode("Invalid verification code") from None
            # A concurrent guess may have tripped the lock already.
            _ensure_not_locked(fresh, now)
            record = fresh

    if locked_for is not None:
        level = int(record.get("lockoutLevel") or 0) + 1
        log.warning("mfa_locked", user_id=user_id, action=action, locked_for_seconds=locked_for, lockout_level=level)
        raise MfaLocked("Too many failed attempts; try again later", retry_after_seconds=locked_for)

    log.warning("mfa_verification_failed", user_id=user_id, action=action, failed_attempts=changes["failedAttempts"])
    raise InvalidCode("Invalid verification code")


def begin_setup(*, user_id: str, account_name: str, now: float | None = None) -> MfaSetup:
    """
    Generate a fresh secret and backup codes as a *pending* enrollment.

    MFA is not enforced until `confirm_setup` proves the authenticator works.
    """
    ts = _now(now)
    existing = mfa_repo.get_enrollment(user_id)
    if existing and existing.get("status") == "enabled":
        raise MfaConflict("MFA is already enabled; disable it before setting up again")

    secret = totp.generate_secret(settings.mfa_secret_bytes)
    backup_codes = totp.generate_backup_codes(settings.mfa_backup_code_count)

    record: dict[str, Any] = {
        "status": "pending",
        "secret": secret,
        "backupCodeHashes": [totp.hash_backup_code(c) for c in backup_codes],
        "createdAt": int(ts),
    }
    if existing:
        # Re-running setup must not reset an active lockout.
        for f in ("failedAttempts", "lockoutLevel", "lockedUntil"):
            record[f] = existing.get(f)

    mfa_repo.save_enrollment(
        user_id=user_id,
        record=record,
        expected_version=existing.get("version") if existing else None,
    )
    log.info("mfa_setup_created", user_id=user_id, replaced_pending=bool(existing))

    return MfaSetup(
        secret=secret,
        provisioning_uri=totp.provisioning_uri(
            secret,
            account_name or user_id,
            issuer=settings.mfa_issuer,
            digits=settings.mfa_digits,
            period=settings.mfa_period_seconds,
        ),
        backup_codes=backup_codes,
    )


def confirm_setup(*, user_id: str, code: str, now: float | None = None) -> MfaStatus:
    ts = _now(now)
    record = _require(user_id)
    if record.get("status") == "enabled":
        raise MfaConflict("MFA is already enabled")
    _ensure_not_locked(record, ts)

    step = _match_totp(record, code, ts)
    if step is None:
        _fail(user_id, record, ts, action="enable")

    saved = _save_success(user_id, record, status="enabled", enabledAt=int(ts), lastUsedStep=step)
    log.info("mfa_enabled", user_id=user_id)
    return _status_of(saved)


def verify(*, user_id: str, code: str, now: float | None = None) -> VerifyResult:
    """
    Second-factor check at login: TOTP first, then single-use backup codes.
    """
    ts = _now(now)
    record = mfa_repo.get_enrollment(user_id)
    if not record or record.get("status") != "enabled":
        raise MfaNotEnabled("MFA is not enabled for this account")
    _ensure_not_locked(record, ts)

    step = _match_totp(record, code, ts)
    if step is not None:
        saved = _save_success(user_id, record, lastUsedStep=step)
        return VerifyResult(ok=True, method="totp", backup_codes_remaining=len(saved["backupCodeHashes"]))

    hashed = _backup_hash(code)
    hashes = list(record.get("backupCodeHashes") or [])
    if hashed is not None and hashed in hashes:
        hashes.remove(hashed)
        saved = _save_success(user_id, record, backupCodeHashes=hashes)
        log.warning("mfa_backup_code_used", user_id=user_id, remaining=len(hashes))
        return VerifyResult(ok=True, method="backup_code", backup_codes_remaining=len(hashes))

    _fail(user_id, record, ts, action="verify")


def disable(*, user_id: str, code: str | None, now: float | None = None) -> MfaStatus:
    """
    Remove the enrollment. An enabled enrollment needs a valid TOTP or backup
    code; a pending one can be abandoned freely.
    """
    ts = _now(now)
    record = _require(user_id)

    if record.get("status") == "enabled":
        _ensure_not_locked(record, ts)
        code = code or ""
        step = _match_totp(record, code, ts)
        if step is None and _backup_hash(code) not in (record.get("backupCodeHashes") or []):
            _fail(user_id, record, ts, action="disable")

    mfa_repo.delete_enrollment(user_id=user_id, expected_version=int(record["version"]))
    log.info("mfa_disabled", user_id=user_id, was_enabled=record.get("status") == "enabled")
    return MfaStatus(enabled=False)


def regenerate_backup_codes(*, user_id: str, code: str, now: float | None = None) -> list[str]:
    ts = _now(now)
    record = mfa_repo.get_enrollment(user_id)
    if not record or record.get("status") != "enabled":
        raise MfaNotEnabled("MFA is not enabled for this account")
    _ensure_not_locked(record, ts)

    step = _match_totp(record, code, ts)
    if step is None:
        _fail(user_id, record, ts, action="regenerate_backup_codes")

    codes = totp.generate_backup_codes(settings.mfa_backup_code_count)
    _save_success(
        user_id,
        record,
        lastUsedStep=step,
        backupCodeHashes=[totp.hash_backup_code(c) for c in codes],
    )
    log.info("mfa_backup_codes_regenerated", user_id=user_id, count=len(codes))
    return codes


def _status_of(record: dict[str, Any] | None, now: float | None = None) -> MfaStatus:
    if not record:
        return MfaStatus(enabled=False)
    locked_until = record.get("lockedUntil")
    if locked_until and now is not None and now >= locked_until:
        locked_until = None
    return MfaStatus(
        enabled=record.get("status") == "enabled",
        pending=record.get("status") == "pending",
        backup_codes_remaining=len(record.get("backupCodeHashes") or []),
        locked_until=int(locked_until) if locked_until else None,
    )


def get_status(*, user_id: str, now: float | None = None) -> MfaStatus:
    return _status_of(mfa_repo.get_enrollment(user_id), _now(now))


def is_required(*, user_id: str) -> bool:
    return get_status(user_id=user_id).enabled
