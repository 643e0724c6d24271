from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from boto3.dynamodb.conditions import Attr

from ..db.dynamodb.errors import DdbInternal
from ..db.dynamodb.table import get_main_table
from ..services.token_crypto import decrypt_string, encrypt_string

_INT_FIELDS = ("version", "failedAttempts", "lockoutLevel", "lockedUntil", "lastUsedStep", "createdAt", "enabledAt")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def mfa_key(user_id: str) -> dict[str, str]:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")
    return {"pk": f"USER#{uid}", "sk": "MFA"}


def _from_item(user_id: str, item: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {k: v for k, v in item.items() if k not in ("pk", "sk", "secretEnc")}
    for f in _INT_FIELDS:
        v = out.get(f)
        # boto3 hands numbers back as Decimal.
        if isinstance(v, Decimal):
            out[f] = int(v)
    out["backupCodeHashes"] = list(out.get("backupCodeHashes") or [])

    secret = decrypt_string(item.get("secretEnc"), aad=user_id)
    if secret is None:
        raise DdbInternal(message="Stored MFA secret could not be decrypted", operation="Decrypt", key=mfa_key(user_id))
    out["secret"] = secret
    return out


def get_enrollment(user_id: str) -> dict[str, Any] | None:
    item = get_main_table().get_item(key=mfa_key(user_id))
    if not item:
        return None
    return _from_item(user_id, item)


def save_enrollment(*, user_id: str, record: dict[str, Any], expected_version: int | None) -> dict[str, Any]:
    """
    Write the enrollment, guarded by its version.

    `expected_version=None` means "must not exist yet". A lost race raises
    DdbConflict, so two requests can never both consume one code.
    """
    next_version = (int(expected_version) if expected_version is not None else 0) + 1
    item: dict[str, Any] = {
        **mfa_key(user_id),
        "entityType": "MfaEnrollment",
        "userId": str(user_id),
        "status": str(record.get("status") or "pending"),
        "secretEnc": encrypt_string(str(record["secret"]), aad=str(user_id)),
        "backupCodeHashes": list(record.get("backupCodeHashes") or []),
        "failedAttempts": int(record.get("failedAttempts") or 0),
        "lockoutLevel": int(record.get("lockoutLevel") or 0),
        "createdAt": int(record.get("createdAt") or 0),
        "version": next_version,
        "updatedAt": _now_iso(),
    }
    for optional in ("lastUsedStep", "lockedUntil", "enabledAt"):
        if record.get(optional) is not None:
            item[optional] = int(record[optional])

    if expected_version is None:
        condition = Attr("pk").not_exists()
    else:
        condition = Attr("version").eq(int(expected_version))

    get_main_table().put_item(item=item, condition_expression=condition)
    return _from_item(user_id, item)


def delete_enrollment(*, user_id: str, expected_version: int) -> None:
    get_main_table().delete_item(
        key=mfa_key(user_id),
        condition_expression=Attr("version").eq(int(expected_version)),
    )
