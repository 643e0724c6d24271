from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.mfa import mfa_service
from ..modules.mfa.mfa_service import MfaStatus
from ._auth import current_user

router = APIRouter(tags=["mfa"])


class SetupRequest(BaseModel):
    accountName: str | None = Field(default=None, max_length=200)


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class DisableRequest(BaseModel):
    code: str | None = Field(default=None, max_length=32)


def _status_json(status: MfaStatus) -> dict[str, Any]:
    return {
        "enabled": status.enabled,
        "pending": status.pending,
        "backupCodesRemaining": status.backup_codes_remaining,
        "lockedUntil": status.locked_until,
    }


@router.get("/status")
def get_status(request: Request):
    user = current_user(request)
    return {"ok": True, "mfa": _status_json(mfa_service.get_status(user_id=user.sub))}


@router.post("/setup")
def setup(request: Request, body: SetupRequest | None = None):
    user = current_user(request)
    account = (body.accountName if body else None) or str(user.claims.get("email") or "") or user.sub
    s = mfa_service.begin_setup(user_id=user.sub, account_name=account.strip())
    # The secret and codes are shown exactly once.
    return {
        "ok": True,
        "secret": s.secret,
        "provisioningUri": s.provisioning_uri,
        "backupCodes": s.backup_codes,
    }


@router.post("/enable")
def enable(request: Request, body: CodeRequest):
    user = current_user(request)
    status = mfa_service.confirm_setup(user_id=user.sub, code=body.code)
    return {"ok": True, "mfa": _status_json(status)}


@router.post("/verify")
def verify(request: Request, body: CodeRequest):
    user = current_user(request)
    res = mfa_service.verify(user_id=user.sub, code=body.code)
    return {"ok": res.ok, "method": res.method, "backupCodesRemaining": res.backup_codes_remaining}


@router.post("/disable")
def disable(request: Request, body: DisableRequest):
    user = current_user(request)
    status = mfa_service.disable(user_id=user.sub, code=body.code)
    return {"ok": True, "mfa": _status_json(status)}


@router.post("/backup-codes/regenerate")
def regenerate_backup_codes(request: Request, body: CodeRequest):
    user = current_user(request)
    codes = mfa_service.regenerate_backup_codes(user_id=user.sub, code=body.code)
    return {"ok": True, "backupCodes": codes}
