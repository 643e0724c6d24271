from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt

from ..settings import settings

ROLES = ("parent", "sitter", "admin")


class TokenError(Exception):
    status_code = 401


@dataclass
class VerifiedUser:
    sub: str
    role: str | None
    claims: dict[str, Any]


def verify_bearer_token(token: str) -> VerifiedUser:
    """
    Verify an HS256 access token minted by the accounts service.

    `exp` is enforced by jose; `iss` only when JWT_ISSUER is configured.
    """
    if not token:
        raise TokenError("missing token")
    secret = str(settings.jwt_secret or "")
    if not secret:
        raise TokenError("token verification is not configured")

    options = {"verify_aud": False, "verify_iss": bool(settings.jwt_issuer)}
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer or None,
            options=options,
        )
    except JWTError as e:
        raise TokenError(str(e) or "invalid token") from e

    sub = str(claims.get("sub") or "").strip()
    if not sub:
        raise TokenError("token has no subject")
    role = str(claims.get("role") or "").strip().lower() or None
    if role is not None and role not in ROLES:
        raise TokenError("unknown role")
    return VerifiedUser(sub=sub, role=role, claims=claims)
