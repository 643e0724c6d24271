from __future__ import annotations

from fastapi import HTTPException, Request

from ..auth.tokens import VerifiedUser


def current_user(request: Request) -> VerifiedUser:
    user = getattr(request.state, "user", None)
    if not isinstance(user, VerifiedUser) or not user.sub:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
