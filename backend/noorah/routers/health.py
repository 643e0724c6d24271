from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter()


@router.get("/", tags=["health"])
def health():
    return {
        "message": "Noorah Safety API",
        "version": "1.0.0",
        "status": "running",
        "environment": settings.normalized_environment,
        "dynamodb": "configured" if settings.ddb_table_name else "missing",
        "endpoints": [
            "GET /api/mfa/status",
            "POST /api/mfa/setup",
            "POST /api/mfa/verify",
            "POST /api/guardian/sessions",
            "POST /api/guardian/sessions/{id}/check-ins",
            "POST /api/guardian/sessions/{id}/sos",
        ],
    }
