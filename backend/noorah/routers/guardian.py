from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..modules.guardian import guardian_service
from ..modules.guardian.models import GuardianConfig, GuardianConfigPatch, GuardianSession, Location, Party
from ._auth import current_user

router = APIRouter(tags=["guardian"])


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartSessionRequest(_Body):
    booking_id: str | None = Field(default=None, max_length=128)
    parent: Party
    sitter: Party
    config: GuardianConfig | None = None


class CheckInRequest(_Body):
    location: Location | None = None
    note: str | None = Field(default=None, max_length=500)


class RespondRequest(_Body):
    response: str = Field(..., min_length=1, max_length=500)


class SosRequest(_Body):
    reason: str | None = Field(default=None, max_length=200)
    location: Location | None = None


class CloseSosRequest(_Body):
    notes: str | None = Field(default=None, max_length=1000)


def _session_json(s: GuardianSession) -> dict[str, Any]:
    return s.model_dump(mode="json", by_alias=True)


@router.post("/sessions", status_code=201)
def start_session(request: Request, body: StartSessionRequest):
    user = current_user(request)
    s = guardian_service.start_session(
        actor_id=user.sub,
        parent=body.parent,
        sitter=body.sitter,
        config=body.config,
        booking_id=body.booking_id,
    )
    return {"ok": True, "session": _session_json(s)}


@router.get("/sessions/{sessionId}")
def get_session(request: Request, sessionId: str):
    user = current_user(request)
    s = guardian_service.get_session(session_id=sessionId, actor_id=user.sub, actor_role=user.role)
    return {"ok": True, "session": _session_json(s)}


@router.get("/sessions/{sessionId}/check-ins")
def list_check_ins(request: Request, sessionId: str):
    user = current_user(request)
    events = guardian_service.list_check_ins(session_id=sessionId, actor_id=user.sub, actor_role=user.role)
    return {"ok": True, "data": [ev.model_dump(mode="json", by_alias=True) for ev in events]}


@router.post("/sessions/{sessionId}/check-ins", status_code=201)
def check_in(request: Request, sessionId: str, body: CheckInRequest | None = None):
    user = current_user(request)
    s, event = guardian_service.check_in(
        session_id=sessionId,
        actor_id=user.sub,
        actor_role=user.role,
        location=body.location if body else None,
        note=body.note if body else None,
    )
    return {
        "ok": True,
        "event": event.model_dump(mode="json", by_alias=True),
        "nextCheckInDueAt": s.next_check_in_due_at.isoformat() if s.next_check_in_due_at else None,
    }


@router.post("/sessions/{sessionId}/check-ins/{eventId}/respond")
def respond(request: Request, sessionId: str, eventId: str, body: RespondRequest):
    user = current_user(request)
    s = guardian_service.respond(
        session_id=sessionId,
        event_id=eventId,
        actor_id=user.sub,
        actor_role=user.role,
        response=body.response,
    )
    return {"ok": True, "session": _session_json(s)}


@router.patch("/sessions/{sessionId}/config")
def update_config(request: Request, sessionId: str, body: GuardianConfigPatch):
    user = current_user(request)
    s = guardian_service.update_config(session_id=sessionId, actor_id=user.sub, actor_role=user.role, patch=body)
    return {"ok": True, "session": _session_json(s)}


@router.post("/sessions/{sessionId}/stop")
def stop(request: Request, sessionId: str):
    user = current_user(request)
    s = guardian_service.stop(session_id=sessionId, actor_id=user.sub, actor_role=user.role)
    return {"ok": True, "session": _session_json(s)}


@router.post("/sessions/{sessionId}/sos")
def trigger_sos(request: Request, response: Response, sessionId: str, body: SosRequest | None = None):
    user = current_user(request)
    _, alert, created = guardian_service.trigger_sos(
        session_id=sessionId,
        actor_id=user.sub,
        actor_role=user.role,
        reason=body.reason if body else None,
        location=body.location if body else None,
    )
    response.status_code = 201 if created else 200
    return {"ok": True, "created": created, "alert": alert.model_dump(mode="json", by_alias=True)}


def _close(request: Request, sessionId: str, alertId: str, body: CloseSosRequest | None, *, false_alarm: bool):
    user = current_user(request)
    _, alert = guardian_service.close_sos(
        session_id=sessionId,
        alert_id=alertId,
        actor_id=user.sub,
        actor_role=user.role,
        false_alarm=false_alarm,
        notes=body.notes if body else None,
    )
    return {"ok": True, "alert": alert.model_dump(mode="json", by_alias=True)}


@router.post("/sessions/{sessionId}/sos/{alertId}/resolve")
def resolve_sos(request: Request, sessionId: str, alertId: str, body: CloseSosRequest | None = None):
    return _close(request, sessionId, alertId, body, false_alarm=False)


@router.post("/sessions/{sessionId}/sos/{alertId}/false-alarm")
def mark_false_alarm(request: Request, sessionId: str, alertId: str, body: CloseSosRequest | None = None):
    return _close(request, sessionId, alertId, body, false_alarm=True)
