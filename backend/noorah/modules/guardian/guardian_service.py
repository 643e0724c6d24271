"""
Application service for Guardian Mode.

Routers and the tick worker go through here: load the session, check who
is asking, run the pure transition, persist it under the version guard, and
hand the resulting effects to the notification fan-out.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from ...db.dynamodb.errors import DdbConflict
from ...errors import Forbidden, NotFound
from ...notifications.fanout import fan_out
from ...observability.logging import get_logger
from ...repositories import guardian_sessions_repo
from . import sos, state_machine
from .models import (
    CheckInEvent,
    GuardianConfig,
    GuardianConfigPatch,
    GuardianSession,
    Location,
    Party,
    SosAlert,
    Transition,
)

log = get_logger("guardian")

ADMIN_ROLE = "admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load(session_id: str) -> GuardianSession:
    session = guardian_sessions_repo.get_session(session_id)
    if session is None:
        raise NotFound("Guardian session not found", extensions={"sessionId": session_id})
    return session


def _authorize(session: GuardianSession, *, actor_id: str, actor_role: str | None, allowed: Iterable[str]) -> str:
    """Return the actor's relation to the session, or raise Forbidden."""
    allowed = set(allowed)
    relation = session.participant_role(actor_id)
    if relation is None and actor_role == ADMIN_ROLE:
        relation = ADMIN_ROLE
    if relation is None or relation not in allowed:
        raise Forbidden(
            "Not allowed to perform this action on the session",
            extensions={"sessionId": session.session_id, "allowed": sorted(allowed)},
        )
    return relation


def _commit(before: GuardianSession | None, transition: Transition, *, now: datetime) -> GuardianSession:
    """
    Save the transition, then hand its effects to the outbox.

    Effects are written into the session document in the same versioned put
    as the state change, so a failed fan-out leaves them on the session and
    the tick worker delivers them later; nothing is lost between the two writes.
    """
    after = transition.session
    if before is not None and after is before:
        return before

    if transition.effects:
        after.pending_effects.extend(transition.effects)
        after.pending_since = after.pending_since or now

    expected = before.version if before is not None and before.version else None
    saved = guardian_sessions_repo.save_session(after, expected_version=expected)
    if not saved.pending_effects:
        return saved
    try:
        return deliver_pending(saved)
    except Exception:
        log.exception("guardian_fan_out_deferred", session_id=saved.session_id, effects=len(saved.pending_effects))
        return saved


def deliver_pending(session: GuardianSession) -> GuardianSession:
    """Enqueue the session's pending effects and clear them. Fan-out errors propagate."""
    fan_out(session, session.pending_effects)
    cleared = session.model_copy(update={"pending_effects": [], "pending_since": None})
    try:
        return guardian_sessions_repo.save_session(cleared, expected_version=session.version)
    except DdbConflict:
        # A newer write carries the same effects; outbox dedupe absorbs the repeat.
        log.info("guardian_pending_clear_conflict", session_id=session.session_id)
        return session


def start_session(
    *,
    actor_id: str,
    parent: Party,
    sitter: Party,
    config: GuardianConfig | None = None,
    booking_id: str | None = None,
    now: datetime | None = None,
) -> GuardianSession:
    if parent.user_id != actor_id:
        raise Forbidden("Only the parent can start Guardian Mode for their booking")
    ts = now or utcnow()
    t = state_machine.start(parent=parent, sitter=sitter, config=config, booking_id=booking_id, now=ts)
    saved = _commit(None, t, now=ts)
    log.info(
        "guardian_started",
        session_id=saved.session_id,
        booking_id=booking_id,
        interval_minutes=saved.config.check_in_interval_minutes,
        emergency_contacts=len(saved.config.emergency_contacts),
    )
    return saved


def get_session(*, session_id: str, actor_id: str, actor_role: str | None) -> GuardianSession:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("parent", "sitter", ADMIN_ROLE))
    return session


def list_check_ins(*, session_id: str, actor_id: str, actor_role: str | None) -> list[CheckInEvent]:
    session = get_session(session_id=session_id, actor_id=actor_id, actor_role=actor_role)
    return sorted(session.history, key=lambda ev: ev.at, reverse=True)


def check_in(
    *,
    session_id: str,
    actor_id: str,
    actor_role: str | None,
    location: Location | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> tuple[GuardianSession, CheckInEvent]:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("sitter",))
    had_incident = bool(session.open_event_id)
    ts = now or utcnow()
    t, event = state_machine.check_in(session, now=ts, location=location, note=note)
    saved = _commit(session, t, now=ts)
    log.info("guardian_check_in", session_id=session_id, event_id=event.event_id, resolved_incident=had_incident)
    return saved, event


def respond(
    *,
    session_id: str,
    event_id: str,
    actor_id: str,
    actor_role: str | None,
    response: str,
    now: datetime | None = None,
) -> GuardianSession:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("sitter",))
    ts = now or utcnow()
    t = state_machine.respond(session, event_id, response=response, now=ts)
    saved = _commit(session, t, now=ts)
    log.info("guardian_check_in_response", session_id=session_id, event_id=event_id)
    return saved


def update_config(
    *,
    session_id: str,
    actor_id: str,
    actor_role: str | None,
    patch: GuardianConfigPatch,
    now: datetime | None = None,
) -> GuardianSession:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("parent",))
    ts = now or utcnow()
    t = state_machine.update_config(session, patch, now=ts)
    saved = _commit(session, t, now=ts)
    log.info("guardian_config_updated", session_id=session_id, fields=sorted(patch.model_dump(exclude_unset=True)))
    return saved


def stop(*, session_id: str, actor_id: str, actor_role: str | None, now: datetime | None = None) -> GuardianSession:
    session = _load(session_id)
    relation = _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("parent", ADMIN_ROLE))
    ts = now or utcnow()
    # Only support staff may stop mid-emergency; doing so closes the alert.
    closed_by = actor_id if relation == ADMIN_ROLE else None
    active = session.active_alert()
    saved = _commit(session, state_machine.stop(session, now=ts, closed_by=closed_by), now=ts)
    log.info("guardian_stopped", session_id=session_id, by=actor_id, closed_alert_id=active.alert_id if active else None)
    return saved


def trigger_sos(
    *,
    session_id: str,
    actor_id: str,
    actor_role: str | None,
    reason: str | None = None,
    location: Location | None = None,
    now: datetime | None = None,
) -> tuple[GuardianSession, SosAlert, bool]:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("parent", "sitter"))
    ts = now or utcnow()
    t, alert, created = sos.trigger_sos(session, raised_by=actor_id, reason=reason, location=location, now=ts)
    saved = _commit(session, t, now=ts)
    if created:
        log.warning("sos_triggered", session_id=session_id, alert_id=alert.alert_id, raised_by=actor_id)
    return saved, alert, created


def close_sos(
    *,
    session_id: str,
    alert_id: str,
    actor_id: str,
    actor_role: str | None,
    false_alarm: bool = False,
    notes: str | None = None,
    now: datetime | None = None,
) -> tuple[GuardianSession, SosAlert]:
    session = _load(session_id)
    _authorize(session, actor_id=actor_id, actor_role=actor_role, allowed=("parent", "sitter", ADMIN_ROLE))
    ts = now or utcnow()
    if false_alarm:
        t = sos.mark_false_alarm(session, alert_id, by=actor_id, notes=notes, now=ts)
    else:
        t = sos.resolve_sos(session, alert_id, resolved_by=actor_id, notes=notes, now=ts)
    saved = _commit(session, t, now=ts)
    alert = saved.alert(alert_id)
    log.info(
        "sos_closed",
        session_id=session_id,
        alert_id=alert_id,
        status=alert.status if alert else None,
        response_time_ms=alert.response_time_ms if alert else None,
    )
    return saved, alert


def tick(session: GuardianSession, *, now: datetime) -> dict[str, Any]:
    """
    Advance one due session. Raises DdbConflict if another writer won.

    Effects left undelivered by an earlier failed fan-out go out first;
    a fan-out error here propagates so the worker counts it and retries.
    """
    redelivered = 0
    if session.pending_effects:
        redelivered = len(session.pending_effects)
        session = deliver_pending(session)
        if session.pending_effects:
            # The clearing write lost a race; the winner owns this session now.
            return {"changed": False, "effects": 0, "redelivered": redelivered}
        log.info("guardian_effects_redelivered", session_id=session.session_id, effects=redelivered)

    t = state_machine.advance(session, now)
    if not t.effects and t.session.model_dump() == session.model_dump():
        return {"changed": False, "effects": 0, "redelivered": redelivered}
    saved = _commit(session, t, now=now)
    if saved.escalation_level > session.escalation_level:
        log.warning(
            "guardian_escalated",
            session_id=saved.session_id,
            level=saved.escalation_level,
            previous_level=session.escalation_level,
        )
    return {"changed": True, "effects": len(t.effects), "redelivered": redelivered}
