"""
Guardian Mode check-in state machine.

Every operation is a pure function of (session, now): it returns a new
session and the notifications it implies, and never touches storage or the
clock. Deadlines are stored on the session and evaluated by `advance`, which
the tick worker calls for due sessions.

Phases:
  monitoring  -> waiting for the next check-in
  missed      -> a check-in is overdue; the sitter has been reminded
  escalating  -> tiers are being alerted (parent, contacts, support)
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ...errors import Conflict, NotFound
from . import geo, sos
from .models import (
    ESCALATION_TIERS,
    CheckInEvent,
    Effect,
    GuardianConfig,
    GuardianConfigPatch,
    GuardianSession,
    Location,
    Party,
    Transition,
    emit,
    require_active,
)


def _interval(cfg: GuardianConfig) -> timedelta:
    return timedelta(minutes=cfg.check_in_interval_minutes)


def _delay(cfg: GuardianConfig) -> timedelta:
    return timedelta(minutes=cfg.escalation_delay_minutes)


def start(
    *,
    parent: Party,
    sitter: Party,
    config: GuardianConfig | None = None,
    booking_id: str | None = None,
    now: datetime,
) -> Transition:
    cfg = config or GuardianConfig()
    s = GuardianSession(
        booking_id=booking_id,
        parent=parent,
        sitter=sitter,
        config=cfg,
        started_at=now,
        next_check_in_due_at=now + _interval(cfg),
    )
    effects: list[Effect] = []
    emit(
        s,
        effects,
        "guardian_started",
        "parent",
        sitterName=sitter.name,
        intervalMinutes=cfg.check_in_interval_minutes,
    )
    return Transition(s, effects)


def _resolve_incident(s: GuardianSession, now: datetime, response: str | None, effects: list[Effect]) -> None:
    ev = s.event(s.open_event_id) if s.open_event_id else None
    if ev is not None:
        ev.status = "resolved"
        ev.resolved_at = now
        if response:
            ev.sitter_response = response
        for audience in ev.escalated_to:
            emit(s, effects, "all_clear", audience, priority="high", eventId=ev.event_id, response=response)
    s.open_event_id = None
    s.escalation_level = 0
    s.next_escalation_at = None


def _mark_alive(s: GuardianSession, now: datetime) -> None:
    s.phase = "monitoring"
    s.last_check_in_at = now
    s.next_check_in_due_at = now + _interval(s.config)


def _check_geofence(s: GuardianSession, location: Location | None, effects: list[Effect]) -> None:
    center = s.config.geofence_center
    if center is None or location is None:
        return
    outside, distance = geo.is_outside(center, s.config.geofence_radius_m, location)
    if not outside:
        s.outside_geofence = False
        return
    if s.outside_geofence:
        return
    s.outside_geofence = True
    emit(
        s,
        effects,
        "geofence_breach",
        "parent",
        priority="high",
        distanceM=round(distance, 1),
        radiusM=s.config.geofence_radius_m,
        location=location.model_dump(by_alias=True),
    )


def check_in(
    session: GuardianSession,
    *,
    now: datetime,
    location: Location | None = None,
    note: str | None = None,
) -> tuple[Transition, CheckInEvent]:
    require_active(session)
    s = session.model_copy(deep=True)
    effects: list[Effect] = []

    if s.open_event_id:
        _resolve_incident(s, now, note, effects)

    ev = CheckInEvent(at=now, status="success", location=location, sitter_response=note)
    s.history.append(ev)
    _mark_alive(s, now)
    emit(
        s,
        effects,
        "check_in_completed",
        "parent",
        priority="low",
        eventId=ev.event_id,
        silent=s.config.silent_mode,
        note=None if s.config.silent_mode else note,
    )
    _check_geofence(s, location, effects)
    return Transition(s, effects), ev


def respond(session: GuardianSession, event_id: str, *, response: str, now: datetime) -> Transition:
    require_active(session)
    if session.event(event_id) is None:
        raise NotFound("Check-in event not found", extensions={"eventId": event_id})

    s = session.model_copy(deep=True)
    effects: list[Effect] = []
    if event_id == s.open_event_id:
        _resolve_incident(s, now, response, effects)
        _mark_alive(s, now)
    else:
        ev = s.event(event_id)
        if ev is not None:
            ev.sitter_response = response
    return Transition(s, effects)


def advance(session: GuardianSession, now: datetime) -> Transition:
    """
    Fire every deadline that has passed by `now`.

    A late tick catches up: all overdue escalation tiers are emitted in order
    within a single call.
    """
    if session.status != "active":
        return Transition(session, [])

    s = session.model_copy(deep=True)
    effects: list[Effect] = []
    cfg = s.config

    due = s.next_check_in_due_at
    if s.phase == "monitoring" and due is not None and now >= due:
        ev = CheckInEvent(at=due, status="missed")
        s.history.append(ev)
        s.open_event_id = ev.event_id
        s.phase = "missed"
        s.escalation_level = 0
        s.next_check_in_due_at = None
        s.next_escalation_at = due + _delay(cfg)
        emit(s, effects, "check_in_reminder", "sitter", priority="high", eventId=ev.event_id, dueAt=due.isoformat())

    max_level = cfg.max_escalation_level
    while (
        s.phase in ("missed", "escalating")
        and s.next_escalation_at is not None
        and now >= s.next_escalation_at
        and s.escalation_level < max_level
    ):
        s.escalation_level += 1
        s.phase = "escalating"
        audience, kind = ESCALATION_TIERS[s.escalation_level]
        ev = s.event(s.open_event_id) if s.open_event_id else None
        if ev is not None:
            ev.status = "escalated"
            ev.escalation_level = s.escalation_level
            if audience not in ev.escalated_to:
                ev.escalated_to.append(audience)
        data = {
            "eventId": s.open_event_id,
            "level": s.escalation_level,
            "missedAt": ev.at.isoformat() if ev else None,
        }
        if audience == "support":
            data["autoCall"] = True
        emit(s, effects, kind, audience, priority="urgent", **data)
        s.next_escalation_at = s.next_escalation_at + _delay(cfg)

    if s.escalation_level >= max_level:
        s.next_escalation_at = None

    sos.advance_alerts(s, now, effects)
    return Transition(s, effects)


def update_config(session: GuardianSession, patch: GuardianConfigPatch, *, now: datetime) -> Transition:
    require_active(session)
    # An explicit null only means something for the geofence center (clear it).
    changes = {
        k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None or k == "geofence_center"
    }
    s = session.model_copy(deep=True)
    old = s.config
    # Re-validate the merged config so range checks still apply.
    s.config = GuardianConfig.model_validate({**old.model_dump(), **changes})

    if s.config.check_in_interval_minutes != old.check_in_interval_minutes and s.phase == "monitoring":
        anchor = s.last_check_in_at or s.started_at
        s.next_check_in_due_at = anchor + _interval(s.config)

    if s.escalation_level >= s.config.max_escalation_level:
        s.next_escalation_at = None
    elif s.phase != "monitoring" and s.next_escalation_at is None:
        # Auto-escalation was switched back on mid-incident.
        s.next_escalation_at = now + _delay(s.config)

    if "geofence_center" in changes or "geofence_radius_m" in changes:
        s.outside_geofence = False
    return Transition(s, [])


def stop(session: GuardianSession, *, now: datetime, closed_by: str | None = None) -> Transition:
    """
    End monitoring. An active SOS alert blocks this unless `closed_by` names
    the support agent stopping the session, in which case the alert is
    resolved by them first.
    """
    if session.status == "stopped":
        return Transition(session, [])

    effects: list[Effect] = []
    active = session.active_alert()
    if active is not None:
        if closed_by is None:
            raise Conflict(
                "Resolve the active SOS alert before stopping the session",
                extensions={"alertId": active.alert_id},
            )
        closed = sos.resolve_sos(
            session, active.alert_id, resolved_by=closed_by, notes="closed when the session was stopped", now=now
        )
        session, effects = closed.session, closed.effects

    s = session.model_copy(deep=True)
    s.status = "stopped"
    s.stopped_at = now
    s.next_check_in_due_at = None
    s.next_escalation_at = None
    emit(s, effects, "guardian_stopped", "parent", priority="low", checkIns=_count(s, "success"))
    return Transition(s, effects)


def _count(s: GuardianSession, status: str) -> int:
    return sum(1 for ev in s.history if ev.status == status)


def next_deadline(session: GuardianSession) -> datetime | None:
    candidates: list[datetime | None] = []
    if session.pending_effects:
        # Undelivered notifications are due from the moment they were produced.
        candidates.append(session.pending_since)
    if session.status == "active":
        candidates += [session.next_check_in_due_at, session.next_escalation_at]
        for alert in session.alerts:
            if alert.status == "active" and not alert.escalated:
                candidates.append(alert.auto_escalate_at)
    due = [c for c in candidates if c is not None]
    return min(due) if due else None
