"""
SOS alerts raised during a Guardian session.

An alert notifies everyone at once and, if nobody resolves it within
`SOS_ESCALATION_MINUTES`, is escalated to the support team for a call.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal

from ...errors import Conflict, NotFound
from ...settings import settings
from .models import Audience, Effect, GuardianSession, Location, SosAlert, Transition, emit, require_active

SOS_AUDIENCES: tuple[Audience, ...] = ("parent", "emergency_contacts", "support")


def trigger_sos(
    session: GuardianSession,
    *,
    raised_by: str,
    reason: str | None = None,
    location: Location | None = None,
    now: datetime,
) -> tuple[Transition, SosAlert, bool]:
    """Raise an alert; an already active alert is returned as-is (created=False)."""
    require_active(session)
    existing = session.active_alert()
    if existing is not None:
        return Transition(session, []), existing, False

    s = session.model_copy(deep=True)
    effects: list[Effect] = []
    alert = SosAlert(
        raised_by=raised_by,
        reason=(reason or "").strip() or "manual_sos",
        location=location,
        at=now,
        auto_escalate_at=now + timedelta(minutes=settings.sos_escalation_minutes),
    )
    for audience in SOS_AUDIENCES:
        emit(
            s,
            effects,
            "sos_triggered",
            audience,
            priority="urgent",
            alertId=alert.alert_id,
            raisedBy=raised_by,
            reason=alert.reason,
            location=location.model_dump(by_alias=True) if location else None,
        )
        alert.notified.append(audience)
    s.alerts.append(alert)
    return Transition(s, effects), alert, True


def advance_alerts(session: GuardianSession, now: datetime, effects: list[Effect]) -> None:
    """Escalate unattended alerts in place. Caller owns the copy."""
    for alert in session.alerts:
        if alert.status != "active" or alert.escalated:
            continue
        if alert.auto_escalate_at is None or now < alert.auto_escalate_at:
            continue
        alert.escalated = True
        alert.escalated_at = now
        emit(
            session,
            effects,
            "sos_escalated",
            "support",
            priority="urgent",
            alertId=alert.alert_id,
            raisedAt=alert.at.isoformat(),
            autoCall=True,
        )


def _close(
    session: GuardianSession,
    alert_id: str,
    *,
    status: Literal["resolved", "false_alarm"],
    by: str,
    notes: str | None,
    now: datetime,
) -> Transition:
    s = session.model_copy(deep=True)
    alert = s.alert(alert_id)
    if alert is None:
        raise NotFound("SOS alert not found", extensions={"alertId": alert_id})
    if alert.status != "active":
        raise Conflict(
            f"SOS alert is already {alert.status}",
            extensions={"alertId": alert_id, "status": alert.status},
        )

    alert.status = status
    alert.resolved_by = by
    alert.resolved_at = now
    alert.response_time_ms = max(0, int((now - alert.at).total_seconds() * 1000))
    alert.notes = notes

    effects: list[Effect] = []
    kind = "sos_resolved" if status == "resolved" else "sos_false_alarm"
    audiences = list(alert.notified)
    if alert.escalated and "support" not in audiences:
        audiences.append("support")
    for audience in audiences:
        emit(s, effects, kind, audience, priority="high", alertId=alert_id, resolvedBy=by, notes=notes)
    return Transition(s, effects)


def resolve_sos(
    session: GuardianSession, alert_id: str, *, resolved_by: str, notes: str | None = None, now: datetime
) -> Transition:
    return _close(session, alert_id, status="resolved", by=resolved_by, notes=notes, now=now)


def mark_false_alarm(
    session: GuardianSession, alert_id: str, *, by: str, notes: str | None = None, now: datetime
) -> Transition:
    return _close(session, alert_id, status="false_alarm", by=by, notes=notes, now=now)
