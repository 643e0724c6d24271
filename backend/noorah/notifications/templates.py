from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from ..modules.guardian.models import Effect, GuardianSession

SIGNATURE = "NannyRadar"


@dataclass(frozen=True)
class Rendered:
    subject: str
    body: str


def _who(session: GuardianSession) -> str:
    return session.sitter.name or "your sitter"


def _loc(data: dict[str, Any]) -> str:
    loc = data.get("location")
    if not isinstance(loc, dict):
        return "unknown"
    return f"{loc.get('latitude')}, {loc.get('longitude')}"


def _started(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Guardian Mode started",
        f"Guardian Mode is on for your session with {_who(s)}. "
        f"Check-ins are expected every {s.config.check_in_interval_minutes} minutes.",
    )


def _completed(e: Effect, s: GuardianSession) -> Rendered:
    if e.data.get("silent"):
        return Rendered("Check-in received", "Your sitter checked in.")
    note = e.data.get("note")
    body = f"{_who(s)} checked in."
    if note:
        body += f' Note: "{note}"'
    return Rendered("Check-in received", body)


def _reminder(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Check-in overdue",
        "Please check in now. Your check-in is overdue and the parent will be alerted "
        f"in {s.config.escalation_delay_minutes} minutes.",
    )


def _missed(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Missed check-in",
        f"{_who(s)} missed a scheduled check-in and has not responded to a reminder. "
        "Please try to reach them.",
    )


def _contact(e: Effect, s: GuardianSession) -> Rendered:
    parent = s.parent.name or "The parent"
    return Rendered(
        "Safety alert: missed check-ins",
        f"{parent} listed you as an emergency contact. {_who(s)}, their babysitter, "
        "has missed check-ins and could not be reached. Please contact the family.",
    )


def _support(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Escalation: unresponsive sitter",
        f"Session {s.session_id}: sitter {s.sitter.user_id} has missed check-ins through "
        f"level {e.data.get('level')}. Missed at {e.data.get('missedAt')}. Auto-call requested.",
    )


def _all_clear(e: Effect, s: GuardianSession) -> Rendered:
    response = e.data.get("response")
    body = f"{_who(s)} has checked in. No further action is needed."
    if response:
        body += f' Response: "{response}"'
    return Rendered("All clear", body)


def _geofence(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Left the safe zone",
        f"{_who(s)} checked in {e.data.get('distanceM')} m from home, outside the "
        f"{e.data.get('radiusM')} m safe zone. Location: {_loc(e.data)}.",
    )


def _stopped(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "Guardian Mode ended",
        f"Guardian Mode has ended for your session with {_who(s)} "
        f"({e.data.get('checkIns', 0)} check-ins).",
    )


def _sos(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "EMERGENCY ALERT",
        f"EMERGENCY ALERT\nType: {e.data.get('reason')}\nLocation: {_loc(e.data)}\n"
        f"Sitter: {s.sitter.name or s.sitter.user_id}\nParent: {s.parent.name or s.parent.user_id}\n\n"
        "Call 911 if immediate assistance is needed.",
    )


def _sos_escalated(e: Effect, s: GuardianSession) -> Rendered:
    return Rendered(
        "SOS unanswered",
        f"Session {s.session_id}: SOS alert {e.data.get('alertId')} raised at "
        f"{e.data.get('raisedAt')} is still unresolved. Auto-call requested.",
    )


def _sos_closed(e: Effect, s: GuardianSession) -> Rendered:
    if e.kind == "sos_false_alarm":
        return Rendered("False alarm", "The emergency alert was a false alarm. Everyone is safe.")
    return Rendered("Emergency resolved", "The emergency alert has been resolved.")


_RENDERERS: dict[str, Callable[[Effect, GuardianSession], Rendered]] = {
    "guardian_started": _started,
    "check_in_completed": _completed,
    "check_in_reminder": _reminder,
    "check_in_missed_alert": _missed,
    "emergency_contact_alert": _contact,
    "support_escalation": _support,
    "all_clear": _all_clear,
    "geofence_breach": _geofence,
    "guardian_stopped": _stopped,
    "sos_triggered": _sos,
    "sos_escalated": _sos_escalated,
    "sos_resolved": _sos_closed,
    "sos_false_alarm": _sos_closed,
}


def render(effect: Effect, session: GuardianSession) -> Rendered:
    fn = _RENDERERS.get(effect.kind)
    if fn is None:
        out = Rendered(effect.kind.replace("_", " ").capitalize(), "You have a new safety update.")
    else:
        out = fn(effect, session)
    return Rendered(f"{SIGNATURE}: {out.subject}", f"{out.body}\n\n- {SIGNATURE}")
