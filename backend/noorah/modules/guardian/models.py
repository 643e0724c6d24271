from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...errors import SessionNotActive
from ...settings import settings

Audience = Literal["parent", "sitter", "emergency_contacts", "support"]
Priority = Literal["low", "normal", "high", "urgent"]
CheckInStatus = Literal["success", "missed", "escalated", "resolved"]
SosStatus = Literal["active", "resolved", "false_alarm"]

MAX_ESCALATION_LEVEL = 3

# Escalation tier -> (audience, effect kind)
ESCALATION_TIERS: dict[int, tuple[Audience, str]] = {
    1: ("parent", "check_in_missed_alert"),
    2: ("emergency_contacts", "emergency_contact_alert"),
    3: ("support", "support_escalation"),
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


class _Model(BaseModel):
    # camelCase on the wire and in storage, snake_case in Python.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Location(_Model):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class Party(_Model):
    user_id: str = Field(..., min_length=1)
    name: str = ""
    email: str | None = None
    push_token: str | None = None


class EmergencyContact(_Model):
    contact_id: str = Field(default_factory=lambda: new_id("ec"))
    name: str = Field(..., min_length=1)
    relationship: str = ""
    phone: str | None = None
    email: str | None = None
    push_token: str | None = None
    is_primary: bool = False


class GuardianConfig(_Model):
    check_in_interval_minutes: int = Field(
        default_factory=lambda: settings.guardian_default_check_in_minutes, ge=1, le=720
    )
    escalation_delay_minutes: int = Field(
        default_factory=lambda: settings.guardian_default_escalation_delay_minutes, ge=1, le=120
    )
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list, max_length=10)
    auto_escalation: bool = True
    silent_mode: bool = False
    geofence_radius_m: int = Field(
        default_factory=lambda: settings.guardian_default_geofence_radius_m, ge=10, le=50000
    )
    geofence_center: Location | None = None

    @property
    def max_escalation_level(self) -> int:
        # Without auto-escalation only the parent is ever alerted.
        return MAX_ESCALATION_LEVEL if self.auto_escalation else 1


class GuardianConfigPatch(_Model):
    check_in_interval_minutes: int | None = Field(default=None, ge=1, le=720)
    escalation_delay_minutes: int | None = Field(default=None, ge=1, le=120)
    emergency_contacts: list[EmergencyContact] | None = Field(default=None, max_length=10)
    auto_escalation: bool | None = None
    silent_mode: bool | None = None
    geofence_radius_m: int | None = Field(default=None, ge=10, le=50000)
    geofence_center: Location | None = None


class CheckInEvent(_Model):
    event_id: str = Field(default_factory=lambda: new_id("chk"))
    at: datetime
    status: CheckInStatus
    location: Location | None = None
    sitter_response: str | None = None
    escalation_level: int = 0
    escalated_to: list[Audience] = Field(default_factory=list)
    resolved_at: datetime | None = None


class SosAlert(_Model):
    alert_id: str = Field(default_factory=lambda: new_id("sos"))
    raised_by: str
    reason: str = "manual_sos"
    location: Location | None = None
    at: datetime
    status: SosStatus = "active"
    auto_escalate_at: datetime | None = None
    escalated: bool = False
    escalated_at: datetime | None = None
    notified: list[Audience] = Field(default_factory=list)
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    response_time_ms: int | None = None
    notes: str | None = None


class Effect(_Model):
    kind: str
    priority: Priority = "normal"
    audience: Audience
    dedupe: str
    data: dict[str, Any] = Field(default_factory=dict)


class GuardianSession(_Model):
    session_id: str = Field(default_factory=lambda: new_id("gm"))
    booking_id: str | None = None
    parent: Party
    sitter: Party
    config: GuardianConfig = Field(default_factory=GuardianConfig)
    status: Literal["active", "stopped"] = "active"
    phase: Literal["monitoring", "missed", "escalating"] = "monitoring"
    started_at: datetime
    stopped_at: datetime | None = None
    last_check_in_at: datetime | None = None
    next_check_in_due_at: datetime | None = None
    open_event_id: str | None = None
    escalation_level: int = Field(default=0, ge=0, le=MAX_ESCALATION_LEVEL)
    next_escalation_at: datetime | None = None
    outside_geofence: bool = False
    history: list[CheckInEvent] = Field(default_factory=list)
    alerts: list[SosAlert] = Field(default_factory=list)
    # Effects saved with the state change that produced them, cleared once the
    # outbox has them. A crash in between leaves them here for the tick worker.
    pending_effects: list[Effect] = Field(default_factory=list)
    pending_since: datetime | None = None
    seq: int = 0
    version: int = 0

    def event(self, event_id: str) -> CheckInEvent | None:
        for ev in self.history:
            if ev.event_id == event_id:
                return ev
        return None

    def alert(self, alert_id: str) -> SosAlert | None:
        for a in self.alerts:
            if a.alert_id == alert_id:
                return a
        return None

    def active_alert(self) -> SosAlert | None:
        for a in self.alerts:
            if a.status == "active":
                return a
        return None

    def participant_role(self, user_id: str) -> Literal["parent", "sitter"] | None:
        if user_id == self.parent.user_id:
            return "parent"
        if user_id == self.sitter.user_id:
            return "sitter"
        return None


def emit(
    session: GuardianSession,
    effects: list[Effect],
    kind: str,
    audience: Audience,
    *,
    priority: Priority = "normal",
    **data: Any,
) -> Effect:
    """Append an effect with a per-session sequence number as its dedupe key."""
    session.seq += 1
    effect = Effect(
        kind=kind,
        priority=priority,
        audience=audience,
        dedupe=f"{session.session_id}:{session.seq}",
        data=data,
    )
    effects.append(effect)
    return effect


@dataclass
class Transition:
    session: GuardianSession
    effects: list[Effect] = field(default_factory=list)


def require_active(session: GuardianSession) -> None:
    if session.status != "active":
        raise SessionNotActive(
            "Guardian session is not active",
            extensions={"sessionId": session.session_id, "status": session.status},
        )
