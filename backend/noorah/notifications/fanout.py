"""
Turn state-machine effects into outbox events.

One event per (effect, recipient, channel). The event id is derived from the
effect's dedupe key, so fanning out the same effects twice (a redelivered
tick, a retried request) enqueues nothing new.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from ..modules.guardian.models import Effect, GuardianSession
from ..observability.logging import get_logger
from ..repositories import outbox_repo
from ..services.email_ses import is_email_configured
from ..services.slack_web import is_slack_configured
from .templates import render

log = get_logger("notifications")


@dataclass(frozen=True)
class Recipient:
    recipient_id: str
    name: str = ""
    email: str | None = None
    push_token: str | None = None
    phone: str | None = None


SUPPORT = Recipient(recipient_id="support", name="Support")


def recipients_for(audience: str, session: GuardianSession) -> list[Recipient]:
    if audience in ("parent", "sitter"):
        p = session.parent if audience == "parent" else session.sitter
        return [Recipient(p.user_id, p.name, p.email, p.push_token)]
    if audience == "emergency_contacts":
        return [
            Recipient(c.contact_id, c.name, c.email, c.push_token, c.phone)
            for c in session.config.emergency_contacts
        ]
    if audience == "support":
        return [SUPPORT]
    return []


def channels_for(audience: str, recipient: Recipient) -> list[tuple[str, str]]:
    """(channel, address) pairs this recipient can be reached on."""
    if audience == "support":
        return [("slack", "")] if is_slack_configured() else []
    out: list[tuple[str, str]] = []
    if recipient.push_token:
        out.append(("push", recipient.push_token))
    if recipient.email and is_email_configured():
        out.append(("email", recipient.email))
    return out


def fan_out(session: GuardianSession, effects: Iterable[Effect]) -> dict[str, Any]:
    enqueued = 0
    duplicates = 0
    unreachable = 0

    for effect in effects:
        rendered = render(effect, session)
        recipients = recipients_for(effect.audience, session)
        if not recipients:
            log.info("notification_no_recipients", session_id=session.session_id, kind=effect.kind, audience=effect.audience)
            continue

        for r in recipients:
            channels = channels_for(effect.audience, r)
            if not channels:
                unreachable += 1
                log.warning(
                    "notification_channel_unavailable",
                    session_id=session.session_id,
                    kind=effect.kind,
                    audience=effect.audience,
                    recipient_id=r.recipient_id,
                    has_phone=bool(r.phone),
                )
                continue

            for channel, address in channels:
                _, created = outbox_repo.enqueue_event(
                    event_type=f"notify.{channel}",
                    dedupe_key=f"{effect.dedupe}:{r.recipient_id}:{channel}",
                    payload={
                        "channel": channel,
                        "to": address,
                        "recipientId": r.recipient_id,
                        "subject": rendered.subject,
                        "body": rendered.body,
                        "priority": effect.priority,
                        "data": {"sessionId": session.session_id, "kind": effect.kind, **effect.data},
                    },
                )
                if created:
                    enqueued += 1
                else:
                    duplicates += 1

    out = {"enqueued": enqueued, "duplicates": duplicates, "unreachable": unreachable}
    if enqueued or duplicates or unreachable:
        log.info("notifications_fanned_out", session_id=session.session_id, **out)
    return out
