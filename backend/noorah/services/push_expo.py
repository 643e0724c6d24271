from __future__ import annotations

from typing import Any

import httpx

from ..observability.logging import get_logger
from ..settings import settings

log = get_logger("push")

# Expo accepts these priorities; "urgent" maps onto "high".
_PRIORITY = {"low": "default", "normal": "default", "high": "high", "urgent": "high"}


def is_expo_token(token: str | None) -> bool:
    t = str(token or "").strip()
    return t.startswith(("ExponentPushToken[", "ExpoPushToken["))


def send_push(
    *,
    to_token: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    priority: str = "normal",
) -> dict[str, Any]:
    """
    Send one push notification through the Expo push API.

    Returns {"ok": True, "ticketId": ...} or {"ok": False, "error": ...}.
    A `DeviceNotRegistered` error is permanent; everything else may be retried.
    """
    if not is_expo_token(to_token):
        return {"ok": False, "error": "invalid_push_token", "permanent": True}

    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if settings.expo_access_token:
        headers["Authorization"] = f"Bearer {settings.expo_access_token}"

    message: dict[str, Any] = {
        "to": to_token,
        "title": str(title or "")[:120],
        "body": str(body or "")[:1000],
        "sound": "default",
        "priority": _PRIORITY.get(priority, "default"),
        "data": data or {},
    }
    if priority == "urgent":
        message["channelId"] = "safety-alerts"

    resp = httpx.post(settings.expo_push_url, headers=headers, json=[message], timeout=10.0)
    resp.raise_for_status()
    payload = resp.json() if resp.content else {}
    tickets = payload.get("data") if isinstance(payload, dict) else None
    ticket = tickets[0] if isinstance(tickets, list) and tickets else {}
    if not isinstance(ticket, dict):
        return {"ok": False, "error": "invalid_response"}

    if ticket.get("status") == "ok":
        return {"ok": True, "ticketId": ticket.get("id")}

    details = ticket.get("details") if isinstance(ticket.get("details"), dict) else {}
    err = str(details.get("error") or ticket.get("message") or "push_failed")
    log.warning("expo_push_rejected", error=err)
    return {"ok": False, "error": err, "permanent": err == "DeviceNotRegistered"}
