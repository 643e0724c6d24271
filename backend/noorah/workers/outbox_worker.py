from __future__ import annotations

import time
from typing import Any

from ..observability.logging import configure_logging, get_logger
from ..repositories.outbox_repo import claim_event, list_pending, mark_done, mark_retry
from ..services.email_ses import send_text_email
from ..services.push_expo import send_push
from ..services.slack_web import post_message

log = get_logger("outbox_worker")


def dispatch_event(event: dict[str, Any]) -> dict[str, Any]:
    """Deliver one notification event on its channel."""
    et = str(event.get("eventType") or "").strip()
    payload_raw = event.get("payload")
    payload: dict[str, Any] = payload_raw if isinstance(payload_raw, dict) else {}

    if et == "notify.push":
        return send_push(
            to_token=str(payload.get("to") or ""),
            title=str(payload.get("subject") or ""),
            body=str(payload.get("body") or ""),
            data=payload.get("data") if isinstance(payload.get("data"), dict) else None,
            priority=str(payload.get("priority") or "normal"),
        )

    if et == "notify.email":
        return send_text_email(
            to_email=str(payload.get("to") or ""),
            subject=str(payload.get("subject") or ""),
            text=str(payload.get("body") or ""),
        )

    if et == "notify.slack":
        subject = str(payload.get("subject") or "").strip()
        body = str(payload.get("body") or "").strip()
        return post_message(text=f"*{subject}*\n{body}" if subject else body)

    return {"ok": False, "error": "unknown_event_type", "eventType": et, "permanent": True}


def run_once(*, limit: int = 30) -> dict[str, Any]:
    """
    Deliver due notification events. Safe to run from cron or a loop.
    """
    lim = max(1, min(100, int(limit or 30)))
    scanned = 0
    processed = 0
    failed = 0

    for it in list_pending(limit=lim):
        scanned += 1
        eid = str(it.get("eventId") or "").strip()
        if not eid:
            continue
        claimed = claim_event(event_id=eid)
        if not claimed:
            continue
        try:
            res = dispatch_event(claimed)
        except Exception as e:
            failed += 1
            log.warning("outbox_dispatch_failed", event_id=eid, event_type=claimed.get("eventType"), error=str(e))
            mark_retry(event=claimed, error=str(e) or "dispatch_failed")
            continue

        if res.get("ok"):
            processed += 1
            mark_done(event=claimed, result={k: v for k, v in res.items() if k != "ok"})
        else:
            failed += 1
            err = str(res.get("error") or "dispatch_failed")
            log.warning("outbox_dispatch_rejected", event_id=eid, event_type=claimed.get("eventType"), error=err)
            mark_retry(event=claimed, error=err, permanent=bool(res.get("permanent")))

    out = {"ok": True, "scanned": scanned, "processed": processed, "failed": failed}
    log.info("outbox_run_once_done", **out)
    return out


def run_forever(*, interval_seconds: int = 5) -> None:
    while True:
        try:
            run_once()
        except Exception:
            log.exception("outbox_run_failed")
        time.sleep(max(1, int(interval_seconds)))


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_forever()
