from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..modules.guardian import guardian_service
from ..observability.logging import configure_logging, get_logger
from ..repositories.guardian_sessions_repo import list_due, session_from_item
from ..settings import settings

log = get_logger("guardian_tick")


def run_once(*, now: datetime | None = None, limit: int = 100) -> dict[str, Any]:
    """
    Fire every Guardian deadline that is due.

    Safe to run from several workers at once: a session another worker has
    already advanced fails the version check and is skipped.
    """
    ts = now or datetime.now(timezone.utc)
    lim = max(1, min(500, int(limit or 100)))

    due = list_due(now=ts, limit=lim)
    advanced = 0
    effects = 0
    redelivered = 0
    conflicts = 0
    errors = 0
    for item in due:
        session_id = item.get("sessionId")
        try:
            res = guardian_service.tick(session_from_item(item), now=ts)
        except DdbConflict:
            conflicts += 1
            log.info("guardian_tick_conflict", session_id=session_id)
            continue
        except Exception:
            # One bad session must not starve the rest of the batch.
            errors += 1
            log.exception("guardian_tick_session_failed", session_id=session_id)
            continue
        redelivered += int(res.get("redelivered") or 0)
        if res.get("changed"):
            advanced += 1
            effects += int(res.get("effects") or 0)

    out = {
        "ok": errors == 0,
        "at": ts.isoformat(),
        "due": len(due),
        "advanced": advanced,
        "effects": effects,
        "redelivered": redelivered,
        "conflicts": conflicts,
        "errors": errors,
    }
    log.info("guardian_tick_done", **out)
    return out


def run_forever(*, interval_seconds: int | None = None) -> None:
    interval = max(1, int(interval_seconds or settings.guardian_tick_seconds))
    log.info("guardian_tick_worker_started", interval_seconds=interval)
    while True:
        started = time.monotonic()
        try:
            run_once()
        except Exception:
            log.exception("guardian_tick_failed")
        time.sleep(max(0.0, interval - (time.monotonic() - started)))


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_forever()
