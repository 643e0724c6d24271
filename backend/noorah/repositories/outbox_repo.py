from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import orjson
from boto3.dynamodb.conditions import Attr, Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table

PENDING_INDEX_PK = "OUTBOX#PENDING"
MAX_ATTEMPTS = 8
MAX_BACKOFF_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(at: datetime) -> str:
    return at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def outbox_key(event_id: str) -> dict[str, str]:
    eid = str(event_id or "").strip()
    if not eid:
        raise ValueError("event_id is required")
    return {"pk": f"OUTBOX#{eid}", "sk": "EVENT"}


def _clean(item: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in item.items() if k not in ("pk", "sk", "payloadJson")}
    out["payload"] = orjson.loads(item["payloadJson"]) if item.get("payloadJson") else {}
    for f in ("attempts", "maxAttempts", "version"):
        if isinstance(out.get(f), Decimal):
            out[f] = int(out[f])
    return out


def _to_item(event: dict[str, Any]) -> dict[str, Any]:
    item = {**outbox_key(event["eventId"]), **event}
    item["payloadJson"] = orjson.dumps(item.pop("payload", None) or {}).decode()
    return item


def _write(item: dict[str, Any], *, expected_version: int) -> dict[str, Any]:
    item = {**item, "version": int(expected_version) + 1, "updatedAt": _iso(_utcnow())}
    get_main_table().put_item(item=item, condition_expression=Attr("version").eq(int(expected_version)))
    return item


def enqueue_event(
    *,
    event_type: str,
    payload: dict[str, Any],
    dedupe_key: str | None = None,
    now: datetime | None = None,
) -> tuple[dict[str, Any], bool]:
    """
    Enqueue an outbox event for async delivery.

    When `dedupe_key` is given it becomes the event id, so a retried enqueue
    collapses onto the existing event. Returns (event, created).
    """
    et = str(event_type or "").strip()
    if not et:
        raise ValueError("event_type is required")
    eid = str(dedupe_key or "").strip() or ("evt_" + uuid.uuid4().hex[:18])

    ts = _iso(now or _utcnow())
    item: dict[str, Any] = {
        **outbox_key(eid),
        "entityType": "OutboxEvent",
        "eventId": eid,
        "eventType": et,
        "status": "pending",
        "attempts": 0,
        "maxAttempts": MAX_ATTEMPTS,
        "nextAttemptAt": ts,
        "createdAt": ts,
        "updatedAt": ts,
        "version": 1,
        # JSON text: DynamoDB rejects floats and returns numbers as Decimal.
        "payloadJson": orjson.dumps(payload if isinstance(payload, dict) else {}).decode(),
        # GSI1: pending queue ordered by next attempt
        "gsi1pk": PENDING_INDEX_PK,
        "gsi1sk": f"{ts}#{eid}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression=Attr("pk").not_exists())
    except DdbConflict:
        existing = get_main_table().get_item(key=outbox_key(eid)) or {}
        return _clean(existing), False
    return _clean(item), True


def get_event(event_id: str) -> dict[str, Any] | None:
    item = get_main_table().get_item(key=outbox_key(event_id))
    return _clean(item) if item else None


def list_pending(*, now: datetime | None = None, limit: int = 50) -> list[dict[str, Any]]:
    """Pending events whose next attempt is due."""
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(PENDING_INDEX_PK)
        & Key("gsi1sk").lte(f"{_iso(now or _utcnow())}#~"),
        scan_index_forward=True,
        limit=max(1, min(200, int(limit or 50))),
    )
    return [_clean(it) for it in pg.items if isinstance(it, dict)]


def claim_event(*, event_id: str) -> dict[str, Any] | None:
    """
    Move an event from pending to processing.

    Returns None when the event is gone, no longer pending, or another
    worker claimed it first.
    """
    raw = get_main_table().get_item(key=outbox_key(event_id))
    if not raw or raw.get("status") != "pending":
        return None
    item = {k: v for k, v in raw.items() if k not in ("gsi1pk", "gsi1sk")}
    item["status"] = "processing"
    item["lockedAt"] = _iso(_utcnow())
    try:
        return _clean(_write(item, expected_version=int(raw.get("version") or 0)))
    except DdbConflict:
        return None


def mark_done(*, event: dict[str, Any], result: dict[str, Any] | None = None) -> dict[str, Any]:
    item = _to_item(event)
    item.pop("lockedAt", None)
    item["status"] = "done"
    item["result"] = result if isinstance(result, dict) else {}
    return _clean(_write(item, expected_version=int(event.get("version") or 0)))


def retry_delay_seconds(attempts: int) -> int:
    return min(MAX_BACKOFF_SECONDS, int(2 ** min(10, int(attempts))))


def mark_retry(
    *, event: dict[str, Any], error: str, permanent: bool = False, now: datetime | None = None
) -> dict[str, Any]:
    """
    Put a processing event back on the queue with exponential backoff, or
    fail it for good once `maxAttempts` is reached or the error is permanent.
    """
    ts = now or _utcnow()
    attempts = int(event.get("attempts") or 0) + 1
    max_attempts = int(event.get("maxAttempts") or MAX_ATTEMPTS)

    item = _to_item(event)
    item.pop("lockedAt", None)
    item["attempts"] = attempts
    item["lastError"] = str(error or "")[:800]

    if permanent or attempts >= max_attempts:
        item["status"] = "failed"
        return _clean(_write(item, expected_version=int(event.get("version") or 0)))

    next_at = _iso(ts + timedelta(seconds=retry_delay_seconds(attempts)))
    item["status"] = "pending"
    item["nextAttemptAt"] = next_at
    item["gsi1pk"] = PENDING_INDEX_PK
    item["gsi1sk"] = f"{next_at}#{event['eventId']}"
    return _clean(_write(item, expected_version=int(event.get("version") or 0)))
