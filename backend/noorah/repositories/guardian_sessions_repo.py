from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from boto3.dynamodb.conditions import Attr, Key

from ..db.dynamodb.table import get_main_table
from ..modules.guardian.models import GuardianSession
from ..modules.guardian.state_machine import next_deadline

ACTIVE_INDEX_PK = "GUARDIAN#ACTIVE"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def deadline_key(at: datetime) -> str:
    # Fixed-width UTC so the GSI sort key orders chronologically.
    return at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def session_key(session_id: str) -> dict[str, str]:
    sid = str(session_id or "").strip()
    if not sid:
        raise ValueError("session_id is required")
    return {"pk": f"GUARDIAN#{sid}", "sk": "SESSION"}


def session_from_item(item: dict[str, Any]) -> GuardianSession:
    session = GuardianSession.model_validate_json(str(item.get("doc") or "{}"))
    # The item attribute is authoritative for optimistic locking.
    session.version = int(item.get("version") or 0)
    return session


def get_session(session_id: str) -> GuardianSession | None:
    item = get_main_table().get_item(key=session_key(session_id))
    if not item:
        return None
    return session_from_item(item)


def save_session(session: GuardianSession, *, expected_version: int | None) -> GuardianSession:
    """
    Persist the whole session document, guarded by `version`.

    Sessions with a pending deadline (including undelivered notifications,
    even on a stopped session) stay on the GUARDIAN#ACTIVE index; everything
    else drops off it.
    """
    next_version = (int(expected_version) if expected_version is not None else 0) + 1
    saved = session.model_copy(update={"version": next_version})

    item: dict[str, Any] = {
        **session_key(saved.session_id),
        "entityType": "GuardianSession",
        "sessionId": saved.session_id,
        "bookingId": saved.booking_id,
        "parentUserId": saved.parent.user_id,
        "sitterUserId": saved.sitter.user_id,
        "status": saved.status,
        "version": next_version,
        "updatedAt": _now_iso(),
        # Stored as JSON text; DynamoDB numbers would come back as Decimal.
        "doc": saved.model_dump_json(by_alias=True),
    }
    deadline = next_deadline(saved)
    if deadline is not None:
        item["gsi1pk"] = ACTIVE_INDEX_PK
        item["gsi1sk"] = f"{deadline_key(deadline)}#{saved.session_id}"

    if expected_version is None:
        condition = Attr("pk").not_exists()
    else:
        condition = Attr("version").eq(int(expected_version))

    get_main_table().put_item(item=item, condition_expression=condition)
    return saved


def list_due(*, now: datetime, limit: int = 100) -> list[dict[str, Any]]:
    """
    Index rows of sessions whose earliest deadline is at or before `now`.

    Rows come back unparsed; callers decode each with `session_from_item` so
    one corrupt document cannot fail the whole batch.
    """
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(ACTIVE_INDEX_PK)
        & Key("gsi1sk").lte(f"{deadline_key(now)}#~"),
        scan_index_forward=True,
        limit=max(1, min(500, int(limit or 100))),
    )
    return [it for it in pg.items if isinstance(it, dict)]
