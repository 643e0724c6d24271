from __future__ import annotations

import copy
import sys
import time
from pathlib import Path
from typing import Any

import pytest

# Ensure `backend/` is on sys.path so `import noorah.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from jose import jwt  # noqa: E402

from noorah.db.dynamodb.errors import DdbConflict  # noqa: E402
from noorah.db.dynamodb.table import Page  # noqa: E402
from noorah.settings import settings  # noqa: E402

JWT_SECRET = "test-jwt-secret"


def _eval(cond: Any, item: dict[str, Any]) -> bool:
    """Evaluate a boto3 condition object against a stored item."""
    expr = cond.get_expression()
    op = expr["operator"]
    vals = expr["values"]
    if op == "AND":
        return all(_eval(v, item) for v in vals)
    if op == "OR":
        return any(_eval(v, item) for v in vals)
    if op == "attribute_not_exists":
        return vals[0].name not in item
    if op == "attribute_exists":
        return vals[0].name in item

    left = item.get(vals[0].name)
    right = vals[1]
    if op == "=":
        return left == right
    if left is None:
        return False
    if op == "<=":
        return left <= right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == ">":
        return left > right
    if op == "begins_with":
        return str(left).startswith(str(right))
    raise NotImplementedError(op)


class FakeTable:
    """In-memory stand-in for DynamoTable (main table + GSI1)."""

    table_name = "test-table"

    def __init__(self):
        self.items: dict[tuple[str, str], dict[str, Any]] = {}

    def get_item(self, *, key: dict[str, Any]) -> dict[str, Any] | None:
        item = self.items.get((key["pk"], key["sk"]))
        return copy.deepcopy(item) if item else None

    def put_item(self, *, item: dict[str, Any], condition_expression: Any | None = None, **_: Any) -> None:
        k = (item["pk"], item["sk"])
        current = self.items.get(k) or {}
        if condition_expression is not None and not _eval(condition_expression, current):
            raise DdbConflict(message="Conditional check failed", operation="PutItem", table_name=self.table_name)
        self.items[k] = copy.deepcopy(item)

    def delete_item(self, *, key: dict[str, Any], condition_expression: Any | None = None, **_: Any) -> None:
        k = (key["pk"], key["sk"])
        current = self.items.get(k) or {}
        if condition_expression is not None and not _eval(condition_expression, current):
            raise DdbConflict(message="Conditional check failed", operation="DeleteItem", table_name=self.table_name)
        self.items.pop(k, None)

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = True,
        exclusive_start_key: dict[str, Any] | None = None,
    ) -> Page:
        sort_attr = "gsi1sk" if index_name == "GSI1" else "sk"
        rows = [
            copy.deepcopy(it)
            for it in self.items.values()
            if (index_name != "GSI1" or "gsi1pk" in it) and _eval(key_condition_expression, it)
        ]
        rows.sort(key=lambda it: str(it.get(sort_attr) or ""), reverse=not scan_index_forward)
        return Page(items=rows[: int(limit)], last_key=None)


@pytest.fixture
def fake_table(monkeypatch):
    table = FakeTable()
    for mod in (
        "noorah.repositories.mfa_repo",
        "noorah.repositories.guardian_sessions_repo",
        "noorah.repositories.outbox_repo",
    ):
        monkeypatch.setattr(f"{mod}.get_main_table", lambda: table)
    return table


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "jwt_secret", JWT_SECRET)
    monkeypatch.setattr(settings, "jwt_issuer", None)
    return JWT_SECRET


def make_token(sub: str, role: str | None = None, *, secret: str = JWT_SECRET, ttl: int = 3600) -> str:
    claims: dict[str, Any] = {"sub": sub, "exp": int(time.time()) + ttl}
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(sub: str, role: str | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, role)}"}


@pytest.fixture
def auth(jwt_secret):
    return auth_headers


@pytest.fixture
def mint(jwt_secret):
    return make_token
