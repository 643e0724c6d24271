from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import boto3
from botocore.config import Config

from ...settings import settings
from .errors import DdbInternal
from .retry import ddb_call


@lru_cache(maxsize=1)
def _resource():
    # botocore keeps its own adaptive retries; ddb_call only adds a narrow layer on top.
    return boto3.resource(
        "dynamodb",
        region_name=settings.aws_region,
        endpoint_url=settings.ddb_endpoint_url or None,
        config=Config(retries={"max_attempts": 10, "mode": "adaptive"}, connect_timeout=2, read_timeout=5),
    )


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    last_key: dict[str, Any] | None


def _with_condition(
    kwargs: dict[str, Any],
    *,
    condition_expression: Any | None,
    expression_attribute_names: dict[str, str] | None,
    expression_attribute_values: dict[str, Any] | None,
) -> dict[str, Any]:
    if condition_expression is not None:
        kwargs["ConditionExpression"] = condition_expression
    if expression_attribute_names:
        kwargs["ExpressionAttributeNames"] = expression_attribute_names
    if expression_attribute_values:
        kwargs["ExpressionAttributeValues"] = expression_attribute_values
    return kwargs


class DynamoTable:
    def __init__(self, *, table_name: str):
        self.table_name = str(table_name)
        self._table = _resource().Table(self.table_name)

    def get_item(self, *, key: dict[str, Any]) -> dict[str, Any] | None:
        def _op():
            # Strongly consistent: version checks read-modify-write on these items.
            resp = self._table.get_item(Key=key, ConsistentRead=True)
            return resp.get("Item")

        return ddb_call("GetItem", _op, table_name=self.table_name, key=key)

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: Any | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> None:
        kwargs = _with_condition(
            {"Item": item},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )
        key = {"pk": item.get("pk"), "sk": item.get("sk")}
        ddb_call("PutItem", lambda: self._table.put_item(**kwargs), table_name=self.table_name, key=key)

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: Any | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> None:
        kwargs = _with_condition(
            {"Key": key},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )
        ddb_call("DeleteItem", lambda: self._table.delete_item(**kwargs), table_name=self.table_name, key=key)

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = True,
        exclusive_start_key: dict[str, Any] | None = None,
    ) -> Page:
        lim = max(1, min(500, int(limit or 50)))

        def _op():
            kwargs: dict[str, Any] = {
                "KeyConditionExpression": key_condition_expression,
                "ScanIndexForward": bool(scan_index_forward),
                "Limit": lim,
            }
            if index_name:
                kwargs["IndexName"] = index_name
            # Only pass ExclusiveStartKey when present.
            if exclusive_start_key:
                kwargs["ExclusiveStartKey"] = exclusive_start_key
            return self._table.query(**kwargs)

        resp = ddb_call("Query", _op, table_name=self.table_name)
        return Page(items=list(resp.get("Items") or []), last_key=resp.get("LastEvaluatedKey"))


def get_main_table() -> DynamoTable:
    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return DynamoTable(table_name=settings.ddb_table_name)
