"""Column types shared by the dispatch tables."""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator


class JSONObject(TypeDecorator[dict[str, Any]]):
    """
    JSON object column for payloads and envelope snapshots.

    Only mappings are accepted; ``NULL`` reads back as ``{}`` so rows
    written before a payload existed still give handlers a dict. Values
    are round-tripped through ``json`` on the way in, which turns
    datetimes into ISO strings and rejects anything else that would not
    survive the broker's wire format either.  Uses JSONB on PostgreSQL.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(
        self, value: dict[str, Any] | None, dialect: Any
    ) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise TypeError(
                f"JSON object column expects a dict, got {type(value).__name__}"
            )
        normalized: dict[str, Any] = json.loads(json.dumps(value, default=_iso))
        return normalized

    def process_result_value(
        self, value: dict[str, Any] | None, dialect: Any
    ) -> dict[str, Any]:
        return dict(value) if value else {}


def _iso(obj: Any) -> Any:
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


__all__ = ["JSONObject"]
