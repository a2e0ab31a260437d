"""Shared model utilities."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import inspect


def generate_uuid() -> str:
    return str(uuid.uuid4())


def to_dict(obj: Any) -> dict[str, Any]:
    """Snapshot a mapped row's column values as a JSON-safe dict.

    Relationships are not included. Datetimes become ISO-8601 strings.
    """
    data: dict[str, Any] = {}
    for attr in inspect(obj).mapper.column_attrs:
        value = getattr(obj, attr.key)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[attr.key] = value
    return data
