"""
JSON helpers for reports and log output.

Consolidates the encoder and pretty-printing used by the executors, the
log store and the report renderer.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional


class E2EJSONEncoder(json.JSONEncoder):
    """
    JSON Encoder for AWS response payloads.

    Converts:
    - datetime/date -> ISO 8601 string
    - Decimal with no fractional part -> int, otherwise float
    - set -> list
    - pydantic models -> their dict form

    Usage:
        json.dumps(data, cls=E2EJSONEncoder)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return int(obj) if obj % 1 == 0 else float(obj)
        if isinstance(obj, set):
            return sorted(obj, key=str)
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        return super().default(obj)


def dumps(obj: Any, **kwargs) -> str:
    return json.dumps(obj, cls=E2EJSONEncoder, **kwargs)


def try_parse_json(text: Optional[str]) -> Optional[Any]:
    """Parse ``text`` as JSON, returning None when it is not valid JSON."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def pretty(value: Any) -> str:
    """
    Render a value for humans.

    Strings that hold JSON are re-indented; other strings are returned
    unchanged. Non-string values are dumped with two-space indentation.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        parsed = try_parse_json(value)
        if parsed is None or not isinstance(parsed, (dict, list)):
            return value
        return json.dumps(parsed, indent=2, cls=E2EJSONEncoder)
    return json.dumps(value, indent=2, cls=E2EJSONEncoder)


def ensure_json_serializable(payload: Any) -> str:
    """
    Serialize a submission payload, rejecting values JSON cannot represent
    (NaN/Infinity, arbitrary objects).

    Raises:
        ValueError: payload is not serializable
    """
    try:
        return json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"payload is not JSON-serializable: {e}") from e
