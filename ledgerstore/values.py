"""
Scalar value codec for replicated edits, plus type coercion for PostgreSQL.

messages_crdt.value is TEXT on both backends, so every opaque scalar is
stored with a one-letter type tag:

    None         -> "0:"
    int / float  -> "N:42", "N:1.5"
    str          -> "S:hello"
    bytes        -> "B:<base64>"

asyncpg binds parameters by their declared column type and refuses, for
example, an int for a TEXT column. SQLite accepts anything, so converted
values are only bound on the networked backend; both backends use the same
coercion to decide whether a value is acceptable at all.
"""

import base64
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

SCALAR_TYPES = (type(None), bool, int, float, str, bytes, bytearray, memoryview)


def is_scalar(value: Any) -> bool:
    return isinstance(value, SCALAR_TYPES)


def serialize_value(value: Any) -> str:
    if value is None:
        return "0:"
    if isinstance(value, bool):
        return f"N:{int(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value!r}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "B:" + base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def deserialize_value(text: str) -> Any:
    tag, sep, body = text.partition(":")
    if not sep:
        raise ValueError(f"Untagged value: {text!r}")
    if tag == "0":
        return None
    if tag == "N":
        try:
            return int(body)
        except ValueError:
            return float(body)
    if tag == "S":
        return body
    if tag == "B":
        return base64.b64decode(body)
    raise ValueError(f"Unknown value tag {tag!r} in {text!r}")


# ── PostgreSQL coercion ─────────────────────────────────────

_INT_TYPES = ("INTEGER", "BIGINT", "SMALLINT", "SERIAL", "BIGSERIAL", "INT", "INT4", "INT8", "INT2")
_FLOAT_TYPES = ("REAL", "DOUBLE PRECISION", "FLOAT", "FLOAT4", "FLOAT8")


def _to_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, bool):
        return str(int(value))
    return str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        text = value.strip()
        value = float(text) if any(c in text for c in ".eE") else int(text)
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return int(value)


def coerce_for_column(value: Any, column_type: Optional[str]) -> Any:
    """Convert a value into what asyncpg expects for `column_type`.

    Unknown types pass the value through unchanged. Every conversion failure
    (including decimal and overflow errors) is raised as ValueError, which
    callers record as a row failure. Non-integral numbers are rejected for
    integer columns rather than truncated.
    """
    if value is None or not column_type:
        return value
    try:
        return _coerce(value, column_type.upper())
    except (ArithmeticError, ValueError, TypeError, OSError) as exc:
        raise ValueError(f"Cannot store {value!r} in a {column_type} column: {exc}") from exc


def _coerce(value: Any, t: str) -> Any:
    if t in ("TEXT", "CHARACTER VARYING", "VARCHAR", "CHARACTER", "CHAR") or t.startswith("VARCHAR"):
        return _to_text(value)
    if t in _INT_TYPES:
        return _to_int(value)
    if t in _FLOAT_TYPES:
        return float(value)
    if t == "NUMERIC" or t.startswith("NUMERIC"):
        return Decimal(str(value))
    if t == "BOOLEAN":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "t", "true", "yes")
        return bool(value)
    if t == "BYTEA":
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)
    if t.startswith("TIMESTAMP"):
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        # asyncpg wants aware values for timestamptz and naive UTC otherwise
        if "WITH TIME ZONE" in t and "WITHOUT" not in t:
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt
    if t == "DATE":
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value))
    return value
