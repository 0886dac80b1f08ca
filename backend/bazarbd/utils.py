import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import ValidationError

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
date_only_regex = re.compile(r"\d{4}-\d{2}-\d{2}")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def pick(payload: Optional[Dict], aliases: Iterable[str], default=None):
    """Return the value of the first alias present in ``payload``.

    Request bodies come from a frontend that sends camelCase keys while the
    documents are stored with snake_case keys, so every field is looked up
    through a tuple of accepted spellings.
    """
    if not isinstance(payload, dict):
        return default
    for alias in aliases:
        if alias in payload and payload.get(alias) is not None:
            return payload.get(alias)
    return default


def pick_text(payload: Optional[Dict], aliases: Iterable[str]) -> str:
    return str(pick(payload, aliases, "") or "").strip()


def parse_object_id(value, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}.")


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO date or datetime into a naive UTC datetime.

    Returns None for empty or unparseable input. Plain ``YYYY-MM-DD`` values
    resolve to midnight of that day.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if date_only_regex.fullmatch(candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def safe_float(value, default=None):
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_int(value, default):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def to_json_compatible(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, dict):
        return {str(key): to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(item) for item in value]
    return value


def serialize_document(document: Optional[Dict]) -> Dict[str, Any]:
    if not document:
        return {}
    serialized = {}
    for key, value in document.items():
        serialized["id" if key == "_id" else key] = to_json_compatible(value)
    return serialized
