from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

from realtime_chat.errors import ValidationError


def utc_now() -> datetime:
    # BSON dates carry millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def normalize_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stringify ObjectIds and make stored datetimes timezone-aware (UTC)."""
    if doc is None:
        return None
    for key, value in list(doc.items()):
        if isinstance(value, ObjectId):
            doc[key] = str(value)
        elif isinstance(value, datetime) and value.tzinfo is None:
            doc[key] = value.replace(tzinfo=timezone.utc)
    return doc
