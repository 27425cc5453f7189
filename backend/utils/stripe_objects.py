"""Helpers for reading Stripe SDK objects as plain dicts."""
from typing import Any, Dict, Optional


def to_plain(obj: Any) -> Any:
    """Recursively convert StripeObject / ListObject values into dicts and lists."""
    if obj is None:
        return None
    if hasattr(obj, "to_dict_recursive"):
        return to_plain(obj.to_dict_recursive())
    if hasattr(obj, "to_dict") and not isinstance(obj, dict):
        return to_plain(obj.to_dict())
    if isinstance(obj, dict):
        return {key: to_plain(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(value) for value in obj]
    return obj


def object_id(value: Any) -> Optional[str]:
    """Id of an expandable field: either the id string itself or the expanded object's id."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        found = value.get("id")
        return found if isinstance(found, str) and found else None
    return None


def metadata_of(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        meta = obj.get("metadata")
        if isinstance(meta, dict):
            return meta
    return {}


def first_metadata_value(meta: Dict[str, Any], *keys: str) -> Optional[str]:
    """First non-empty string value among keys, stripped."""
    for key in keys:
        value = meta.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
