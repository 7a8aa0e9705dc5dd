"""Unwrapping of the response envelopes the farm visit service has accumulated.

Payloads arrive as a bare array/object, ``{"data": payload}``,
``{"data": {"items": [...]}}`` or the tabular ``{"data": {"recordset": [...]}}``.
Error bodies carry ``message`` plus field errors under ``details``, ``errors``,
``validationErrors`` or ``fieldErrors``, either keyed by field or as a list of
``{"field", "message"}`` entries.
"""

from typing import Any, Optional

_LIST_KEYS = ("items", "recordset", "rows")
_FIELD_ERROR_KEYS = ("details", "errors", "validationErrors", "fieldErrors")
_MESSAGE_KEYS = ("message", "Message", "error", "detail")


def unwrap_payload(body: Any) -> Any:
    """Strip ``data`` wrappers and list containers off a response body."""
    payload = body
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if isinstance(payload, dict):
        for key in _LIST_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return payload


def unwrap_items(body: Any) -> list[dict]:
    """Unwrap a list endpoint response into a list of records."""
    payload = unwrap_payload(body)
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    return []


def unwrap_record(body: Any) -> Optional[dict]:
    """Unwrap a single-record response; tabular shapes yield their first row."""
    payload = unwrap_payload(body)
    if isinstance(payload, list):
        return payload[0] if payload and isinstance(payload[0], dict) else None
    if isinstance(payload, dict) and payload:
        return payload
    return None


def unwrap_pagination(body: Any, item_count: int, page: int = 1, page_size: Optional[int] = None) -> dict:
    """Read pagination from ``data.pagination`` or derive it from the page."""
    wrapper = body.get("data") if isinstance(body, dict) else None
    pagination = wrapper.get("pagination") if isinstance(wrapper, dict) else None
    if pagination is None and isinstance(body, dict):
        pagination = body.get("pagination")

    if isinstance(pagination, dict):
        size = pagination.get("pageSize") or page_size or item_count
        total = pagination.get("totalCount") or pagination.get("total") or item_count
        return {
            "current_page": pagination.get("currentPage") or pagination.get("current") or page,
            "page_size": size,
            "total_count": total,
            "total_pages": pagination.get("totalPages") or 1,
        }

    return {
        "current_page": page,
        "page_size": page_size or item_count,
        "total_count": item_count,
        "total_pages": 1,
    }


def error_message(body: Any, default: str) -> str:
    """Pick the human-readable message out of an error body."""
    if isinstance(body, str) and body.strip():
        return body.strip()
    if isinstance(body, dict):
        for key in _MESSAGE_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


def normalize_field_errors(body: Any) -> dict[str, str]:
    """Flatten field-level validation errors into ``{field: message}``."""
    if not isinstance(body, dict):
        return {}

    raw = None
    for key in _FIELD_ERROR_KEYS:
        if body.get(key):
            raw = body[key]
            break

    errors: dict[str, str] = {}
    if isinstance(raw, dict):
        for field, message in raw.items():
            if isinstance(message, (list, tuple)):
                message = message[0] if message else ""
            errors[str(field)] = str(message)
    elif isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            field = entry.get("field") or entry.get("Field") or entry.get("path") or entry.get("param")
            message = entry.get("message") or entry.get("Message") or entry.get("msg") or ""
            if field:
                errors[str(field)] = str(message)
    return errors
