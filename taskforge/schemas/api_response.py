"""Response envelope shared by every ``/api`` route.

Route handlers return plain dicts; a top-level ``message`` key becomes the
envelope message and the remaining keys become ``data``.
"""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class APIResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    message: str
    data: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")


def normalize_data(payload: Any) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    if isinstance(payload, dict):
        return payload or None
    if isinstance(payload, list):
        return {"items": payload}
    return {"value": payload}


def is_api_response_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    return {"status", "message"}.issubset(set(payload.keys()))


def split_message(payload: Any, default: str) -> Tuple[str, Any]:
    """Pull a non-empty string ``message`` out of a dict payload."""
    if not isinstance(payload, dict):
        return default, payload
    candidate = payload.get("message")
    if not isinstance(candidate, str) or not candidate.strip():
        return default, payload
    rest = {key: value for key, value in payload.items() if key != "message"}
    return candidate.strip(), rest


def _envelope(status: str, message: str, data: Any, request_id: Optional[str]) -> Dict[str, Any]:
    return APIResponse(
        status=status,
        message=message,
        data=normalize_data(data),
        request_id=request_id,
    ).model_dump(by_alias=True, exclude_none=True)


def success_payload(*, data: Any = None, request_id: Optional[str] = None) -> Dict[str, Any]:
    message, rest = split_message(data, "OK")
    return _envelope("success", message, rest, request_id)


def error_payload(
    *,
    message: str = "Request failed",
    data: Any = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope("error", message, data, request_id)


def error_from_detail(detail: Any, *, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Build an error envelope from an ``HTTPException.detail`` value."""
    if isinstance(detail, str) and detail.strip():
        return error_payload(message=detail, request_id=request_id)
    message, rest = split_message(detail, "")
    if message:
        return error_payload(message=message, data=rest, request_id=request_id)
    return error_payload(data={"detail": detail}, request_id=request_id)
