"""Helpers for the JSON response envelope shared by every endpoint."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping
from uuid import uuid4

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

CORRELATION_HEADER = "X-Correlation-ID"


def _ensure_headers(headers: Mapping[str, str] | None) -> MutableMapping[str, str]:
    """Return a mutable copy of headers or an empty dict."""
    return dict(headers or {})


def error_response(
    *,
    status: int,
    error: str,
    code: str,
    extras: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """
    Produce ``{"success": false, "error": ...}`` with a correlation id.

    The id is mirrored in the ``X-Correlation-ID`` header so that clients can
    quote it when reporting a failure.
    """
    cid = correlation_id or str(uuid4())
    payload: dict[str, Any] = {
        "success": False,
        "error": error,
        "code": code,
        "correlation_id": cid,
    }
    if extras:
        payload.update(extras)

    response_headers = _ensure_headers(headers)
    response_headers.setdefault(CORRELATION_HEADER, cid)
    return JSONResponse(
        status_code=status, content=jsonable_encoder(payload), headers=response_headers
    )


def success_response(
    data: Any,
    *,
    status: int = 200,
    headers: Mapping[str, str] | None = None,
    message: str | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return JSONResponse(
        status_code=status, content=jsonable_encoder(payload), headers=_ensure_headers(headers)
    )
