"""
api/responses.py -- Build envelope JSONResponses.

success() is what routes return; error_response() is used by the exception
handlers in api/main.py. Both go through the Envelope model so the body shape
is defined exactly once.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from api.models import Envelope
from core.errors import STATUS_FOR_CODE, ApiError, ResponseCode


def success(message: str = "Success", data: Any = None, status_code: int = 200) -> JSONResponse:
    body = Envelope(success=True, code=ResponseCode.SUCCESS, message=message, data=data if data is not None else {})
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude={"errors"}))


def error_response(
    code: ResponseCode,
    message: str,
    errors: dict | None = None,
    status_code: int | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = Envelope(success=False, code=code, message=message, data={}, errors=errors or {})
    return JSONResponse(
        status_code=status_code or STATUS_FOR_CODE[code],
        content=body.model_dump(),
        headers=headers,
    )


def from_api_error(exc: ApiError, headers: dict[str, str] | None = None) -> JSONResponse:
    return error_response(exc.code, exc.message, exc.errors, exc.status_code, headers)
