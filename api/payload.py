"""
api/payload.py -- Read a request body as a flat dict: JSON first, form fallback.

The frontend posts JSON; plain HTML forms post urlencoded. Routes accept both
and hand the resulting dict to the validator, so field errors look the same
either way. Starlette caches the body, so auth.dependencies.csrf_protect can
read it first without starving the route.
"""

from __future__ import annotations

import json
from typing import Any

from starlette.requests import Request

from core.errors import BadRequestError

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise BadRequestError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise BadRequestError("Request body must be a JSON object")
    return payload
