from __future__ import annotations

import json
from typing import Any

from fastapi.responses import JSONResponse


def ok(body: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse(body or {}, status_code=200)


def not_found(message: str) -> JSONResponse:
    return JSONResponse({"message": message}, status_code=404)


def internal_server_error(message: str) -> JSONResponse:
    return JSONResponse({"message": message}, status_code=500)


def response_body(response: JSONResponse) -> Any:
    return json.loads(response.body.decode("utf-8")) if response.body else None
