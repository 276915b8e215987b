"""
Uniform response envelope: ``{code, success, message, data, timestamp}``.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def envelope(code: int, success: bool, message: str, data: Any = None) -> dict:
    return {
        "code": code,
        "success": success,
        "message": message,
        "data": jsonable_encoder(data),
        "timestamp": int(time.time() * 1000),
    }


def success_response(
    data: Any = None, message: str = "OK", code: int = 200
) -> JSONResponse:
    return JSONResponse(status_code=code, content=envelope(code, True, message, data))


def error_response(message: str, code: int = 400, data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=code, content=envelope(code, False, message, data))
