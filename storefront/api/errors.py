"""
HTTP error taxonomy for the storefront API.

Every error body is `{"error": "<tag>"}`; unexpected failures add a best-effort
`details` string (never a traceback).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def body(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.error}
        if self.details:
            out["details"] = self.details
        return out


class AdminDenied(ApiError):
    """Rendered through `admin_denial` so every admin guard answers identically."""

    def __init__(self, message: str = "Admin access required", status_code: int = 403):
        super().__init__(status_code, message)


def error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def install_error_handlers(app: FastAPI) -> None:
    from storefront.authz.admin import admin_denial

    @app.exception_handler(AdminDenied)
    async def _admin_denied(_request: Request, exc: AdminDenied) -> JSONResponse:
        return admin_denial(exc.error, exc.status_code)

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        resp = JSONResponse(status_code=exc.status_code, content=exc.body())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, _exc: RequestValidationError) -> JSONResponse:
        # Malformed JSON bodies/params are client errors (400), not 422s.
        return JSONResponse(status_code=400, content={"error": "invalid_request"})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s - unhandled error", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal_error", "details": error_message(exc)})
