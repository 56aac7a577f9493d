"""Render typed head office errors as JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from headoffice.errors import HeadOfficeError

logger = logging.getLogger("headoffice.api")


async def head_office_error_handler(request: Request, exc: HeadOfficeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s: %s",
            exc.code,
            exc.message,
            extra={"path": request.url.path, "branch_id": exc.branch_id},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HeadOfficeError, head_office_error_handler)
