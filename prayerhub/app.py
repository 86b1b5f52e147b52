"""
FastAPI application entry point for the prayer community backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from prayerhub.config import get_settings
from prayerhub.errors import DuplicateError, PrayingForError, RoleGuardError, StoreError
from prayerhub.routes import router

logger = logging.getLogger(__name__)


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def _store_failure(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal storage error"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="PrayerHub Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(RoleGuardError, _bad_request)
    app.add_exception_handler(PrayingForError, _bad_request)
    app.add_exception_handler(DuplicateError, _conflict)
    app.add_exception_handler(StoreError, _store_failure)
    return app


app = create_app()
