from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response

from . import services
from .admin import router as admin_router
from .auth import require_auth
from .db import get_session, init_db, new_session
from .errors import SyncError
from .faults import router as faults_router
from .schemas import EntryDelete, EntrySubmit
from .settings import settings

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.RACESYNC_LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SyncError)
    async def _sync_error(request: Request, exc: SyncError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        msg = "Invalid request"
        if errors:
            loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
            msg = f"Invalid request: {loc}: {errors[0].get('msg')}" if loc else f"Invalid request: {errors[0].get('msg')}"
        return JSONResponse({"error": msg}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            return JSONResponse({"error": "Method not allowed"}, status_code=405)
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage failure on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Database service unavailable"}, status_code=503)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


def create_app() -> FastAPI:
    _configure_logging()
    app = FastAPI(title="Race Sync")
    _install_error_handlers(app)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.RACESYNC_CORS_ORIGIN],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )

    @app.on_event("startup")
    def _startup() -> None:
        init_db()
        s = new_session()
        try:
            services.purge_expired(s)
        finally:
            s.close()

    # ---------------------------
    # Entries
    # ---------------------------

    @app.get("/api/v1/sync", dependencies=[Depends(require_auth)])
    def sync_get(
        raceId: str | None = Query(default=None),
        deviceId: str | None = Query(default=None),
        deviceName: str | None = Query(default=None),
        checkOnly: str | None = Query(default=None),
        offset: str | None = Query(default=None),
        limit: str | None = Query(default=None),
        session: Session = Depends(get_session),
    ):
        if checkOnly == "true":
            return services.check_race_exists(session, raceId)
        return services.get_entries(session, raceId, deviceId, deviceName, offset=offset, limit=limit)

    @app.post("/api/v1/sync", dependencies=[Depends(require_auth)])
    def sync_post(
        body: EntrySubmit,
        raceId: str | None = Query(default=None),
        session: Session = Depends(get_session),
    ):
        return services.submit_entry(session, raceId, body.entry, body.deviceId, body.deviceName)

    @app.delete("/api/v1/sync", dependencies=[Depends(require_auth)])
    def sync_delete(
        body: EntryDelete,
        raceId: str | None = Query(default=None),
        session: Session = Depends(get_session),
    ):
        return services.delete_entry(session, raceId, body.entryId, body.deviceId, body.deviceName)

    app.include_router(faults_router)
    app.include_router(admin_router)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
