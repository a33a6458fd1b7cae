from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from consult_dispatch.core.clients.http import close_http_client, init_http_client
from consult_dispatch.core.config.settings import get_settings
from consult_dispatch.core.errors import dashboard_error
from consult_dispatch.core.utils.request_id import get_request_id, reset_request_id, set_request_id
from consult_dispatch.db.session import close_db, init_db
from consult_dispatch.modules.accounts import api as accounts_api
from consult_dispatch.modules.health import api as health_api
from consult_dispatch.modules.jobs import api as jobs_api
from consult_dispatch.modules.metrics import api as metrics_api
from consult_dispatch.modules.providers.registry import get_provider_registry, register_configured_adapters
from consult_dispatch.modules.runs import api as runs_api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    await init_http_client()
    register_configured_adapters(get_provider_registry(), get_settings())

    try:
        yield
    finally:
        try:
            await close_http_client()
        finally:
            await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="consult-dispatch", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        inbound_request_id = request.headers.get("x-request-id") or request.headers.get("request-id")
        request_id = inbound_request_id or str(uuid4())
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers.setdefault("x-request-id", request_id)
        return response

    @app.middleware("http")
    async def api_unhandled_error_middleware(request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception:
            if request.url.path.startswith("/api/"):
                logger.exception(
                    "Unhandled API error request_id=%s",
                    get_request_id(),
                )
                return JSONResponse(
                    status_code=500,
                    content=dashboard_error("internal_error", "Unexpected error"),
                )
            raise

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            return JSONResponse(
                status_code=422,
                content=dashboard_error("validation_error", "Invalid request payload"),
            )
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
            return JSONResponse(
                status_code=exc.status_code,
                content=dashboard_error(f"http_{exc.status_code}", detail),
            )
        return await http_exception_handler(request, exc)

    app.include_router(runs_api.router)
    app.include_router(accounts_api.router)
    app.include_router(jobs_api.router)
    app.include_router(health_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()
