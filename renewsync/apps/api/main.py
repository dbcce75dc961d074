from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from renewsync.apps.api.errors import install_exception_handlers
from renewsync.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from renewsync.apps.api.routes.extraction import router as extraction_router
from renewsync.apps.api.routes.health import router as health_router
from renewsync.apps.api.routes.ops import router as ops_router
from renewsync.apps.api.routes.reconciliation import router as reconciliation_router
from renewsync.apps.api.routes.renewals import router as renewals_router
from renewsync.core.config import get_settings
from renewsync.core.logging import configure_logging
from renewsync.providers.partner.client import get_partner_client
from renewsync.services.reconciliation import ReconciliationService
from renewsync.services.renewal.controller import RenewalQueueController
from renewsync.services.renewal.worker import run_reconciliation_loop, run_renewal_scheduler_loop
from renewsync.services.telemetry import record_request


logger = logging.getLogger(__name__)

_VERSIONED_ROUTERS = (health_router, renewals_router, reconciliation_router, extraction_router, ops_router)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    stop = asyncio.Event()
    loops: list[asyncio.Task[None]] = []
    if get_settings().scheduler_enabled:
        # Loops use the app's own controller so operator calls and the scheduler share one queue.
        loops = [
            asyncio.create_task(run_renewal_scheduler_loop(app.state.renewal_controller, stop)),
            asyncio.create_task(run_reconciliation_loop(app.state.reconciliation_service, stop)),
        ]
        logger.info("background_loops_started count=%s", len(loops))
    try:
        yield
    finally:
        stop.set()
        await asyncio.gather(*loops)
        if app.state.partner_client is not None:
            await app.state.partner_client.aclose()


async def _request_context(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    request_id = get_request_id(request)
    started = time.monotonic()
    response = await call_next(request)
    record_request(
        path=request.url.path,
        status_code=response.status_code,
        latency_ms=(time.monotonic() - started) * 1000.0,
    )
    response.headers.setdefault(REQUEST_ID_HEADER, request_id)
    return response


def _attach_services(app: FastAPI) -> None:
    partner = get_partner_client()
    controller = RenewalQueueController(partner_client=partner)
    app.state.partner_client = partner
    app.state.renewal_controller = controller
    app.state.reconciliation_service = ReconciliationService(partner_client=partner, controller=controller)


def _mount_docs(app: FastAPI) -> None:
    openapi_url = f"/{API_VERSION}/openapi.json"

    @app.get(openapi_url, include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def versioned_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=openapi_url, title=f"renewsync API {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="renewsync API", version=API_VERSION, lifespan=lifespan, docs_url=None, redoc_url=None)
    _attach_services(app)
    app.middleware("http")(_request_context)
    install_exception_handlers(app)

    # Bare /health stays for load balancer probes.
    app.include_router(health_router, include_in_schema=False)
    for router in _VERSIONED_ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    _mount_docs(app)
    return app


app = create_app()
