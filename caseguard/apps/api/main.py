from __future__ import annotations

import time

from fastapi import FastAPI, Request

from caseguard.apps.api.errors import register_exception_handlers
from caseguard.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from caseguard.apps.api.routes.guardian import router as guardian_router
from caseguard.apps.api.routes.workflows import router as workflows_router
from caseguard.core.logging import configure_logging
from caseguard.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="CaseGuard API", version=API_VERSION)
    register_exception_handlers(app)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000.0
        increment_counter("api_requests_total")
        if response.status_code >= 500:
            increment_counter("api_errors_total")
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        response.headers.setdefault("Server-Timing", f"app;dur={elapsed_ms:.1f}")
        return response

    for router in (guardian_router, workflows_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get(f"/{API_VERSION}/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
