from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request

from scorewatch.apps.api.errors import register_exception_handlers
from scorewatch.apps.api.rate_limit import AdmissionController, build_admission_controller
from scorewatch.apps.api.routes.cron import router as cron_router
from scorewatch.apps.api.routes.health import router as health_router
from scorewatch.apps.api.routes.ops import router as ops_router
from scorewatch.apps.api.routes.scores import router as scores_router
from scorewatch.apps.api.routes.tenants import router as tenants_router
from scorewatch.core.logging import configure_logging


def create_app(*, admission_controller: AdmissionController | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Scorewatch API")
    # Profile registry and counter store are built once and shared by every wrapped route.
    app.state.admission_controller = admission_controller or build_admission_controller()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{(time.monotonic() - start) * 1000.0:.1f}"
        return response

    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(cron_router)
    app.include_router(scores_router)
    app.include_router(tenants_router)
    app.include_router(ops_router)
    return app


app = create_app()
