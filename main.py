from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware

from api.routes_map import router as map_router
from api.routes_scan import router as scan_router
from api.state import RuntimeState
from config.load_config import AppConfig
from observability.logging import setup_json_logging
from observability.metrics import metrics_middleware, metrics_response
from observability.tracing import setup_tracing


def create_app(config: AppConfig | None = None) -> FastAPI:
    runtime = RuntimeState.build(config)
    obs = runtime.config.observability
    setup_json_logging(level=obs.log_level, json_logs=obs.json_logs)

    app = FastAPI(title="occmap", version="1.0.0")
    app.add_middleware(GZipMiddleware, minimum_size=1000, compresslevel=5)
    app.state.runtime = runtime
    metrics_enabled = bool(obs.metrics_enabled)

    setup_tracing(app, obs)

    @app.middleware("http")
    async def _metrics(request: Request, call_next):
        if not metrics_enabled:
            return await call_next(request)
        return await metrics_middleware(request, call_next)

    app.include_router(scan_router)
    app.include_router(map_router)

    @app.get("/metrics")
    def metrics():
        if not metrics_enabled:
            return {"status": "disabled"}
        return metrics_response()

    @app.get("/health")
    def health() -> dict[str, object]:
        server = app.state.runtime.server
        return {
            "status": "ok",
            "version": app.version,
            "instances": len(server.store),
            "reset_stamp": server.reset_stamp,
            "config_source": app.state.runtime.config_source,
        }

    return app


app = create_app()
