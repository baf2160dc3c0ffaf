from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Optional
import asyncio
import logging
import time

from . import config
from .errors import GeoLookupError
from .geo.lookup import LookupEngine
from .geo.refresh import RefreshPipeline
from .geo.store import DatabaseStore
from .logging_config import setup_logging
from .middleware import TracingMiddleware
from .services.prometheus_metrics import prometheus_metrics
from .services.refresh_jobs import RefreshTrigger
from .api.admin import router as admin_router
from .api.health import router as health_router
from .api.lookup import router as lookup_router

logger = logging.getLogger("app")


async def watch_databases(store: DatabaseStore, interval: int):
    """Republish databases replaced on disk by an out-of-process refresh"""
    while True:
        await asyncio.sleep(interval)
        try:
            results = await asyncio.to_thread(store.load_from_disk, None, True)
            reloaded = [name for name, outcome in results.items() if outcome == "loaded"]
            if reloaded:
                logger.info("Reloaded databases changed on disk", extra={
                    "component": "api",
                    "databases": reloaded,
                })
        except Exception:
            logger.exception("Database watcher iteration failed")


@asynccontextmanager
async def lifespan(application: FastAPI):
    store: DatabaseStore = application.state.store
    logger.info("IP Lookup API starting up", extra={"component": "api"})

    if application.state.load_on_startup:
        await asyncio.to_thread(store.load_from_disk)

    watcher = None
    if application.state.reload_interval > 0:
        watcher = asyncio.create_task(watch_databases(store, application.state.reload_interval))

    logger.info("IP Lookup API ready", extra={
        "component": "api",
        "databases": {name: d["status"] for name, d in store.status().items()},
    })
    try:
        yield
    finally:
        if watcher is not None:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
        store.close()
        logger.info("IP Lookup API shutting down", extra={"component": "api"})


def create_app(store: Optional[DatabaseStore] = None,
               pipeline: Optional[RefreshPipeline] = None,
               data_dir: Optional[Path] = None,
               load_on_startup: bool = True,
               reload_interval: Optional[int] = None) -> FastAPI:
    store = store or DatabaseStore(data_dir=data_dir or config.DATA_DIR)
    pipeline = pipeline or RefreshPipeline(store=store)

    application = FastAPI(title=config.APP_NAME, version=config.API_VERSION, lifespan=lifespan)
    application.state.store = store
    application.state.engine = LookupEngine(store)
    application.state.refresh_trigger = RefreshTrigger(pipeline)
    application.state.load_on_startup = load_on_startup
    application.state.reload_interval = config.DB_RELOAD_INTERVAL_SEC if reload_interval is None else reload_interval
    application.state.started_at = time.time()

    application.add_middleware(TracingMiddleware)

    @application.exception_handler(GeoLookupError)
    async def geo_lookup_error_handler(request: Request, exc: GeoLookupError):
        if exc.status_code >= 500:
            logger.error(f"Lookup failed: {exc}", extra={"component": "api", "path": request.url.path})
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    application.include_router(health_router)
    application.include_router(lookup_router)
    application.include_router(admin_router)

    prometheus_metrics.set_build_info(config.API_VERSION)
    return application


def run():
    """Console entry point: serve the API with uvicorn"""
    import uvicorn
    uvicorn.run("iplookup.main:app", host="0.0.0.0", port=config.PORT, log_config=None)


# Configure logging at import time
setup_logging()
app = create_app()
