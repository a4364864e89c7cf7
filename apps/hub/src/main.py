from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import asyncio, logging, time

from config import settings
from api.v1.router import router as v1_router
from mqtt.client import startup as mqtt_startup, shutdown as mqtt_shutdown
from services.relay import loxone_relay
from services.scheduler import irrigation_scheduler
from services.sequences import sequence_runner
from services.storage import irrigation_store
from services.timers import timer_registry
from services.weather import weather_service

logger = logging.getLogger("irrigation.hub")
if not logger.handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)
    background: list[asyncio.Task] = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        seeded = await irrigation_store.seed_default_zones(settings.default_zone_count)
        if seeded:
            logger.info("Created %d default zones", seeded)
        if settings.scheduler_enabled:
            await irrigation_scheduler.start()
        else:
            logger.info("Scheduler disabled (set SCHEDULER_ENABLED=true to enable).")
        if settings.weather_enabled:
            background.append(asyncio.create_task(weather_service.get_weather(), name="weather-initial"))
        if settings.mqtt_enabled:
            logger.info("MQTT enabled; connecting...")
            await mqtt_startup(settings)
        else:
            logger.info("MQTT disabled (set MQTT_ENABLED=true to enable).")

    @app.on_event("shutdown")
    async def _shutdown():
        timer_registry.cancel_all()
        sequence_runner.cancel_all()
        for task in background:
            task.cancel()
        background.clear()
        await irrigation_scheduler.stop()
        await mqtt_shutdown()
        await weather_service.close()
        await loxone_relay.close()

    return app

app = create_app()
