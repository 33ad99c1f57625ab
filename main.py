"""Main FastAPI application for the telemetry ingestion and alerting service."""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import require_operator
from config import settings
from database import Base, check_db_connection, engine, get_db
from health_monitoring_service import health_monitoring_service
from mqtt_client import mqtt_handler
from mqtt_command_service import mqtt_command_service
from notification_dispatcher import notification_dispatcher
from routers import alerts as alerts_router
from routers import devices as devices_router
from routers import health as health_router
from routers import messages as messages_router
from routers import telemetry as telemetry_router
from telemetry_worker import telemetry_worker

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info("Starting telemetry ingestion service...")

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

    telemetry_worker.start()

    try:
        notification_dispatcher.start()
    except Exception as e:
        logger.warning(f"Failed to start notification dispatcher: {e}. Continuing without batched notifications...")

    try:
        health_monitoring_service.start()
    except Exception as e:
        logger.warning(f"Failed to start health monitoring service: {e}. Continuing without health monitoring...")

    if settings.mqtt_enabled:
        try:
            mqtt_handler.connect()
            logger.info("MQTT handler started")
        except Exception as e:
            logger.warning(f"Failed to connect to MQTT broker: {e}. Continuing without MQTT...")

    yield

    logger.info("Shutting down telemetry ingestion service...")
    mqtt_handler.disconnect()
    mqtt_command_service.disconnect()
    health_monitoring_service.stop()
    notification_dispatcher.stop()
    telemetry_worker.stop()


app = FastAPI(
    title="Telemetry Ingestion API",
    description="""
    Multi-tenant telemetry ingestion, connectivity monitoring and alerting.

    - Device ingestion: JSON, query-string and legacy gateway formats
    - Threshold and anomaly alerts with consolidated notifications
    - Device diagnostics, health scores and message audit log
    """,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return JSONResponse(status_code=400, content={"error": f"Invalid {field}: {first.get('msg', 'invalid value')}"})


# Device-facing ingestion (paths baked into firmware)
app.include_router(
    telemetry_router.router,
    prefix=settings.ingest_prefix,
    tags=["ingest"],
)

# Operator API
app.include_router(
    devices_router.router,
    prefix=f"{settings.api_v1_prefix}/devices",
    tags=["devices"],
    dependencies=[Depends(require_operator)],
)
app.include_router(
    alerts_router.router,
    prefix=settings.api_v1_prefix,
    dependencies=[Depends(require_operator)],
)
app.include_router(
    messages_router.router,
    prefix=settings.api_v1_prefix,
    dependencies=[Depends(require_operator)],
)
app.include_router(
    health_router.router,
    prefix=settings.api_v1_prefix,
)


@app.get("/")
async def root():
    return {
        "service": "Telemetry Ingestion Service",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Liveness plus database and worker status."""
    db_ok, db_error = check_db_connection(db)
    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "database": "ok" if db_ok else db_error,
        "alert_worker_running": telemetry_worker.is_running,
        "mqtt_connected": mqtt_handler.is_connected,
    }
    if not db_ok:
        return JSONResponse(status_code=503, content=body)
    return body
