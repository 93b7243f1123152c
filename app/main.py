# app/main.py

import asyncio
import sys
import time

import psutil
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.database import TenantRegistry
from app.core.exceptions import AppError, ServiceUnavailable
from app.core.rate_limiter import limiter
from app.services.directory_sync import DirectorySyncService
from app.services.enrollment_service import EnrollmentResolver

# Routers
from app.api.endpoints import (
    auth as auth_router,
    profile as profile_router,
    enrollment as enrollment_router,
    department as department_router,
    central as central_router,
    jobs as jobs_router,
)

# ------------------------------------------------------------
# LOGURU CONFIGURATION
# ------------------------------------------------------------
logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
           "<level>{level}</level> | "
           "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
           "<level>{message}</level>",
    colorize=True,
    backtrace=True,
    diagnose=settings.ENV != "prod",
)

# ------------------------------------------------------------
# FASTAPI APP INIT
# ------------------------------------------------------------
app = FastAPI(
    title="University SIS Core",
    version="1.0.0",
    description="Multi-tenant identity resolution and cross-department routing for the university information system.",
)

START_TIME = time.time()

app.state.limiter = limiter
app.state.registry = TenantRegistry.from_settings()
app.state.directory_sync = DirectorySyncService(
    app.state.registry,
    overwrite_existing_passwords=settings.OVERWRITE_EXISTING_PASSWORDS,
)
app.state.sync_task = None


# ------------------------------------------------------------
# ERROR HANDLERS (every error body is {"message": ...})
# ------------------------------------------------------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if isinstance(exc, ServiceUnavailable):
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"message": f"Rate limit exceeded: {exc.detail}"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# ------------------------------------------------------------
# METRICS API
# ------------------------------------------------------------
@app.get("/api/metrics", tags=["System"])
async def metrics(request: Request):
    registry = request.app.state.registry

    uptime_seconds = int(time.time() - START_TIME)
    cpu_usage = psutil.cpu_percent(interval=None)
    ram_usage = psutil.virtual_memory().percent
    try:
        disk_usage = psutil.disk_usage('/').percent
    except OSError:
        disk_usage = 0

    db_start = time.time()
    db_latency = 0
    try:
        await registry.test_connection()
        current_db_status = "Connected"
        db_latency = round((time.time() - db_start) * 1000, 2)
    except ServiceUnavailable:
        current_db_status = "Disconnected"

    sync = request.app.state.directory_sync
    return {
        "status": "Online",
        "version": app.version,
        "cpu": cpu_usage,
        "ram": ram_usage,
        "disk": disk_usage,
        "uptime": uptime_seconds,
        "database": current_db_status,
        "db_latency": db_latency,
        "tenant_pools": registry.open_pools,
        "directory_sync_running": sync.running,
    }


# ------------------------------------------------------------
# CORS CONFIGURATION
# ------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Job-Secret"],
)

# ------------------------------------------------------------
# REGISTER ROUTERS
# ------------------------------------------------------------
app.include_router(auth_router.router)
app.include_router(profile_router.router)
app.include_router(enrollment_router.router)
app.include_router(department_router.router)
app.include_router(central_router.router)
app.include_router(jobs_router.router)


# ------------------------------------------------------------
# APPLICATION STARTUP / SHUTDOWN
# ------------------------------------------------------------
@app.on_event("startup")
async def on_startup():
    logger.info("Starting University SIS Core...")
    registry = app.state.registry

    # 1) Central database reachable?
    try:
        await registry.test_connection()
        logger.success("Central database connection established.")
    except ServiceUnavailable:
        logger.exception("Central database unreachable; continuing without startup tasks.")
        return

    # 2) Central tables + department registry
    await registry.init_db()
    await registry.refresh_departments()
    logger.success("Central tables ready; department registry loaded.")

    # 3) Directory sync + reconciliation loop
    if settings.DIRECTORY_SYNC_ENABLED:
        resolver = EnrollmentResolver(registry)
        app.state.sync_task = asyncio.create_task(
            app.state.directory_sync.run_forever(
                settings.DIRECTORY_SYNC_INTERVAL_SECONDS,
                after_cycle=resolver.reconcile,
            )
        )

    logger.success("Backend startup completed successfully.")


@app.on_event("shutdown")
async def on_shutdown():
    task = app.state.sync_task
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await app.state.registry.dispose()
    logger.info("Tenant pools closed.")


# ------------------------------------------------------------
# ROOT HEALTH CHECK
# ------------------------------------------------------------
@app.get("/", tags=["System"])
async def root():
    return {
        "status": "ok",
        "service": "University SIS Core",
        "version": app.version,
    }
