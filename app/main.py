from contextlib import asynccontextmanager
import asyncio
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.routers import realtime as realtime_router
from app.routers import rooms as rooms_router
from app.services import get_room_services
from app.services.errors import RoomSessionError
from app.utils.logging_config import setup_logging
from app.utils.websocket_manager import websocket_manager

logger = logging.getLogger("app")


async def sweep_rooms_forever() -> None:
    """Periodically expire stale participants and retire finished rooms."""
    while True:
        services = get_room_services()
        await asyncio.sleep(services.sweep_interval_seconds)
        try:
            services.lifecycle.sweep()
        except Exception:  # noqa: BLE001
            logger.exception("Room sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    sweeper = asyncio.create_task(sweep_rooms_forever())
    logger.info("Live room coordinator started.")
    yield
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await websocket_manager.flush()
    logger.info("Live room coordinator stopped.")


app = FastAPI(
    title="Live Room Coordinator",
    description="Presence, interaction and instructor controls for live classroom sessions",
    lifespan=lifespan,
)

# Include routers
app.include_router(rooms_router.router)
app.include_router(realtime_router.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Global exception: %s\n%s", exc, traceback.format_exc())
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error. Please check logs."},
    )


@app.exception_handler(RoomSessionError)
async def room_session_exception_handler(request: Request, exc: RoomSessionError):
    logger.info("Room request rejected (%s): %s", exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(
            "HTTP %s error: %s\n%s", exc.status_code, exc.detail, traceback.format_exc()
        )
    else:
        logger.info("HTTP %s: %s", exc.status_code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()

    # Extract just the error messages for a simpler, guaranteed-serializable response
    error_messages = [err["msg"] for err in errors]

    logger.warning("Validation error: %s", error_messages)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": error_messages},
    )


@app.get("/health", tags=["healthcheck"])
async def health_check():
    services = get_room_services()
    return {"status": "healthy", "rooms": services.stats()}
