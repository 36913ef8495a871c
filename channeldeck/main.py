"""
ChannelDeck - FastAPI Backend

Multi-tenant IPTV channel directory: curated channel lists served to TV apps
as M3U playlists by short playlist codes, plus connectivity testing of the
channel catalog.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from channeldeck.config import get_settings
from channeldeck.errors import ChannelDeckError
from channeldeck.ratelimit import limiter
from channeldeck.routers import admin, playlists, probes
from channeldeck.services.store import get_store

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("Starting ChannelDeck backend...")

    store = await get_store()
    logger.info(f"Store initialized at {store.db_path}")

    # A crash mid-run can leave channels flagged as being tested
    stale = await store.reset_testing_flags()
    if stale:
        logger.warning(f"Cleared {stale} stale in-progress test flags")

    yield

    logger.info("Shutting down ChannelDeck backend...")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="IPTV channel directory and playlist distribution service",
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(playlists.router)
app.include_router(probes.router)
app.include_router(admin.router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Error handlers
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(ChannelDeckError)
async def channeldeck_exception_handler(request: Request, exc: ChannelDeckError):
    """Expected failures raised by services."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = errors[0].get("msg", "Invalid request")
        return error_response(400, f"{location}: {message}" if location else message)
    return error_response(400, "Invalid request")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return error_response(500, "Internal server error")


def run():
    import uvicorn
    uvicorn.run(
        "channeldeck.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    run()
