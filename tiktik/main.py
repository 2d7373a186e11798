from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
from contextlib import asynccontextmanager
import time

from tiktik.config import settings
from tiktik.storage import create_storage
from tiktik.analytics import analytics_service
from tiktik.auth import IdentityService
from tiktik.errors import (
    BackendUnavailableError,
    BannedError,
    InvalidSuperChatError,
    MessageLengthError,
    NotModeratorError,
    PolicyViolation,
    StreamNotFoundError,
    TikTikError,
    UnauthenticatedError,
)
from tiktik.live_view import LiveService
from tiktik.uploads import create_upload_signer

# Import route modules
from tiktik.routes import basic, streams, chat, moderation, uploads, analytics, live

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Disable uvicorn access logging since we have our own middleware
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_real_ip(request: Request) -> str:
    """Extract the real client IP from request headers"""
    # Check Cloudflare header first (most specific)
    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip

    # X-Forwarded-For can hold a chain; the first entry is the client
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip

    if request.client:
        return request.client.host

    return "unknown"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting up TikTik live server...")
    storage = create_storage()
    await storage.connect()

    analytics_enabled = False
    if settings.ANALYTICS_ENABLED:
        try:
            await analytics_service.connect()
            analytics_enabled = True
        except Exception as e:
            logger.error(f"Watch analytics disabled, MongoDB unavailable: {e}")

    app.state.live_service = LiveService(
        storage, analytics_service if analytics_enabled else None
    )
    if settings.IDENTITY_SECRET:
        app.state.identity = IdentityService(
            settings.IDENTITY_SECRET,
            settings.IDENTITY_ALGORITHM,
            settings.IDENTITY_ISSUER,
            settings.IDENTITY_AUDIENCE,
        )
    else:
        logger.warning("IDENTITY_SECRET not set, every viewer will be anonymous")
    app.state.upload_signer = create_upload_signer()

    yield

    logger.info("Shutting down...")
    if analytics_enabled:
        await analytics_service.disconnect()
    await storage.disconnect()


app = FastAPI(
    title="TikTik Live API",
    description="Live stream presence, chat and moderation",
    version="1.0.0",
    lifespan=lifespan,
)

# Include all route modules
app.include_router(basic.router)
app.include_router(streams.router)
app.include_router(chat.router)
app.include_router(moderation.router)
app.include_router(uploads.router)
app.include_router(analytics.router)
app.include_router(live.router)


def status_for(exc: TikTikError) -> int:
    if isinstance(exc, UnauthenticatedError):
        return 401
    if isinstance(exc, (NotModeratorError, BannedError)):
        return 403
    if isinstance(exc, StreamNotFoundError):
        return 404
    if isinstance(exc, (MessageLengthError, InvalidSuperChatError)):
        return 400
    if isinstance(exc, PolicyViolation):
        return 429
    if isinstance(exc, BackendUnavailableError):
        return 503
    return 500


@app.exception_handler(TikTikError)
async def tiktik_error_handler(request: Request, exc: TikTikError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with real IP addresses"""
    client_ip = get_real_ip(request)
    start_time = time.time()

    response = await call_next(request)

    process_time_ms = (time.time() - start_time) * 1000
    logger.info(
        f'{client_ip} - "{request.method} {request.url.path}" '
        f"{response.status_code} - {process_time_ms:.1f}ms"
    )

    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, access_log=False)
