import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.api.v1.admin import router as admin_router
from authgate.api.v1.auth import router as auth_router
from authgate.api.v1.mfa import router as mfa_router
from authgate.core.config import settings
from authgate.core.db import SessionLocal, engine
from authgate.core.errors import AuthError
from authgate.core.events import StructlogEventSink
from authgate.core.logging import setup_logging
from authgate.core.ratelimit import AllowAllRateLimiter
from authgate.services.maintenance import run_periodic

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    sweeper = None
    if settings.MAINTENANCE_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(run_periodic(SessionLocal, settings.MAINTENANCE_INTERVAL_SECONDS))
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await engine.dispose()


app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# colaboradores externos; se reemplazan en app.state (tests, gateway con rate limit real)
app.state.event_sink = StructlogEventSink()
app.state.rate_limiter = AllowAllRateLimiter()


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail or exc.message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.message},
        headers=headers,
    )


app.include_router(auth_router)
app.include_router(mfa_router)
app.include_router(admin_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
