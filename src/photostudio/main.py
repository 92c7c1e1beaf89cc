from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from redis.asyncio import Redis

from photostudio.api.auth import router as auth_router
from photostudio.api.credits import router as credits_router
from photostudio.api.folders import router as folders_router
from photostudio.api.generations import router as generations_router
from photostudio.api.payments import router as payments_router
from photostudio.api.uploads import router as uploads_router
from photostudio.config import settings
from photostudio.errors import register_error_handlers
from photostudio.middleware.security import SecurityHeadersMiddleware
from photostudio.services.media_storage import media_root
from photostudio.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("starting_up", env=settings.APP_ENV, payment_stage=settings.PAYMENT_STAGE)
    redis = None
    if settings.RATE_LIMIT_BACKEND == "redis":
        redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await redis.ping()
            log.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            log.warning("redis_connection_failed", error=str(e))
        app.state.rate_limiter = RedisRateLimiter(redis)
    else:
        app.state.rate_limiter = InMemoryRateLimiter()
    app.state.redis = redis

    yield

    # Shutdown
    log.info("shutting_down")
    if redis is not None:
        await redis.aclose()


app = FastAPI(
    title="Photo Studio",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security headers; unhandled-exception 500s get theirs in errors._unhandled_error_handler
app.add_middleware(SecurityHeadersMiddleware)

register_error_handlers(app)

app.include_router(auth_router)
app.include_router(payments_router)
app.include_router(credits_router)
app.include_router(folders_router)
app.include_router(uploads_router)
app.include_router(generations_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "paymentStage": settings.PAYMENT_STAGE}


# Generated and uploaded images are served from the local media directory.
app.mount(
    settings.MEDIA_URL_PREFIX,
    StaticFiles(directory=str(media_root()), check_dir=False),
    name="media",
)
