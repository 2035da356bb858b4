import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

import config
from database import DATABASE_URL, init_models, ping
from errors import register_error_handlers
from logging_config import configure_logging, get_logger
from ratelimit import FixedWindowRateLimiter, RateLimitMiddleware
from routers import auth, cotisations, groups, transactions

configure_logging(config.LOG_LEVEL)
logger = get_logger(__name__)

rate_limiter = FixedWindowRateLimiter(config.RATE_LIMIT_MAX, config.RATE_LIMIT_WINDOW_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    logger.info("Server starting in %s mode", config.APP_ENV)
    yield


# ----------------------------------------------------------------------------
# App setup
# ----------------------------------------------------------------------------
app = FastAPI(title="Cotisation Management API", lifespan=lifespan)

app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "X-DNS-Prefetch-Control": "off",
    "X-Permitted-Cross-Domain-Policies": "none",
}
if config.IS_PRODUCTION:
    SECURITY_HEADERS["Strict-Transport-Security"] = "max-age=15552000; includeSubDomains"


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


register_error_handlers(app)

app.include_router(auth.router, prefix=config.API_PREFIX)
app.include_router(cotisations.router, prefix=config.API_PREFIX)
app.include_router(groups.router, prefix=config.API_PREFIX)
app.include_router(transactions.router, prefix=config.API_PREFIX)


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------
@app.get("/")
async def read_root():
    return {"message": "Welcome to the Cotisation Management API - monthly dues for groups"}


@app.get("/health")
async def health():
    info = {
        "backend": "running",
        "using_sqlite_fallback": DATABASE_URL.startswith("sqlite"),
        "database": "unavailable",
    }
    try:
        await ping()
        info["database"] = "connected"
    except Exception as e:
        logger.warning("Database ping failed: %s", e)
        info["database"] = f"error: {str(e)[:160]}"
    return info


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
