"""
Outreach API - FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from .config import get_settings
from .database import engine, Base
from .logging_config import api_logger
from .middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from .limiter import limiter
from .responses import ApiException, api_exception_handler
from .routes import (
    auth_router,
    campaigns_router,
    email_webhooks_router,
    tracking_router,
    oauth_router,
    social_router,
    wallet_router,
    payments_router,
)

settings = get_settings()

# Create tables (in production, use Alembic migrations instead)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup/shutdown with the active configuration."""
    api_logger.info(
        "Outreach API starting",
        environment=settings.environment,
        email_provider=settings.email_provider,
        public_base_url=settings.public_base_url,
    )
    yield
    api_logger.info("Outreach API stopped")


app = FastAPI(
    title="Outreach API",
    description="Email campaigns, delivery tracking, social connections and credit metering",
    version="1.0.0",
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Error envelope for API errors and anything unhandled
app.add_exception_handler(ApiException, api_exception_handler)
app.add_exception_handler(Exception, api_exception_handler)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware (only in debug mode)
if settings.debug:
    app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "Idempotency-Key",
        "X-Requested-With",
    ],
    max_age=3600,
)

# Routes
app.include_router(auth_router)
app.include_router(campaigns_router)
app.include_router(email_webhooks_router)
app.include_router(tracking_router)
app.include_router(wallet_router)
app.include_router(payments_router)
app.include_router(social_router)
# Catch-all /api/{provider}/... routes go last
app.include_router(oauth_router)


@app.get("/api/health")
def health_check():
    """Health check endpoint for load balancers and monitoring."""
    database = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        api_logger.error("Health check database failure", error=e)
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "environment": settings.environment,
        "version": "1.0.0",
    }


@app.get("/")
def root():
    return {
        "message": "Outreach API",
        "docs": "/api/docs" if settings.debug else "Disabled in production",
    }
