"""
Box Billing Engine - FastAPI Application

Main entry point for the billing API.
Provides webhook intake, access checks and admin billing operations.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    BillingEngineError,
    DuplicateError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Box Billing Engine starting in {settings.environment} mode...")
    
    # Initialize SQLModel database if URL is configured
    if settings.database_url:
        try:
            from app.infrastructure.db.database import init_db, close_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")
    
    yield
    
    # Shutdown
    if settings.database_url:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")
    
    logger.info("Box Billing Engine shutting down...")


app = FastAPI(
    title="Box Billing Engine",
    description="Subscription lifecycle and entitlement enforcement for gym boxes",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(DuplicateError)
async def conflict_error_handler(request: Request, exc: BillingEngineError):
    """Handle conflicts with already stored state."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request: Request, exc: ExternalServiceError):
    """Handle billing provider failures."""
    logger.error(f"External service error: {exc.message}")
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(BillingEngineError)
async def general_error_handler(request: Request, exc: BillingEngineError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "box-billing-engine"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Box Billing Engine API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import access, admin, billing, webhooks

app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(access.router, prefix="/api", tags=["Access"])
app.include_router(billing.router, prefix="/api", tags=["Billing"])
app.include_router(admin.router)
