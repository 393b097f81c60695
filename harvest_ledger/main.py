"""
FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from harvest_ledger.config import settings
from harvest_ledger.infrastructure.database import get_database
from harvest_ledger.infrastructure.transfer_executor import close_transfer_executor
from harvest_ledger.middleware.error_handler import ErrorHandlerMiddleware
from harvest_ledger.api.v1.routers import beneficiaries, harvests, payouts

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Prepares the ledger schema on startup and releases the transfer executor
    and database connections on shutdown.
    """
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Distribution policy: farmer_share_ratio={settings.farmer_share_ratio}, "
                f"remainder_policy={settings.remainder_policy}, "
                f"maturation_days={settings.earnings_maturation_days}")
    logger.info(f"Transfer mode: {settings.transfer_mode}")
    logger.info(f"Rate limit: {settings.rate_limit_requests} requests/minute")
    database = get_database()

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await close_transfer_executor()
    database.dispose()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Revenue Distribution & Balance Ledger for tokenized groves

    Harvest revenue is split between the grove's farmer and its token holders,
    recorded once per harvest, and paid out through claims and withdrawals.

    ## Features

    - **Exactly-once Distribution**: A database latch guarantees each harvest
      is distributed once, however often and concurrently it is triggered
    - **Integer Money**: All amounts are minor units; rounding never creates value
    - **Eligibility by Time**: Only tokens held at harvest time share its revenue
    - **Derived Balances**: Balances are folded from the ledger and cached only
      as an optimisation
    - **Safe Payouts**: Records are claimed only after a confirmed transfer;
      unknown outcomes stay open until reconciled
    - **Rate Limiting**: Protects the API from abuse

    ## Distribution Algorithm

    1. farmer_share = floor(gross_revenue x farmer_share_ratio)
    2. investor_share = gross_revenue - farmer_share
    3. Holdings acquired after the harvest, or inactive, are excluded
    4. Each eligible holder gets floor(investor_share x tokens / eligible_tokens)
    5. The rounding remainder follows the configured remainder policy
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware with configurable origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add global error handling middleware
app.add_middleware(ErrorHandlerMiddleware)

# Include routers
app.include_router(harvests.router, prefix="/api/v1")
app.include_router(beneficiaries.router, prefix="/api/v1")
app.include_router(payouts.router, prefix="/api/v1")


@app.get("/", tags=["health"])
async def root():
    """
    Root endpoint for health check.

    Returns:
        Status message
    """
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@app.get("/health", tags=["health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        Health status
    """
    return {
        "status": "healthy",
        "service": settings.app_name,
        "transfer_mode": settings.transfer_mode,
    }
