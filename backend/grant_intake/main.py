"""
Grant Intake API - FastAPI backend for grant applications and reviewer links
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grant_intake import __version__, database
from grant_intake.config import ALLOWED_ORIGINS, ENVIRONMENT
from grant_intake.routers import admin, grants, health, review
from grant_intake.security import setup_security

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup and dispose the engine on shutdown."""
    if database.engine is not None:
        await database.init_db(database.engine)
        logger.info("Database tables ready")
    else:
        logger.warning("Starting without a database; submissions will answer 503")
    logger.info("Grant Intake API started (environment=%s)", ENVIRONMENT)
    yield
    if database.engine is not None:
        await database.engine.dispose()
    logger.info("Grant Intake API shutdown complete")


app = FastAPI(
    title="Grant Intake API",
    description="Grant application intake and time-limited reviewer disclosure",
    version=__version__,
    lifespan=lifespan,
)

# =============================================================================
# CORS Configuration
# =============================================================================
logger.info("CORS allowed origins: %s", ALLOWED_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)

# =============================================================================
# Security Middleware Setup
# =============================================================================
# Must run after CORS middleware is added (order matters)
setup_security(app, ALLOWED_ORIGINS)

app.include_router(health.router)
app.include_router(grants.router)
app.include_router(admin.router)
app.include_router(review.router)


if __name__ == "__main__":
    import uvicorn

    # Access logs would record review-link secrets from the URL path.
    uvicorn.run(app, host="0.0.0.0", port=8000, access_log=False)
