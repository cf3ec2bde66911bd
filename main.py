from fastapi import FastAPI
from fastapi.responses import JSONResponse

# Internal imports
from config import config
from data.database import create_tables
from api.analytics_routes import analytics_router
from api.ab_test_routes import ab_test_router

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """Creates the analytics and assignment tables before the first request."""
    try:
        logger.info("Reporting service starting up: initializing database schema... %s", config)
        create_tables()
        logger.info("Database tables initialized successfully.")
    except Exception as e:
        logger.error("Failed to initialize database tables: %s", e)

    yield

    logger.info("Reporting service shutting down.")

# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Experiment Session Reporting API",
    version="1.0.0",
    description="Receives analytics batches and experiment assignments from client sessions and reports on them."
)

app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(analytics_router)
app.include_router(ab_test_router)

# --- API Endpoints ---

@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=200)
