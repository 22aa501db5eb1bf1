from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

# Internal imports
from config import config
from data.database import create_tables
from api.experiment_routes import experiment_router
from api.events_routes import events_router
from services.errors import ConcurrencyConflictError, InvalidStateError, NotFoundError, ValidationError

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles startup and shutdown events for the application.
    Code before 'yield' runs on startup.
    Code after 'yield' runs on shutdown.
    """
    logger.info("Application starting up with %s", config)
    create_tables()
    logger.info("Database tables initialized successfully.")

    yield

    logger.info("Application shutting down: Closing resources...")

# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Experiment Engine API",
    version="1.0.0",
    description="A/B testing: experiment lifecycle, assignment, event accounting and significance results."
)

app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(experiment_router)
app.include_router(events_router)


# --- Engine errors mapped to HTTP responses ---

def _failed(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(content={"status": "failed", "error": str(exc)}, status_code=status_code)

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.info("validation error on %s: %s", request.url.path, exc)
    return _failed(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.info("not found on %s: %s", request.url.path, exc)
    return _failed(status.HTTP_404_NOT_FOUND, exc)

@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    logger.info("invalid state on %s: %s", request.url.path, exc)
    return _failed(status.HTTP_409_CONFLICT, exc)

@app.exception_handler(ConcurrencyConflictError)
async def conflict_handler(request: Request, exc: ConcurrencyConflictError):
    logger.warning("concurrency conflict on %s: %s", request.url.path, exc)
    return _failed(status.HTTP_409_CONFLICT, exc)


# --- API Endpoints ---

@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=200)
