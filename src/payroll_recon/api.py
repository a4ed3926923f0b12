"""FastAPI application for the payroll reconciliation engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .auth import limiter
from .config import get_settings
from .database import close_db, init_db
from .errors import ReconciliationError
from .reconciliation.api import router as reconciliation_router, templates_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the process-wide database engine for the life of the app."""
    await init_db(get_settings().database_url)
    yield
    await close_db()


app = FastAPI(title="Payroll Reconciliation API", lifespan=lifespan)
app.state.limiter = limiter


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a JSON body when a caller exceeds its rate limit."""
    logger.warning(f"Rate limit exceeded for {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={"code": "RATE_LIMITED", "message": f"Rate limit exceeded: {exc.detail}"},
    )


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Translate typed engine errors to their HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(ReconciliationError, reconciliation_error_handler)

app.include_router(reconciliation_router)
app.include_router(templates_router)
