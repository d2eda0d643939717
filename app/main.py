"""Bank Statement Reconciliation Service - Main Application."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes import jobs, rules, sessions
from app.core.config import settings
from app.core.database import init_db
from app.core.errors import (
    ConflictError,
    ImmutableStateError,
    NotFoundError,
    ValidationError,
)
from app.core.logging import setup_logging

# Configure logging before anything else
logger = setup_logging(settings.log_level)

# Create all tables on startup
logger.info("Creating database tables...")
init_db()
logger.info("Database tables ready")

# -- OpenAPI tag metadata for Swagger grouping --
tags_metadata = [
    {
        "name": "Health",
        "description": "Service health and readiness checks.",
    },
    {
        "name": "Sessions",
        "description": (
            "Open reconciliation sessions from a normalized bank statement and "
            "internal ledger transactions, auto-match, correct matches by hand, "
            "record adjustments, complete/approve/reject, and generate reports."
        ),
    },
    {
        "name": "Jobs",
        "description": "Track and cancel background auto-match jobs.",
    },
    {
        "name": "Rules",
        "description": (
            "Manage per-account matching rules, including rules the engine "
            "learned from repeated manual matches."
        ),
    },
]


app = FastAPI(
    title="Bank Statement Reconciliation Service",
    description=(
        "## Bank Statement Reconciliation API\n\n"
        "Reconciles a bank-issued statement against internal ledger "
        "transactions and explains every pairing.\n\n"
        "### Matching passes\n"
        "1. `exact` - amount within 0.01, dates within 1 day, equal references\n"
        "2. `rule-based` - user-defined or learned rules, highest priority first\n"
        "3. `fuzzy` - weighted amount/date/description similarity\n\n"
        "### Session flow\n"
        "`in-progress` -> `completed` -> `approved`, or `in-progress` -> `rejected`. "
        "Approved sessions are immutable.\n"
    ),
    version="1.0.0",
    openapi_tags=tags_metadata,
    license_info={
        "name": "MIT",
    },
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["Sessions"])
app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["Jobs"])
app.include_router(rules.router, prefix="/api/v1/accounts", tags=["Rules"])


# -- Core errors are user-facing: map each one to an HTTP status --


@app.exception_handler(ValidationError)
async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def handle_conflict(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ImmutableStateError)
async def handle_immutable(request: Request, exc: ImmutableStateError) -> JSONResponse:
    return JSONResponse(status_code=423, content={"detail": str(exc)})


logger.info("Reconciliation API ready - routes registered")


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint.

    Returns a simple JSON object confirming the service is running.
    Useful for load balancers and monitoring systems.
    """
    return {"status": "healthy", "service": "bank-reconciliation"}
