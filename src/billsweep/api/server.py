"""
BILLSWEEP - FastAPI Server

HTTP surface for the billing engine: the scheduler triggers sweeps here, the
provisioning flow reports resource creation and deletion, and dashboards read
owner statements.

Endpoints:
- POST /sweeps/{kind} - Sweep one resource kind
- POST /sweeps - Sweep every kind
- POST /resources/{kind}/{resource_id}/created - Charge the first hour
- POST /resources/{kind}/{resource_id}/terminated - Stop accrual
- GET /owners/{owner_id}/ledger - Ledger history
- GET /owners/{owner_id}/summary - Spend summary and monthly estimate
- GET /resources/{resource_id}/timeline/verify - Verify the billed timeline
- GET /health - Health check
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..billing import BillingEngine, build_engine
from ..config import configure_logging
from ..core.errors import ResourceNotFoundError, SchemaUnavailableError, UnknownResourceKindError
from ..core.resources import ResourceKind

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class SweepRequest(BaseModel):
    """Optional body for POST /sweeps."""
    kinds: Optional[List[str]] = Field(None, description="Kinds to sweep: vm, managed_app, addon (default: all)")


class ResourceErrorModel(BaseModel):
    resource_id: Optional[str]
    kind: str
    reason: str
    message: str


class SweepResponse(BaseModel):
    """Result of one sweep."""
    kind: str
    success: bool
    started_at: Optional[str]
    finished_at: Optional[str]
    billed: int
    failed: int
    skipped: int
    total_amount: str
    total_hours: int
    errors: List[ResourceErrorModel] = Field(default_factory=list)
    low_balance_owners: List[str] = Field(default_factory=list)


class CreationResponse(BaseModel):
    """Result of a first-hour charge."""
    resource_id: str
    kind: str
    charged: bool
    amount: str
    checkpoint: Optional[str]
    reason: Optional[str]
    payment_reference: Optional[str]
    already_billed: bool
    error: Optional[str]


class TerminationResponse(BaseModel):
    resource_id: str
    kind: str
    stopped: bool


class TimelineResponse(BaseModel):
    resource_id: str
    valid: bool
    billed_entries: int
    error: Optional[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, engine: Optional[BillingEngine] = None):
        self.engine = engine or build_engine()
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    configure_logging()
    logger.info("billsweep_starting", version=__version__)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("billsweep_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Billsweep",
        description="""
# Hourly Usage Billing

Charges prepaid wallets for the whole hours each resource has been provisioned.

## Features
- **Sweeps**: idempotent, restart-safe hourly billing per resource kind
- **Lifecycle hooks**: first-hour charge on creation, accrual stop on deletion
- **Ledger**: append-only record of every charge attempt, billed or failed
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(SchemaUnavailableError)
    async def schema_unavailable_handler(request: Request, exc: SchemaUnavailableError):
        return JSONResponse(status_code=503, content={"detail": str(exc), "missing": exc.missing})

    @application.exception_handler(ResourceNotFoundError)
    async def resource_not_found_handler(request: Request, exc: ResourceNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @application.exception_handler(UnknownResourceKindError)
    async def unknown_kind_handler(request: Request, exc: UnknownResourceKindError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def parse_kind(kind: str) -> ResourceKind:
    try:
        return ResourceKind(kind.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid resource kind: {kind}. Use one of {[k.value for k in ResourceKind]}",
        )


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        database="postgresql" if state.engine.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


@app.post("/sweeps/{kind}", response_model=SweepResponse, tags=["Billing"])
def sweep_kind(
    kind: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Sweep one resource kind.

    Every due resource is charged for its whole elapsed hours. Per-resource
    failures are reported in `errors`; a missing schema fails the whole call
    with 503 before any resource is read.
    """
    result = state.engine.orchestrator.run(parse_kind(kind))
    return result.to_dict()


@app.post("/sweeps", tags=["Billing"])
def sweep_all(
    request: Optional[SweepRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Sweep several kinds in turn (default: all of them, add-ons last)."""
    kinds = None
    if request is not None and request.kinds:
        kinds = [parse_kind(k) for k in request.kinds]

    results = state.engine.orchestrator.run_all(kinds)
    return {
        "success": all(r.success for r in results.values()),
        "results": {kind.value: r.to_dict() for kind, r in results.items()},
    }


@app.post("/resources/{kind}/{resource_id}/created", response_model=CreationResponse, tags=["Lifecycle"])
def resource_created(
    kind: str,
    resource_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Charge the first hour of a newly provisioned resource.

    Billing failures are returned with `charged: false`; they never fail the
    request, so provisioning can carry on.
    """
    result = state.engine.lifecycle.on_resource_created(parse_kind(kind), resource_id)
    return result.to_dict()


@app.post("/resources/{kind}/{resource_id}/terminated", response_model=TerminationResponse, tags=["Lifecycle"])
def resource_terminated(
    kind: str,
    resource_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Stop billing a deleted resource (best-effort)."""
    resource_kind = parse_kind(kind)
    stopped = state.engine.lifecycle.on_resource_terminated(resource_kind, resource_id)
    return TerminationResponse(resource_id=resource_id, kind=resource_kind.value, stopped=stopped)


@app.get("/owners/{owner_id}/ledger", tags=["Statements"])
def owner_ledger(
    owner_id: str,
    limit: int = 50,
    offset: int = 0,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Ledger entries for an owner, newest first."""
    entries = state.engine.statements.history(owner_id, limit=limit, offset=offset)
    return {
        "owner_id": owner_id,
        "total": len(entries),
        "entries": [e.to_dict() for e in entries],
    }


@app.get("/owners/{owner_id}/summary", tags=["Statements"])
def owner_summary(
    owner_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Spend this month and overall, active resources and the monthly estimate."""
    return state.engine.statements.summary(owner_id).to_dict()


@app.get("/resources/{kind}/{resource_id}/spending", tags=["Statements"])
def resource_spending(
    kind: str,
    resource_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Billed spend of one resource, this month and overall."""
    return state.engine.statements.resource_spending(parse_kind(kind), resource_id).to_dict()


@app.get("/resources/{kind}/{resource_id}/balance-check", tags=["Statements"])
def balance_check(
    kind: str,
    resource_id: str,
    hours: int = 1,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Whether the owner's wallet covers the next `hours` of this resource."""
    return state.engine.statements.check_sufficient_balance(parse_kind(kind), resource_id, hours=hours).to_dict()


@app.get("/resources/{resource_id}/timeline/verify", response_model=TimelineResponse, tags=["Statements"])
def verify_timeline(
    resource_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Verify the billed usage timeline of a resource.

    Checks that billed periods are contiguous and that each spans exactly the
    hours it charged.
    """
    return state.engine.statements.verify_timeline(resource_id).to_dict()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "billsweep.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
