"""
RetireFlow - FastAPI Backend
============================
HTTP surface over the retirement cash-flow engines.

Architecture:
1. Engines are pure calculations - they never import this module
2. Household bucket settings live in an in-memory store (stand-in for the
   account store); refills are read-modify-write against that store
3. Projection results are cached per request fingerprint
"""

import os
import logging
from datetime import date, datetime
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Local imports
from planning_constants import (
    RMD_DIVISORS,
    RMD_FALLBACK_DIVISOR,
    WITHDRAWAL_ORDER_DESCRIPTIONS,
    BucketType,
    RefillCondition,
)
from models import (
    AssetAllocation,
    BucketFigures,
    BucketSettings,
    BucketTargets,
    GuaranteedIncomeSource,
    GuardrailConfig,
    GuardrailStatus,
    IncomeSource,
    MonteCarloRequest,
    ProjectionRequest,
    RefillHistoryEntry,
)
from withdrawal_engine import project_request
from projection_reports import get_withdrawal_chart_data, summarize_projection
from projection_cache import ProjectionCache
from monte_carlo import run_monte_carlo
from rmd_calculator import get_rmd_start_age, get_rmd_summary, project_rmds
from guardrails_engine import (
    calculate_guardrail_status,
    generate_guardrail_nudge,
    simulate_market_shock,
)
from bucket_engine import (
    analyze_buckets,
    append_refill_history,
    calculate_bucket_withdrawal,
    calculate_monthly_paycheck,
    evaluate_refill,
    execute_refill,
    guaranteed_sources_from_income,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

PROJECTION_CACHE_TTL = float(os.getenv("PROJECTION_CACHE_TTL", "300"))
PROJECTION_CACHE_SIZE = int(os.getenv("PROJECTION_CACHE_SIZE", "256"))
MONTE_CARLO_MAX_WORKERS = int(os.getenv("MONTE_CARLO_MAX_WORKERS", "0")) or None
MAX_MONTE_CARLO_TRIALS = int(os.getenv("MAX_MONTE_CARLO_TRIALS", "10000"))
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]


# =============================================================================
# APPLICATION SETUP
# =============================================================================

# In-memory storage (replace with the account store in production)
bucket_settings_db: Dict[str, BucketSettings] = {}
refill_history_db: Dict[str, tuple] = {}

projection_cache = ProjectionCache(
    ttl_seconds=PROJECTION_CACHE_TTL,
    max_entries=PROJECTION_CACHE_SIZE,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("RetireFlow starting up...")
    yield
    projection_cache.clear()
    logger.info("RetireFlow shutting down...")


app = FastAPI(
    title="RetireFlow",
    description="Retirement cash-flow simulation API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class RMDProjectionRequest(BaseModel):
    current_age: int = Field(ge=0, le=120)
    birth_year: int = Field(ge=1900, le=2100)
    pretax_balance: float = Field(ge=0)
    expected_return: float = Field(default=0.06, gt=-1)
    end_age: int = Field(default=100, ge=0, le=120)
    start_year: Optional[int] = None


class GuardrailRequest(BaseModel):
    portfolio_value: float = Field(ge=0)
    initial_portfolio_value: float = Field(ge=0)
    monthly_spending: float = Field(ge=0)
    config: Optional[GuardrailConfig] = None


class MarketShockRequest(GuardrailRequest):
    shock_pct: float = Field(default=0.15, ge=0, le=1)


class NudgeRequest(BaseModel):
    status: GuardrailStatus
    legacy_goal: Optional[float] = Field(default=None, ge=0)
    projected_estate_value: Optional[float] = None
    bucket_list_enabled: bool = False
    verbose: bool = False


class BucketAnalysisRequest(BaseModel):
    allocation: AssetAllocation
    portfolio_value: Optional[float] = None
    annual_expenses: float
    target_years: BucketTargets = Field(default_factory=BucketTargets)
    ytd_returns: Optional[BucketFigures] = None
    refill_threshold_pct: float = Field(default=100.0, ge=0)
    refill_enabled: bool = True


class PaycheckRequest(BaseModel):
    annual_expenses: float = 0.0
    income_sources: List[IncomeSource] = Field(default_factory=list)
    guaranteed_sources: List[GuaranteedIncomeSource] = Field(default_factory=list)
    bucket_withdrawal: Optional[float] = Field(default=None, ge=0)
    effective_tax_rate: float = Field(default=0.15, ge=0, lt=1)


class CreateHouseholdRequest(BaseModel):
    settings: Optional[BucketSettings] = None


class UpdateBucketsRequest(BaseModel):
    updates: Dict[str, Any]


class RefillEvaluateRequest(BaseModel):
    annual_expenses: float


class RefillExecuteRequest(BaseModel):
    annual_expenses: float
    source_bucket: BucketType
    amount: float
    condition: Optional[RefillCondition] = None
    refill_date: Optional[date] = None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_household(household_id: str) -> BucketSettings:
    """Get bucket settings or raise 404."""
    if household_id not in bucket_settings_db:
        raise HTTPException(status_code=404, detail=f"Household {household_id} not found")
    return bucket_settings_db[household_id]


def cached_projection(request: ProjectionRequest):
    return projection_cache.get_or_compute(request, lambda: project_request(request))


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """API health check."""
    return {
        "service": "RetireFlow",
        "version": "1.0.0",
        "status": "healthy",
    }


@app.get("/api/health")
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "components": {
            "withdrawal_engine": "ready",
            "guardrails_engine": "ready",
            "bucket_engine": "ready",
        },
        "projection_cache": projection_cache.stats(),
    }


# --- WITHDRAWAL PROJECTION ---

@app.post("/api/withdrawals/project")
async def project_withdrawals(request: ProjectionRequest):
    """
    Year-by-year withdrawal projection.

    Identical requests within the cache TTL are served from the cache.
    """
    summaries = cached_projection(request)
    return {
        "years": [s.model_dump() for s in summaries],
        "summary": summarize_projection(summaries, request.accounts).model_dump(),
    }


@app.post("/api/withdrawals/summary")
async def projection_summary(request: ProjectionRequest):
    """Lifetime figures plus chart rows for a projection."""
    summaries = cached_projection(request)
    chart = get_withdrawal_chart_data(summaries, request.accounts)
    return {
        "summary": summarize_projection(summaries, request.accounts).model_dump(),
        "chart": chart.to_dict(orient="records"),
    }


@app.post("/api/withdrawals/monte-carlo")
def monte_carlo(request: MonteCarloRequest):
    """
    Run the projection once per trial of return draws.

    Declared sync so the worker pool runs outside the event loop.
    """
    if len(request.return_draws) > MAX_MONTE_CARLO_TRIALS:
        raise HTTPException(
            status_code=422,
            detail=f"At most {MAX_MONTE_CARLO_TRIALS} trials per request",
        )
    return run_monte_carlo(request, max_workers=MONTE_CARLO_MAX_WORKERS).model_dump()


# --- RMD ---

@app.post("/api/rmd/projection")
async def rmd_projection(request: RMDProjectionRequest):
    """RMD schedule and headline figures for a combined pretax balance."""
    args = (
        request.current_age,
        request.birth_year,
        request.pretax_balance,
        request.expected_return,
        request.end_age,
        request.start_year,
    )
    return {
        "start_age": get_rmd_start_age(request.birth_year).model_dump(),
        "summary": get_rmd_summary(*args).model_dump(),
        "projections": [p.model_dump() for p in project_rmds(*args)],
    }


# --- REFERENCE DATA ---

@app.get("/api/reference/rmd-divisors")
async def get_rmd_divisors():
    """IRS Uniform Lifetime Table divisors."""
    return {
        "divisors": {str(age): divisor for age, divisor in RMD_DIVISORS.items()},
        "fallback_divisor": RMD_FALLBACK_DIVISOR,
    }


@app.get("/api/reference/withdrawal-orders")
async def get_withdrawal_orders():
    """Available withdrawal order strategies."""
    return {
        strategy.value: info
        for strategy, info in WITHDRAWAL_ORDER_DESCRIPTIONS.items()
    }


# --- GUARDRAILS ---

@app.post("/api/guardrails/status")
async def guardrail_status(request: GuardrailRequest):
    """Classify the portfolio into a spending zone."""
    status = calculate_guardrail_status(
        request.portfolio_value,
        request.initial_portfolio_value,
        request.monthly_spending,
        request.config,
    )
    return {
        "status": status.model_dump(),
        "nudge": generate_guardrail_nudge(status),
    }


@app.post("/api/guardrails/shock")
async def guardrail_shock(request: MarketShockRequest):
    """What-if market drop."""
    result = simulate_market_shock(
        request.portfolio_value,
        request.initial_portfolio_value,
        request.monthly_spending,
        request.shock_pct,
        request.config,
    )
    return result.model_dump()


@app.post("/api/guardrails/nudge")
async def guardrail_nudge(request: NudgeRequest):
    """Advisor message for a previously computed status."""
    return {
        "message": generate_guardrail_nudge(
            request.status,
            legacy_goal=request.legacy_goal,
            verbose=request.verbose,
            projected_estate_value=request.projected_estate_value,
            bucket_list_enabled=request.bucket_list_enabled,
        )
    }


# --- BUCKETS ---

@app.post("/api/buckets/analyze")
async def buckets_analyze(request: BucketAnalysisRequest):
    """Bucket coverage plus refill recommendation."""
    allocation = request.allocation
    portfolio_value = request.portfolio_value
    if portfolio_value is None:
        portfolio_value = sum(allocation.model_dump().values())

    analysis = analyze_buckets(
        allocation,
        portfolio_value,
        request.annual_expenses,
        request.target_years,
        request.ytd_returns,
        request.refill_threshold_pct,
        request.refill_enabled,
    )
    return analysis.model_dump()


@app.post("/api/buckets/paycheck")
async def buckets_paycheck(request: PaycheckRequest):
    """
    Monthly paycheck from guaranteed income plus the bucket draw.

    Without an explicit `bucket_withdrawal` the draw covers whatever part
    of monthly expenses guaranteed income does not.
    """
    sources = list(request.guaranteed_sources)
    sources.extend(guaranteed_sources_from_income(request.income_sources))

    withdrawal = request.bucket_withdrawal
    if withdrawal is None:
        withdrawal = calculate_bucket_withdrawal(request.annual_expenses, sources)

    paycheck = calculate_monthly_paycheck(sources, withdrawal, request.effective_tax_rate)
    return paycheck.model_dump()


# --- HOUSEHOLD BUCKET SETTINGS ---

@app.post("/api/households")
async def create_household(request: CreateHouseholdRequest):
    """Create bucket settings for a household."""
    settings = request.settings or BucketSettings()
    bucket_settings_db[settings.id] = settings
    refill_history_db[settings.id] = ()
    logger.info(f"Created household {settings.id}")
    return {"household_id": settings.id, "settings": settings.model_dump()}


@app.get("/api/households/{household_id}/buckets")
async def get_buckets(household_id: str):
    """Get a household's bucket settings."""
    return get_household(household_id).model_dump()


@app.patch("/api/households/{household_id}/buckets")
async def update_buckets(household_id: str, request: UpdateBucketsRequest):
    """Update bucket settings fields."""
    settings = get_household(household_id)

    unknown = sorted(set(request.updates) - set(BucketSettings.model_fields))
    if unknown or "id" in request.updates:
        raise HTTPException(status_code=400, detail=f"Cannot update fields: {unknown or ['id']}")

    # Re-validate the merged settings
    settings = BucketSettings.model_validate({**settings.model_dump(), **request.updates})
    bucket_settings_db[household_id] = settings

    return {"status": "updated", "household_id": household_id, "settings": settings.model_dump()}


@app.post("/api/households/{household_id}/refill/evaluate")
async def refill_evaluate(household_id: str, request: RefillEvaluateRequest):
    """Refill recommendation from stored settings."""
    settings = get_household(household_id)
    return evaluate_refill(settings, request.annual_expenses).model_dump()


@app.post("/api/households/{household_id}/refill/execute")
async def refill_execute(household_id: str, request: RefillExecuteRequest):
    """
    Execute a refill and record it.

    The settings update and the history append are committed together.
    """
    settings = get_household(household_id)
    outcome = execute_refill(
        settings,
        request.source_bucket,
        request.amount,
        request.annual_expenses,
        condition=request.condition,
        refill_date=request.refill_date,
    )

    bucket_settings_db[household_id] = outcome.settings
    refill_history_db[household_id] = append_refill_history(
        refill_history_db.get(household_id, ()), outcome.entry
    )

    return {
        "settings": outcome.settings.model_dump(),
        "entry": outcome.entry.model_dump(),
    }


@app.get("/api/households/{household_id}/refill/history")
async def refill_history(household_id: str):
    """Refill audit trail, newest first."""
    get_household(household_id)
    history: List[RefillHistoryEntry] = list(refill_history_db.get(household_id, ()))
    return {
        "household_id": household_id,
        "entries": [e.model_dump() for e in reversed(history)],
    }


# --- ERROR HANDLERS ---

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"Rejected request to {request.url.path}: {exc}")
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid input", "detail": str(exc)}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if os.getenv("DEBUG") else "An error occurred"
        }
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
