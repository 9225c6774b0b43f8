"""
RetireFlow - Data Models
========================
Pydantic models for the retirement cash-flow simulation engines.

These models serve as the contract between:
- The account store and cash-flow projector (inputs)
- The withdrawal, guardrail and bucket engines
- The chart/report layer (outputs)

Inputs validate on construction so a malformed plan fails fast at the
boundary instead of partway through a projection.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
import uuid

from planning_constants import (
    BUCKET_DEFAULTS,
    GUARDRAIL_DEFAULTS,
    BucketType,
    GuardrailAction,
    IncomeCategory,
    IncomeFrequency,
    PaycheckSourceType,
    RefillCondition,
    SpendingZone,
    TaxType,
    WithdrawalOrderStrategy,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ACCOUNT / PROJECTION INPUTS
# =============================================================================

class Account(BaseModel):
    """A single account in the withdrawal domain."""
    id: str
    name: str = ""
    tax_type: TaxType
    balance: float = Field(default=0.0, ge=0)
    expected_return: float = Field(default=0.0, gt=-1, description="Annual growth, e.g. 0.06")
    excluded: bool = Field(default=False, description="Never auto-drawn")


class CustomOrderEntry(BaseModel):
    """Explicit priority for one account under the custom strategy."""
    account_id: str
    priority: int = Field(description="Lower = drawn first")


class ExcessIncomeSettings(BaseModel):
    """Where surplus income (negative gaps, excess RMDs) goes."""
    enabled: bool = False
    save_percentage: float = Field(default=100.0, ge=0, le=100)
    target_account_id: Optional[str] = None

    @model_validator(mode='after')
    def require_target_when_enabled(self):
        if self.enabled and not self.target_account_id:
            raise ValueError("Excess savings enabled without a target_account_id")
        return self


class ProjectionRequest(BaseModel):
    """
    Everything a lifetime withdrawal projection needs.

    `per_year_gaps[i]` is the funding gap for age `current_age + i`
    (negative = surplus). `annual_returns[i]`, when given, maps account id
    to that year's realized return and overrides `expected_return`.
    """
    current_age: int = Field(ge=0, le=120)
    birth_year: int = Field(ge=1900, le=2100)
    end_age: int = Field(ge=0, le=120)
    accounts: List[Account] = Field(default_factory=list)
    per_year_gaps: List[float] = Field(default_factory=list)
    custom_order: List[CustomOrderEntry] = Field(default_factory=list)
    order_strategy: WithdrawalOrderStrategy = WithdrawalOrderStrategy.TRADITIONAL
    excess_settings: Optional[ExcessIncomeSettings] = None
    annual_returns: Optional[List[Dict[str, float]]] = None

    @property
    def num_years(self) -> int:
        return self.end_age - self.current_age + 1

    @model_validator(mode='after')
    def validate_contract(self):
        """Reject malformed plans on construction."""
        if self.end_age < self.current_age:
            raise ValueError(
                f"end_age ({self.end_age}) must not be before current_age ({self.current_age})"
            )

        account_ids = [a.id for a in self.accounts]
        dupes = sorted({i for i in account_ids if account_ids.count(i) > 1})
        if dupes:
            raise ValueError(f"Duplicate account ids: {dupes}")
        known = set(account_ids)

        if len(self.per_year_gaps) != self.num_years:
            raise ValueError(
                f"per_year_gaps has {len(self.per_year_gaps)} entries, "
                f"expected {self.num_years} (ages {self.current_age}-{self.end_age})"
            )

        listed = [entry.account_id for entry in self.custom_order]
        unknown = sorted(set(listed) - known)
        if unknown:
            raise ValueError(f"Custom order references unknown account ids: {unknown}")
        repeated = sorted({i for i in listed if listed.count(i) > 1})
        if repeated:
            raise ValueError(f"Custom order lists accounts more than once: {repeated}")

        if self.excess_settings and self.excess_settings.enabled:
            if self.excess_settings.target_account_id not in known:
                raise ValueError(
                    f"Excess savings target '{self.excess_settings.target_account_id}' "
                    "is not one of the accounts"
                )

        if self.annual_returns is not None:
            if len(self.annual_returns) != self.num_years:
                raise ValueError(
                    f"annual_returns has {len(self.annual_returns)} entries, "
                    f"expected {self.num_years}"
                )
            for year_returns in self.annual_returns:
                stray = sorted(set(year_returns) - known)
                if stray:
                    raise ValueError(f"annual_returns references unknown account ids: {stray}")
                if any(r <= -1 for r in year_returns.values()):
                    raise ValueError("annual_returns entries must be greater than -1")

        return self


# =============================================================================
# WITHDRAWAL RESULTS
# =============================================================================

class RMDResult(BaseModel):
    """RMD taken from one pretax account in one year."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    account_name: str
    rmd_amount: float
    prior_year_balance: float
    divisor: float


class WithdrawalResult(BaseModel):
    """A gap-filling draw from one account."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    account_name: str
    tax_type: TaxType
    withdrawal_amount: float
    remaining_balance: float
    taxable_amount: float


class AccountBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    balance: float


class AnnualWithdrawalSummary(BaseModel):
    """One simulated year. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    year: int
    age: int

    # RMD details
    total_rmd: float = 0.0
    rmd_by_account: Tuple[RMDResult, ...] = ()
    rmd_excess: float = Field(default=0.0, description="RMD beyond the year's spending need")
    excess_saved: float = Field(default=0.0, description="Surplus credited to the excess account")
    excess_spent: float = Field(default=0.0, description="Unsaved RMD excess, spent outside the model")

    # Gap filling
    spending_gap: float
    gap_after_rmd: float = 0.0
    withdrawals: Tuple[WithdrawalResult, ...] = ()
    total_withdrawals: float = 0.0

    # Outcome
    funded_gap: float = 0.0
    unfunded_gap: float = Field(default=0.0, description="Lifetime debt for the year")
    ending_balances: Tuple[AccountBalance, ...] = ()

    # Tax impact
    total_taxable_withdrawals: float = 0.0

    def balance_of(self, account_id: str) -> float:
        for entry in self.ending_balances:
            if entry.account_id == account_id:
                return entry.balance
        raise KeyError(account_id)

    @computed_field
    @property
    def ending_portfolio_value(self) -> float:
        return sum(b.balance for b in self.ending_balances)


class ProjectionSummary(BaseModel):
    """Lifetime roll-up of a projection."""
    years_projected: int
    lifetime_withdrawals: float
    lifetime_rmd: float
    lifetime_debt: float
    first_shortfall_age: Optional[int] = None
    depletion_age: Optional[int] = None
    ending_portfolio_value: float

    @computed_field
    @property
    def plan_succeeds(self) -> bool:
        return self.lifetime_debt <= 0


# =============================================================================
# MONTE CARLO
# =============================================================================

class MonteCarloRequest(BaseModel):
    """A base projection plus one return path per trial."""
    projection: ProjectionRequest
    return_draws: List[List[Dict[str, float]]] = Field(
        description="trials x years, each year mapping account id -> return"
    )
    parallel: bool = True

    @model_validator(mode='after')
    def require_trials(self):
        if not self.return_draws:
            raise ValueError("At least one trial of return draws is required")
        return self


class MonteCarloResult(BaseModel):
    trials: int
    success_rate: float = Field(description="Share of trials with no lifetime debt, 0-1")
    median_lifetime_debt: float
    worst_lifetime_debt: float
    median_ending_value: float
    ages: List[int]
    percentiles: Dict[str, List[float]] = Field(
        description="p5/p25/p50/p75/p95 ending portfolio value per age"
    )


# =============================================================================
# RMD PROJECTIONS
# =============================================================================

class RMDStartAge(BaseModel):
    age: int
    reason: str


class RMDProjection(BaseModel):
    year: int
    age: int
    prior_year_balance: float
    divisor: float
    rmd_amount: float
    cumulative_rmd: float


class RMDSummary(BaseModel):
    rmd_start_age: int
    first_rmd_year: int
    estimated_first_rmd: float
    lifetime_rmd: float
    peak_rmd_age: int
    peak_rmd_amount: float


# =============================================================================
# GUARDRAIL MODELS
# =============================================================================

class GuardrailConfig(BaseModel):
    """
    Guardrail thresholds as percentages of the initial portfolio value.
    The engine never mutates it.
    """
    model_config = ConfigDict(frozen=True)

    lower_threshold_pct: float = Field(default=GUARDRAIL_DEFAULTS["lower_threshold_pct"], ge=0)
    upper_threshold_pct: float = Field(default=GUARDRAIL_DEFAULTS["upper_threshold_pct"], ge=0)
    spending_cut_pct: float = Field(default=GUARDRAIL_DEFAULTS["spending_cut_pct"], ge=0, le=100)
    spending_raise_pct: float = Field(default=GUARDRAIL_DEFAULTS["spending_raise_pct"], ge=0)

    @model_validator(mode='after')
    def thresholds_ordered(self):
        if self.lower_threshold_pct >= self.upper_threshold_pct:
            raise ValueError(
                "lower_threshold_pct must be below upper_threshold_pct "
                f"({self.lower_threshold_pct} >= {self.upper_threshold_pct})"
            )
        return self


class GuardrailStatus(BaseModel):
    """Derived fresh on each evaluation; nothing is persisted."""
    zone: SpendingZone
    triggered_action: GuardrailAction
    portfolio_value: float
    initial_portfolio_value: float
    portfolio_ratio: Optional[float] = Field(default=None, description="None when not computable")
    current_monthly_spending: float
    recommended_monthly_spending: float
    adjustment_amount: float = Field(description="Positive = can spend more")
    adjustment_pct: float = Field(description="Signed percent change, e.g. -10")
    lower_guardrail_value: float
    upper_guardrail_value: float


class MarketShockResult(BaseModel):
    shock_pct: float
    portfolio_after_shock: float
    original_monthly_budget: float
    shocked_monthly_budget: float
    budget_change: float
    shocked_zone: SpendingZone
    shocked_action: GuardrailAction
    shocked_status: GuardrailStatus


# =============================================================================
# BUCKET MODELS
# =============================================================================

class AssetAllocation(BaseModel):
    """Dollar amounts by asset class."""
    domestic_stocks: float = Field(default=0.0, ge=0)
    intl_stocks: float = Field(default=0.0, ge=0)
    bonds: float = Field(default=0.0, ge=0)
    real_estate: float = Field(default=0.0, ge=0)
    cash: float = Field(default=0.0, ge=0)


class BucketFigures(BaseModel):
    """One number per tranche (values, target years or YTD returns)."""
    cash: float = 0.0
    bonds: float = 0.0
    growth: float = 0.0

    def get(self, bucket: BucketType) -> float:
        return getattr(self, bucket.value)


class BucketTargets(BucketFigures):
    cash: float = Field(default=BUCKET_DEFAULTS["bucket1_target_years"], ge=0)
    bonds: float = Field(default=BUCKET_DEFAULTS["bucket2_target_years"], ge=0)
    growth: float = Field(default=BUCKET_DEFAULTS["bucket3_target_years"], ge=0)


class BucketState(BaseModel):
    bucket: BucketType
    current_value: float
    target_value: float
    target_years: float
    years_covered: float
    percent_full: float
    ytd_return: float
    is_underfunded: bool
    needs_replenishment: bool


class RefillAction(BaseModel):
    condition: Optional[RefillCondition] = Field(default=None, description="None when no refill is considered")
    source_bucket: Optional[BucketType] = None
    amount: float = 0.0
    reason: str
    can_execute: bool = False


class BucketAnalysis(BaseModel):
    buckets: List[BucketState]
    total_portfolio_value: float
    annual_expenses: float
    expenses_defined: bool = Field(description="False when expenses <= 0 and coverage is clamped")
    total_years_covered: float
    refill_recommendation: RefillAction
    sequence_risk_protected: bool

    def bucket(self, bucket: BucketType) -> BucketState:
        for state in self.buckets:
            if state.bucket == bucket:
                return state
        raise KeyError(bucket)


class BucketSettings(BaseModel):
    """Per-household bucket state, persisted by the caller between sessions."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    bucket1_target_years: float = Field(default=BUCKET_DEFAULTS["bucket1_target_years"], ge=0)
    bucket2_target_years: float = Field(default=BUCKET_DEFAULTS["bucket2_target_years"], ge=0)
    bucket3_target_years: float = Field(default=BUCKET_DEFAULTS["bucket3_target_years"], ge=0)

    bucket1_current_value: float = Field(default=0.0, ge=0)
    bucket2_current_value: float = Field(default=0.0, ge=0)
    bucket3_current_value: float = Field(default=0.0, ge=0)

    refill_enabled: bool = True
    refill_threshold_pct: float = Field(default=BUCKET_DEFAULTS["refill_threshold_pct"], ge=0)

    # Percent, e.g. 8 = +8% YTD
    bucket2_ytd_return: float = BUCKET_DEFAULTS["bucket2_ytd_return"]
    bucket3_ytd_return: float = BUCKET_DEFAULTS["bucket3_ytd_return"]

    last_refill_date: Optional[date] = None
    last_refill_amount: float = Field(default=0.0, ge=0)
    last_refill_source: Optional[str] = None


class RefillHistoryEntry(BaseModel):
    """Append-only audit record of one refill."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    refill_date: date
    source_bucket: str = Field(pattern="^(bucket2|bucket3)$")
    source_return_at_refill: float
    amount: float = Field(gt=0)
    condition_triggered: RefillCondition
    bucket1_balance_after: float
    created_at: datetime = Field(default_factory=_utcnow)


class RefillOutcome(BaseModel):
    settings: BucketSettings
    entry: RefillHistoryEntry


# =============================================================================
# PAYCHECK MODELS
# =============================================================================

class IncomeSource(BaseModel):
    """An income stream as stored by the account store."""
    name: str
    category: IncomeCategory = IncomeCategory.OTHER
    amount: float = Field(default=0.0, ge=0)
    frequency: IncomeFrequency = IncomeFrequency.MONTHLY
    is_active: bool = True


class GuaranteedIncomeSource(BaseModel):
    name: str
    monthly_amount: float = Field(ge=0)


class PaycheckSource(BaseModel):
    name: str
    amount: float
    source_type: PaycheckSourceType


class PaycheckBreakdown(BaseModel):
    guaranteed_income: float
    bucket_withdrawal: float
    gross_total: float
    effective_tax_rate: float
    estimated_taxes: float
    net_paycheck: float
    sources: List[PaycheckSource]
