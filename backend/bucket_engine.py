"""
RetireFlow - Three-Bucket Strategy Engine
=========================================
Partitions a portfolio into liquidity tranches and manages refills:

- Bucket 1 (Cash): 1-3 years of expenses in liquid assets
- Bucket 2 (Bonds): 4-10 years in fixed income
- Bucket 3 (Growth): 11+ years in equities

Refill Logic (Waterfall):
A: If Bucket 3 is UP for the year, sell gains to refill Bucket 1
B: If Bucket 3 is DOWN but Bucket 2 is UP, sell bonds to refill Bucket 1
C: If BOTH are down, suspend refills and draw from Cash only

Only harvest gains, never sell into a loss.
"""

import logging
from datetime import date
from typing import List, Optional, Sequence, Tuple, Union

from planning_constants import (
    BONDS_REFILL_CAP,
    BUCKET_CONFIGS,
    CASH_YTD_RETURN,
    DEFAULT_EFFECTIVE_TAX_RATE,
    GROWTH_REFILL_CAP,
    GUARANTEED_INCOME_CATEGORIES,
    PERCENT_FULL_DISPLAY_CAP,
    UNDERFUNDED_PCT,
    BucketType,
    PaycheckSourceType,
    RefillCondition,
    to_monthly_amount,
)
from models import (
    AssetAllocation,
    BucketAnalysis,
    BucketFigures,
    BucketSettings,
    BucketState,
    BucketTargets,
    GuaranteedIncomeSource,
    IncomeSource,
    PaycheckBreakdown,
    PaycheckSource,
    RefillAction,
    RefillHistoryEntry,
    RefillOutcome,
)

logger = logging.getLogger(__name__)

SOURCE_BUCKET_KEYS = {
    BucketType.BONDS: "bucket2",
    BucketType.GROWTH: "bucket3",
}


# =============================================================================
# BUCKET STATUS
# =============================================================================

def map_allocation_to_buckets(allocation: AssetAllocation) -> BucketFigures:
    """Cash -> cash, bonds -> bonds, stocks and real estate -> growth."""
    return BucketFigures(
        cash=allocation.cash,
        bonds=allocation.bonds,
        growth=allocation.domestic_stocks + allocation.intl_stocks + allocation.real_estate,
    )


def calculate_bucket_status(
    current_values: BucketFigures,
    target_years: BucketTargets,
    ytd_returns: BucketFigures,
    annual_expenses: float,
) -> List[BucketState]:
    """
    Coverage of each tranche against its target years.

    Zero or negative expenses make coverage undefined; every tranche is
    then reported as fully covered.
    """
    states = []
    for config in BUCKET_CONFIGS:
        bucket = config["bucket"]
        value = current_values.get(bucket)
        years = target_years.get(bucket)

        if annual_expenses > 0:
            target_value = annual_expenses * years
            years_covered = value / annual_expenses
            percent_full = (value / target_value) * 100 if target_value > 0 else 100.0
            needs_replenishment = years_covered < years
        else:
            target_value = 0.0
            years_covered = years
            percent_full = 100.0
            needs_replenishment = False

        states.append(BucketState(
            bucket=bucket,
            current_value=value,
            target_value=target_value,
            target_years=years,
            years_covered=years_covered,
            percent_full=min(percent_full, PERCENT_FULL_DISPLAY_CAP),
            ytd_return=ytd_returns.get(bucket),
            is_underfunded=percent_full < UNDERFUNDED_PCT,
            needs_replenishment=needs_replenishment,
        ))
    return states


def _state(buckets: Sequence[BucketState], bucket: BucketType) -> BucketState:
    for state in buckets:
        if state.bucket == bucket:
            return state
    raise ValueError(f"Bucket analysis is missing the {bucket.value} bucket")


# =============================================================================
# REFILL WATERFALL
# =============================================================================

def determine_refill_action(
    buckets: Sequence[BucketState],
    refill_threshold_pct: float = 100.0,
    refill_enabled: bool = True,
) -> RefillAction:
    """
    Pick the refill source (The Waterfall).

    Refills are considered only when enabled and when the cash bucket has
    fallen to or below `refill_threshold_pct` of its target.
    """
    cash = _state(buckets, BucketType.CASH)
    bonds = _state(buckets, BucketType.BONDS)
    growth = _state(buckets, BucketType.GROWTH)

    if not refill_enabled:
        return RefillAction(reason="Automatic refills are turned off.")

    refill_needed = max(0.0, cash.target_value - cash.current_value)
    if refill_needed <= 0:
        return RefillAction(reason="Cash bucket is fully funded. No refill needed.")

    if cash.current_value > cash.target_value * refill_threshold_pct / 100:
        return RefillAction(
            reason=f"Cash bucket is above the {refill_threshold_pct:.0f}% refill threshold. "
                   f"No refill needed yet.",
        )

    # Condition A: Bucket 3 (Growth) is UP for the year
    if growth.ytd_return > 0:
        available_gains = growth.current_value * (growth.ytd_return / 100)
        amount = min(refill_needed, available_gains, growth.current_value * GROWTH_REFILL_CAP)
        return RefillAction(
            condition=RefillCondition.GROWTH_UP,
            source_bucket=BucketType.GROWTH,
            amount=amount,
            reason=f"Growth bucket is up {growth.ytd_return:.1f}% YTD. Sell gains to refill cash.",
            can_execute=amount > 0,
        )

    # Condition B: Growth is DOWN but Bonds is UP
    if bonds.ytd_return > 0:
        amount = min(refill_needed, bonds.current_value * BONDS_REFILL_CAP)
        return RefillAction(
            condition=RefillCondition.BONDS_UP,
            source_bucket=BucketType.BONDS,
            amount=amount,
            reason=f"Growth is down {abs(growth.ytd_return):.1f}%, but bonds are up "
                   f"{bonds.ytd_return:.1f}%. Sell bonds to preserve equity.",
            can_execute=amount > 0,
        )

    # Condition C: BOTH are down - Sequence Risk Protection
    return RefillAction(
        condition=RefillCondition.PROTECTED,
        reason=f"Both growth ({growth.ytd_return:.1f}%) and bonds ({bonds.ytd_return:.1f}%) "
               f"are down. Suspend refills to avoid selling at a loss.",
    )


def analyze_buckets(
    allocation: AssetAllocation,
    portfolio_value: float,
    annual_expenses: float,
    target_years: Optional[BucketTargets] = None,
    ytd_returns: Optional[BucketFigures] = None,
    refill_threshold_pct: float = 100.0,
    refill_enabled: bool = True,
) -> BucketAnalysis:
    """Run full bucket analysis. Same inputs always give the same output."""
    target_years = target_years or BucketTargets()
    ytd_returns = ytd_returns or BucketFigures(cash=CASH_YTD_RETURN)

    values = map_allocation_to_buckets(allocation)
    buckets = calculate_bucket_status(values, target_years, ytd_returns, annual_expenses)
    refill = determine_refill_action(buckets, refill_threshold_pct, refill_enabled)

    return BucketAnalysis(
        buckets=buckets,
        total_portfolio_value=portfolio_value,
        annual_expenses=annual_expenses,
        expenses_defined=annual_expenses > 0,
        total_years_covered=sum(b.years_covered for b in buckets),
        refill_recommendation=refill,
        sequence_risk_protected=refill.condition == RefillCondition.PROTECTED,
    )


# =============================================================================
# REFILL EXECUTION (caller-orchestrated)
# =============================================================================

def bucket_states_from_settings(settings: BucketSettings, annual_expenses: float) -> List[BucketState]:
    return calculate_bucket_status(
        BucketFigures(
            cash=settings.bucket1_current_value,
            bonds=settings.bucket2_current_value,
            growth=settings.bucket3_current_value,
        ),
        BucketTargets(
            cash=settings.bucket1_target_years,
            bonds=settings.bucket2_target_years,
            growth=settings.bucket3_target_years,
        ),
        BucketFigures(
            cash=CASH_YTD_RETURN,
            bonds=settings.bucket2_ytd_return,
            growth=settings.bucket3_ytd_return,
        ),
        annual_expenses,
    )


def evaluate_refill(settings: BucketSettings, annual_expenses: float) -> RefillAction:
    """Refill recommendation for a household's stored bucket settings."""
    states = bucket_states_from_settings(settings, annual_expenses)
    return determine_refill_action(states, settings.refill_threshold_pct, settings.refill_enabled)


def execute_refill(
    settings: BucketSettings,
    source_bucket: BucketType,
    amount: float,
    annual_expenses: float,
    condition: Optional[RefillCondition] = None,
    refill_date: Optional[date] = None,
) -> RefillOutcome:
    """
    Move `amount` from bonds or growth into cash.

    Returns new settings plus the audit entry; `settings` itself is left
    untouched.

    Raises:
        ValueError: refills are off, the source is not up YTD, cash is
            above the refill threshold, the condition does not match the
            source, or the amount is not within
            (0, source value].
    """
    if source_bucket not in SOURCE_BUCKET_KEYS:
        raise ValueError(f"Refills come from bonds or growth, not {source_bucket}")
    if not settings.refill_enabled:
        raise ValueError("Refills are disabled for this household")

    if source_bucket == BucketType.GROWTH:
        source_value = settings.bucket3_current_value
        source_return = settings.bucket3_ytd_return
    else:
        source_value = settings.bucket2_current_value
        source_return = settings.bucket2_ytd_return

    if source_return <= 0:
        raise ValueError(
            f"{source_bucket.value.title()} bucket is down {source_return:.1f}% YTD; "
            "refills never sell into a loss"
        )
    if amount <= 0:
        raise ValueError("Refill amount must be positive")
    if amount > source_value:
        raise ValueError(
            f"Refill amount {amount:,.2f} exceeds the {source_bucket.value} bucket's "
            f"value {source_value:,.2f}"
        )

    cash = _state(bucket_states_from_settings(settings, annual_expenses), BucketType.CASH)
    threshold_value = cash.target_value * settings.refill_threshold_pct / 100
    if annual_expenses <= 0 or cash.current_value > threshold_value:
        raise ValueError(
            f"Cash bucket coverage is above the {settings.refill_threshold_pct:.0f}% "
            "refill threshold"
        )

    expected = (RefillCondition.GROWTH_UP if source_bucket == BucketType.GROWTH
                else RefillCondition.BONDS_UP)
    if condition is None:
        condition = expected
    elif condition != expected:
        raise ValueError(
            f"Condition {condition.value} does not match a refill from the "
            f"{source_bucket.value} bucket (expected {expected.value})"
        )

    source_key = SOURCE_BUCKET_KEYS[source_bucket]
    new_cash = settings.bucket1_current_value + amount
    when = refill_date or date.today()

    updated = settings.model_copy(update={
        "bucket1_current_value": new_cash,
        f"{source_key}_current_value": source_value - amount,
        "last_refill_date": when,
        "last_refill_amount": amount,
        "last_refill_source": source_key,
    })

    entry = RefillHistoryEntry(
        refill_date=when,
        source_bucket=source_key,
        source_return_at_refill=source_return,
        amount=amount,
        condition_triggered=condition,
        bucket1_balance_after=new_cash,
    )

    logger.info(
        f"[{settings.id}] Refilled ${amount:,.2f} from {source_key} "
        f"(condition {condition.value}), cash now ${new_cash:,.2f}"
    )
    return RefillOutcome(settings=updated, entry=entry)


def append_refill_history(
    history: Sequence[RefillHistoryEntry],
    entry: RefillHistoryEntry,
) -> Tuple[RefillHistoryEntry, ...]:
    """New history with `entry` appended; existing entries are never edited."""
    return tuple(history) + (entry,)


# =============================================================================
# MONTHLY PAYCHECK
# =============================================================================

def guaranteed_sources_from_income(income_sources: Sequence[IncomeSource]) -> List[GuaranteedIncomeSource]:
    """Active Social Security, pension and annuity income, as monthly amounts."""
    return [
        GuaranteedIncomeSource(
            name=s.name,
            monthly_amount=to_monthly_amount(s.amount, s.frequency),
        )
        for s in income_sources
        if s.is_active and s.category in GUARANTEED_INCOME_CATEGORIES
    ]


def calculate_bucket_withdrawal(
    annual_expenses: float,
    guaranteed_sources: Sequence[GuaranteedIncomeSource],
) -> float:
    """Monthly draw from Bucket 1 needed on top of guaranteed income."""
    guaranteed = sum(s.monthly_amount for s in guaranteed_sources)
    return max(0.0, annual_expenses / 12 - guaranteed)


def _as_guaranteed(source: Union[GuaranteedIncomeSource, IncomeSource]) -> Optional[GuaranteedIncomeSource]:
    if isinstance(source, GuaranteedIncomeSource):
        return source
    if not source.is_active or source.category not in GUARANTEED_INCOME_CATEGORIES:
        return None
    return GuaranteedIncomeSource(
        name=source.name,
        monthly_amount=to_monthly_amount(source.amount, source.frequency),
    )


def calculate_monthly_paycheck(
    guaranteed_sources: Sequence[Union[GuaranteedIncomeSource, IncomeSource]],
    bucket_withdrawal: float,
    effective_tax_rate: float = DEFAULT_EFFECTIVE_TAX_RATE,
) -> PaycheckBreakdown:
    """
    Blend guaranteed income with the bucket draw into a monthly paycheck.

    `IncomeSource` entries are normalized to monthly from their own
    frequency; inactive ones and non-guaranteed categories are skipped.
    """
    if bucket_withdrawal < 0:
        raise ValueError("bucket_withdrawal must not be negative")
    if not 0 <= effective_tax_rate < 1:
        raise ValueError(f"effective_tax_rate must be in [0, 1) (got {effective_tax_rate})")

    monthly = [g for g in (_as_guaranteed(s) for s in guaranteed_sources) if g is not None]
    guaranteed_income = sum(s.monthly_amount for s in monthly)
    gross_total = guaranteed_income + bucket_withdrawal
    estimated_taxes = gross_total * effective_tax_rate

    sources = [
        PaycheckSource(name=s.name, amount=s.monthly_amount, source_type=PaycheckSourceType.GUARANTEED)
        for s in monthly
    ]
    if bucket_withdrawal > 0:
        sources.append(PaycheckSource(
            name="Bucket Withdrawal",
            amount=bucket_withdrawal,
            source_type=PaycheckSourceType.VARIABLE,
        ))

    return PaycheckBreakdown(
        guaranteed_income=guaranteed_income,
        bucket_withdrawal=bucket_withdrawal,
        gross_total=gross_total,
        effective_tax_rate=effective_tax_rate,
        estimated_taxes=estimated_taxes,
        net_paycheck=gross_total - estimated_taxes,
        sources=sources,
    )
