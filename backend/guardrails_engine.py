"""
RetireFlow - Guardrail Policy Engine
====================================
Guyton-Klinger spending guardrails reduced to two thresholds.

    ratio = portfolio value / initial portfolio value
    ratio >= upper threshold  -> prosperity (raise spending)
    ratio <= lower threshold  -> caution    (cut spending)
    otherwise                 -> safe       (no change)

Recommendations are advisory: nothing here touches account state, and the
caller decides whether to adopt the recommended spending.
"""

import logging
from typing import Optional

from planning_constants import DEFAULT_MARKET_SHOCK, GuardrailAction, SpendingZone
from models import GuardrailConfig, GuardrailStatus, MarketShockResult

logger = logging.getLogger(__name__)


def _require_non_negative(**values: float) -> None:
    for name, value in values.items():
        if value < 0:
            raise ValueError(f"{name} must not be negative (got {value})")


def classify_zone(ratio: Optional[float], config: GuardrailConfig) -> SpendingZone:
    """Zone for a current/initial ratio. No ratio means safe."""
    if ratio is None:
        return SpendingZone.SAFE
    if ratio >= config.upper_threshold_pct / 100:
        return SpendingZone.PROSPERITY
    if ratio <= config.lower_threshold_pct / 100:
        return SpendingZone.CAUTION
    return SpendingZone.SAFE


def calculate_guardrail_status(
    portfolio_value: float,
    initial_portfolio_value: float,
    monthly_spending: float,
    config: Optional[GuardrailConfig] = None,
) -> GuardrailStatus:
    """
    Classify portfolio health and recommend a monthly spending figure.

    A zero initial portfolio has no computable ratio: the status is safe
    with no recommendation.
    """
    _require_non_negative(
        portfolio_value=portfolio_value,
        initial_portfolio_value=initial_portfolio_value,
        monthly_spending=monthly_spending,
    )
    config = config or GuardrailConfig()

    ratio = portfolio_value / initial_portfolio_value if initial_portfolio_value > 0 else None
    zone = classify_zone(ratio, config)

    if zone == SpendingZone.PROSPERITY:
        action = GuardrailAction.RAISE
        adjustment_pct = config.spending_raise_pct
    elif zone == SpendingZone.CAUTION:
        action = GuardrailAction.CUT
        adjustment_pct = -config.spending_cut_pct
    else:
        action = GuardrailAction.NONE
        adjustment_pct = 0.0

    recommended = monthly_spending * (1 + adjustment_pct / 100)

    return GuardrailStatus(
        zone=zone,
        triggered_action=action,
        portfolio_value=portfolio_value,
        initial_portfolio_value=initial_portfolio_value,
        portfolio_ratio=ratio,
        current_monthly_spending=monthly_spending,
        recommended_monthly_spending=recommended,
        adjustment_amount=recommended - monthly_spending,
        adjustment_pct=adjustment_pct,
        lower_guardrail_value=initial_portfolio_value * config.lower_threshold_pct / 100,
        upper_guardrail_value=initial_portfolio_value * config.upper_threshold_pct / 100,
    )


def simulate_market_shock(
    portfolio_value: float,
    initial_portfolio_value: float,
    monthly_spending: float,
    shock_pct: float = DEFAULT_MARKET_SHOCK,
    config: Optional[GuardrailConfig] = None,
) -> MarketShockResult:
    """
    What-if: re-run the classification against a portfolio that just
    dropped by `shock_pct` (0.15 = 15%).
    """
    if not 0 <= shock_pct <= 1:
        raise ValueError(f"shock_pct must be between 0 and 1 (got {shock_pct})")

    shocked_value = portfolio_value * (1 - shock_pct)
    status = calculate_guardrail_status(
        shocked_value, initial_portfolio_value, monthly_spending, config
    )

    return MarketShockResult(
        shock_pct=shock_pct,
        portfolio_after_shock=shocked_value,
        original_monthly_budget=monthly_spending,
        shocked_monthly_budget=status.recommended_monthly_spending,
        budget_change=status.recommended_monthly_spending - monthly_spending,
        shocked_zone=status.zone,
        shocked_action=status.triggered_action,
        shocked_status=status,
    )


def calculate_safe_spending_target(
    portfolio_value: float,
    initial_portfolio_value: float,
    initial_monthly_spending: float,
) -> float:
    """Monthly spending that keeps the initial withdrawal rate."""
    _require_non_negative(
        portfolio_value=portfolio_value,
        initial_portfolio_value=initial_portfolio_value,
        initial_monthly_spending=initial_monthly_spending,
    )
    if initial_portfolio_value <= 0:
        return initial_monthly_spending
    return initial_monthly_spending * portfolio_value / initial_portfolio_value


# =============================================================================
# ADVISOR NUDGES
# =============================================================================

def _money(amount: float) -> str:
    return f"${amount:,.0f}"


def generate_guardrail_nudge(
    status: GuardrailStatus,
    legacy_goal: Optional[float] = None,
    verbose: bool = False,
    projected_estate_value: Optional[float] = None,
    bucket_list_enabled: bool = False,
) -> str:
    """
    One human-readable message, led by the most severe finding.

    When a legacy goal is supplied and the projected estate (defaults to
    the current portfolio value) falls short of it, a legacy warning is
    appended.
    """
    if legacy_goal is not None and legacy_goal < 0:
        raise ValueError("legacy_goal must not be negative")

    estate = projected_estate_value if projected_estate_value is not None else status.portfolio_value
    legacy_short = legacy_goal is not None and legacy_goal > 0 and estate < legacy_goal

    if status.zone == SpendingZone.CAUTION:
        message = (
            f"Your portfolio has dipped below the safety threshold. To protect your "
            f"long-term security, consider a temporary {abs(status.adjustment_pct):.0f}% "
            f"spending reduction (about {_money(abs(status.adjustment_amount))}/month, "
            f"to {_money(status.recommended_monthly_spending)}/month). This will help your "
            f"portfolio recover while keeping your retirement on track."
        )
    elif status.zone == SpendingZone.PROSPERITY:
        message = (
            f"Good news! Your portfolio is ahead of schedule. You have "
            f"{_money(abs(status.adjustment_amount))} extra in \"guilt-free\" spending "
            f"this month."
        )
        earmarks = []
        if legacy_goal and not legacy_short:
            earmarks.append("your \"Legacy Goal\"")
        if bucket_list_enabled:
            earmarks.append("a \"Bucket List\" trip")
        if earmarks:
            message += f" Would you like to earmark this for {' or '.join(earmarks)}?"
    elif status.portfolio_ratio is None:
        message = (
            f"Guardrails need a starting portfolio value before they can be evaluated. "
            f"Keep spending {_money(status.current_monthly_spending)}/month for now."
        )
    else:
        message = (
            f"You're within your guardrails. Your current spending of "
            f"{_money(status.current_monthly_spending)}/month is sustainable."
        )

    if legacy_short:
        message += (
            f" Heads up: your projected estate of {_money(estate)} is "
            f"{_money(legacy_goal - estate)} short of your {_money(legacy_goal)} legacy goal."
        )

    if verbose and status.portfolio_ratio is not None and status.initial_portfolio_value > 0:
        lower_pct = status.lower_guardrail_value / status.initial_portfolio_value * 100
        upper_pct = status.upper_guardrail_value / status.initial_portfolio_value * 100
        message += (
            f" (Portfolio at {status.portfolio_ratio * 100:.1f}% of its starting value "
            f"{_money(status.initial_portfolio_value)}; guardrails at {lower_pct:.0f}% "
            f"and {upper_pct:.0f}%.)"
        )

    logger.debug(f"Guardrail nudge ({status.zone.value}): {message}")
    return message
