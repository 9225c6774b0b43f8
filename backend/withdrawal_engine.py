"""
RetireFlow - Withdrawal Sequencing Engine
=========================================
Draws each year's funding gap from typed accounts in a policy-defined order.

Per simulated year:
1. Mandatory RMDs from non-excluded pretax accounts
2. RMD dollars count toward the gap first
3. Remaining gap drawn in strategy order (lowest expected return first
   within a tier)
4. Whatever no eligible account can cover becomes unfunded gap
   ("lifetime debt") and is never retried
5. Growth applied to post-withdrawal balances

A depleted portfolio is not an error: it shows up as unfunded gap.
Caller account objects are never mutated; balances live in a working copy.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from planning_constants import (
    TAXABLE_GAIN_FRACTION,
    TaxType,
    WithdrawalOrderStrategy,
    get_tax_type_order,
)
from models import (
    Account,
    AccountBalance,
    AnnualWithdrawalSummary,
    CustomOrderEntry,
    ExcessIncomeSettings,
    ProjectionRequest,
    RMDResult,
    WithdrawalResult,
)
from rmd_calculator import calculate_rmd, get_rmd_divisor, get_rmd_start_age

logger = logging.getLogger(__name__)


# =============================================================================
# RMDs
# =============================================================================

def calculate_annual_rmds(
    age: int,
    birth_year: int,
    accounts: Sequence[Account],
) -> List[RMDResult]:
    """RMDs owed this year by every non-excluded pretax account."""
    if age < get_rmd_start_age(birth_year).age:
        return []

    results = []
    for account in accounts:
        if account.tax_type != TaxType.PRETAX or account.excluded:
            continue
        rmd_amount = calculate_rmd(age, account.balance)
        if rmd_amount <= 0:
            continue
        results.append(RMDResult(
            account_id=account.id,
            account_name=account.name,
            rmd_amount=rmd_amount,
            prior_year_balance=account.balance,
            divisor=get_rmd_divisor(age),
        ))
    return results


# =============================================================================
# DRAW ORDER
# =============================================================================

def get_sorted_accounts_for_withdrawal(
    accounts: Sequence[Account],
    custom_order: Optional[Sequence[CustomOrderEntry]] = None,
    order_strategy: WithdrawalOrderStrategy = WithdrawalOrderStrategy.TRADITIONAL,
) -> List[Account]:
    """
    Expand a strategy into a concrete draw sequence.

    Excluded and empty accounts are dropped. Under the custom strategy
    unlisted accounts go last. Ties sort by ascending expected return.
    """
    eligible = [a for a in accounts if not a.excluded and a.balance > 0]

    if order_strategy == WithdrawalOrderStrategy.CUSTOM:
        priorities = {entry.account_id: entry.priority for entry in (custom_order or [])}
        return sorted(
            eligible,
            key=lambda a: (priorities.get(a.id, math.inf), a.expected_return),
        )

    type_order = get_tax_type_order(order_strategy)
    return sorted(
        eligible,
        key=lambda a: (type_order.index(a.tax_type), a.expected_return),
    )


def _taxable_portion(tax_type: TaxType, amount: float) -> float:
    if tax_type == TaxType.PRETAX:
        return amount
    if tax_type == TaxType.TAXABLE:
        return amount * TAXABLE_GAIN_FRACTION
    if tax_type == TaxType.ROTH:
        return 0.0
    raise ValueError(f"Unknown tax type: {tax_type}")


# =============================================================================
# GAP FILLING
# =============================================================================

def process_withdrawals(
    spending_gap: float,
    accounts: Sequence[Account],
    custom_order: Optional[Sequence[CustomOrderEntry]] = None,
    order_strategy: WithdrawalOrderStrategy = WithdrawalOrderStrategy.TRADITIONAL,
) -> Tuple[List[WithdrawalResult], float, Dict[str, float]]:
    """
    Fill `spending_gap` from `accounts`.

    Returns:
        (withdrawals, unfunded_gap, balances by account id)
    """
    balances = {a.id: a.balance for a in accounts}
    withdrawals = []
    remaining_gap = max(0.0, spending_gap)

    for account in get_sorted_accounts_for_withdrawal(accounts, custom_order, order_strategy):
        if remaining_gap <= 0:
            break

        available = balances[account.id]
        amount = min(remaining_gap, available)
        if amount <= 0:
            continue

        balances[account.id] = available - amount
        remaining_gap -= amount

        withdrawals.append(WithdrawalResult(
            account_id=account.id,
            account_name=account.name,
            tax_type=account.tax_type,
            withdrawal_amount=amount,
            remaining_balance=balances[account.id],
            taxable_amount=_taxable_portion(account.tax_type, amount),
        ))

    return withdrawals, remaining_gap, balances


def process_annual_withdrawals(
    year: int,
    age: int,
    birth_year: int,
    spending_gap: float,
    accounts: Sequence[Account],
    custom_order: Optional[Sequence[CustomOrderEntry]] = None,
    order_strategy: WithdrawalOrderStrategy = WithdrawalOrderStrategy.TRADITIONAL,
    excess_settings: Optional[ExcessIncomeSettings] = None,
    year_returns: Optional[Dict[str, float]] = None,
) -> AnnualWithdrawalSummary:
    """
    Run one year: RMDs, excess savings, gap filling, then growth.

    `accounts` carry the opening balances for the year. `year_returns`
    overrides each listed account's expected return for this year only.
    Ending balances in the summary include the year's growth.
    """
    # Step 1: RMDs come out first, whether or not there is a gap
    rmd_results = calculate_annual_rmds(age, birth_year, accounts)
    total_rmd = sum(r.rmd_amount for r in rmd_results)

    balances = {a.id: a.balance for a in accounts}
    for rmd in rmd_results:
        balances[rmd.account_id] -= rmd.rmd_amount

    # Step 2: RMD dollars count toward the gap
    need = max(0.0, spending_gap)
    gap_after_rmd = max(0.0, need - total_rmd)
    rmd_excess = max(0.0, total_rmd - need)
    surplus = max(0.0, -spending_gap)

    # Surplus income and excess RMD go to excess savings when enabled,
    # otherwise the excess RMD is reported as spent outside the model
    excess_saved = 0.0
    excess_spent = rmd_excess
    if excess_settings is not None and excess_settings.enabled:
        save_share = excess_settings.save_percentage / 100
        excess_saved = (rmd_excess + surplus) * save_share
        excess_spent = rmd_excess * (1 - save_share)
        if excess_saved > 0:
            balances[excess_settings.target_account_id] += excess_saved

    # Steps 3-5: gap-filling draws
    withdrawals: List[WithdrawalResult] = []
    unfunded_gap = 0.0
    if gap_after_rmd > 0:
        working = [a.model_copy(update={"balance": balances[a.id]}) for a in accounts]
        withdrawals, unfunded_gap, balances = process_withdrawals(
            gap_after_rmd, working, custom_order, order_strategy
        )

    # Step 6: growth on post-withdrawal balances
    ending_balances = []
    for account in accounts:
        rate = account.expected_return
        if year_returns and account.id in year_returns:
            rate = year_returns[account.id]
        ending_balances.append(AccountBalance(
            account_id=account.id,
            balance=max(0.0, balances[account.id] * (1 + rate)),
        ))

    total_withdrawals = sum(w.withdrawal_amount for w in withdrawals)
    total_taxable = total_rmd + sum(w.taxable_amount for w in withdrawals)

    logger.debug(
        f"[{year}] age {age}: gap={spending_gap:,.2f} rmd={total_rmd:,.2f} "
        f"drawn={total_withdrawals:,.2f} unfunded={unfunded_gap:,.2f}"
    )

    # Step 7
    return AnnualWithdrawalSummary(
        year=year,
        age=age,
        total_rmd=total_rmd,
        rmd_by_account=tuple(rmd_results),
        rmd_excess=rmd_excess,
        excess_saved=excess_saved,
        excess_spent=excess_spent,
        spending_gap=spending_gap,
        gap_after_rmd=gap_after_rmd,
        withdrawals=tuple(withdrawals),
        total_withdrawals=total_withdrawals,
        funded_gap=need - unfunded_gap,
        unfunded_gap=unfunded_gap,
        ending_balances=tuple(ending_balances),
        total_taxable_withdrawals=total_taxable,
    )


# =============================================================================
# LIFETIME PROJECTION
# =============================================================================

class WithdrawalSequencer:
    """
    Year-by-year withdrawal projection for one validated plan.

    Example:
        sequencer = WithdrawalSequencer(request)
        summaries = sequencer.project()
    """

    def __init__(self, request: ProjectionRequest):
        self.request = request

    def project(self) -> List[AnnualWithdrawalSummary]:
        req = self.request
        logger.info(
            f"Projecting withdrawals ages {req.current_age}-{req.end_age} "
            f"across {len(req.accounts)} accounts ({req.order_strategy.value})"
        )

        balances = {a.id: a.balance for a in req.accounts}
        summaries = []
        shortfall_logged = False

        for offset, gap in enumerate(req.per_year_gaps):
            age = req.current_age + offset
            year = req.birth_year + age
            opening = [a.model_copy(update={"balance": balances[a.id]}) for a in req.accounts]
            year_returns = req.annual_returns[offset] if req.annual_returns else None

            summary = process_annual_withdrawals(
                year,
                age,
                req.birth_year,
                gap,
                opening,
                req.custom_order,
                req.order_strategy,
                req.excess_settings,
                year_returns,
            )

            for entry in summary.ending_balances:
                balances[entry.account_id] = entry.balance

            if summary.unfunded_gap > 0 and not shortfall_logged:
                logger.warning(
                    f"Plan shortfall begins at age {age} ({year}): "
                    f"${summary.unfunded_gap:,.2f} unfunded"
                )
                shortfall_logged = True

            summaries.append(summary)

        return summaries


def project_request(request: ProjectionRequest) -> List[AnnualWithdrawalSummary]:
    """Project a prebuilt request."""
    return WithdrawalSequencer(request).project()


def project_lifetime_withdrawals(
    current_age: int,
    birth_year: int,
    end_age: int,
    accounts: Sequence[Account],
    per_year_gaps: Sequence[float],
    custom_order: Optional[Sequence[CustomOrderEntry]] = None,
    order_strategy: WithdrawalOrderStrategy = WithdrawalOrderStrategy.TRADITIONAL,
    excess_settings: Optional[ExcessIncomeSettings] = None,
    annual_returns: Optional[Sequence[Dict[str, float]]] = None,
) -> List[AnnualWithdrawalSummary]:
    """
    Project withdrawals from `current_age` through `end_age`.

    Raises:
        ValueError: the plan is malformed (unknown account in the custom
            order, negative age, gap count not matching the age range...)
    """
    request = ProjectionRequest(
        current_age=current_age,
        birth_year=birth_year,
        end_age=end_age,
        accounts=list(accounts),
        per_year_gaps=list(per_year_gaps),
        custom_order=list(custom_order or []),
        order_strategy=order_strategy,
        excess_settings=excess_settings,
        annual_returns=list(annual_returns) if annual_returns is not None else None,
    )
    return project_request(request)
