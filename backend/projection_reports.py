"""
RetireFlow - Projection Reports
===============================
Turns withdrawal summaries into tables and lifetime figures for the
chart/report layer. Pure read-only transforms.
"""

from typing import Dict, List, Optional, Sequence

import pandas as pd

from models import Account, AnnualWithdrawalSummary, ProjectionSummary


def get_withdrawal_chart_data(
    summaries: Sequence[AnnualWithdrawalSummary],
    accounts: Optional[Sequence[Account]] = None,
) -> pd.DataFrame:
    """
    One row per year with the amount drawn from each account.

    Account columns combine RMD and gap-filling draws and are labelled by
    account name (falling back to the id).
    """
    names: Dict[str, str] = {}
    for account in accounts or []:
        names[account.id] = account.name or account.id

    rows = []
    for s in summaries:
        row = {
            "year": s.year,
            "age": s.age,
            "rmd": s.total_rmd,
            "gap_filled": s.funded_gap,
            "unfunded": s.unfunded_gap,
        }
        for rmd in s.rmd_by_account:
            label = names.get(rmd.account_id, rmd.account_name or rmd.account_id)
            row[label] = row.get(label, 0.0) + rmd.rmd_amount
        for w in s.withdrawals:
            label = names.get(w.account_id, w.account_name or w.account_id)
            row[label] = row.get(label, 0.0) + w.withdrawal_amount
        rows.append(row)

    if not rows:
        return pd.DataFrame(columns=["year", "age", "rmd", "gap_filled", "unfunded"])
    return pd.DataFrame(rows).fillna(0.0)


def get_balance_table(summaries: Sequence[AnnualWithdrawalSummary]) -> pd.DataFrame:
    """Ending balance per account (columns) by age (index)."""
    records = {
        s.age: {b.account_id: b.balance for b in s.ending_balances}
        for s in summaries
    }
    frame = pd.DataFrame.from_dict(records, orient="index")
    frame.index.name = "age"
    return frame


def _depletion_age(
    summaries: Sequence[AnnualWithdrawalSummary],
    drawable_ids: List[str],
) -> Optional[int]:
    if not drawable_ids:
        return None
    for s in summaries:
        balances = {b.account_id: b.balance for b in s.ending_balances}
        if all(balances.get(i, 0.0) <= 0 for i in drawable_ids):
            return s.age
    return None


def summarize_projection(
    summaries: Sequence[AnnualWithdrawalSummary],
    accounts: Sequence[Account],
) -> ProjectionSummary:
    """Lifetime totals plus the first shortfall and depletion ages."""
    first_shortfall = next((s.age for s in summaries if s.unfunded_gap > 0), None)
    drawable = [a.id for a in accounts if not a.excluded]

    return ProjectionSummary(
        years_projected=len(summaries),
        lifetime_withdrawals=sum(s.total_withdrawals for s in summaries),
        lifetime_rmd=sum(s.total_rmd for s in summaries),
        lifetime_debt=sum(s.unfunded_gap for s in summaries),
        first_shortfall_age=first_shortfall,
        depletion_age=_depletion_age(summaries, drawable),
        ending_portfolio_value=summaries[-1].ending_portfolio_value if summaries else 0.0,
    )
