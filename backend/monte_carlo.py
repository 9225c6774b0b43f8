"""
RetireFlow - Monte Carlo Wrapper
================================
Runs the withdrawal projection once per trial of caller-supplied return
draws and aggregates the outcomes.

Return modeling is NOT done here: each trial's per-year, per-account
returns arrive in the request. Trials share nothing, so they run in a
process pool.
"""

import logging
import time
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, Optional, Sequence

import pandas as pd

from models import (
    AnnualWithdrawalSummary,
    MonteCarloRequest,
    MonteCarloResult,
    ProjectionRequest,
)
from withdrawal_engine import WithdrawalSequencer

logger = logging.getLogger(__name__)

PERCENTILES = {"p5": 0.05, "p25": 0.25, "p50": 0.50, "p75": 0.75, "p95": 0.95}


def _run_trial(request: ProjectionRequest) -> List[AnnualWithdrawalSummary]:
    """Worker entry point (top-level so it pickles)."""
    return WithdrawalSequencer(request).project()


def build_trial_requests(
    base: ProjectionRequest,
    return_draws: Sequence[Sequence[Dict[str, float]]],
) -> List[ProjectionRequest]:
    """One validated request per trial; a malformed draw fails fast."""
    trials = []
    for draws in return_draws:
        payload = base.model_dump()
        payload["annual_returns"] = [dict(year) for year in draws]
        trials.append(ProjectionRequest.model_validate(payload))
    return trials


def aggregate_trials(trial_summaries: Sequence[Sequence[AnnualWithdrawalSummary]]) -> MonteCarloResult:
    """Success rate, debt statistics and per-age percentiles of ending value."""
    if not trial_summaries:
        raise ValueError("No trials to aggregate")

    ages = [s.age for s in trial_summaries[0]]
    ending = pd.DataFrame(
        [[s.ending_portfolio_value for s in trial] for trial in trial_summaries],
        columns=ages,
    )
    debt = pd.Series([sum(s.unfunded_gap for s in trial) for trial in trial_summaries])

    quantiles = ending.quantile(list(PERCENTILES.values()))
    percentiles = {
        label: [float(v) for v in quantiles.loc[q].tolist()]
        for label, q in PERCENTILES.items()
    }
    final_values = ending[ages[-1]]

    return MonteCarloResult(
        trials=len(trial_summaries),
        success_rate=float((debt <= 0).mean()),
        median_lifetime_debt=float(debt.median()),
        worst_lifetime_debt=float(debt.max()),
        median_ending_value=float(final_values.median()),
        ages=ages,
        percentiles=percentiles,
    )


def run_monte_carlo(
    request: MonteCarloRequest,
    max_workers: Optional[int] = None,
) -> MonteCarloResult:
    """
    Project every trial and aggregate.

    Args:
        request: base projection plus return draws per trial
        max_workers: process pool size (executor default when None)
    """
    started = time.perf_counter()
    trials = build_trial_requests(request.projection, request.return_draws)

    if request.parallel and len(trials) > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as ex:
            results = list(ex.map(_run_trial, trials))
    else:
        results = [_run_trial(t) for t in trials]

    result = aggregate_trials(results)
    logger.info(
        f"Monte Carlo: {result.trials} trials, success rate {result.success_rate:.1%} "
        f"in {(time.perf_counter() - started) * 1000:.0f}ms"
    )
    return result
