"""
RetireFlow - Test Suite
=======================
Tests for the withdrawal, guardrail and bucket engines and their helpers.
"""

import os
import pytest
from datetime import date

# Import modules to test
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from planning_constants import (
    BucketType,
    GuardrailAction,
    IncomeCategory,
    IncomeFrequency,
    PaycheckSourceType,
    RefillCondition,
    SpendingZone,
    TaxType,
    WithdrawalOrderStrategy,
    get_tax_type_order,
    to_monthly_amount,
)
from models import (
    Account,
    AssetAllocation,
    BucketFigures,
    BucketSettings,
    BucketTargets,
    CustomOrderEntry,
    ExcessIncomeSettings,
    GuaranteedIncomeSource,
    GuardrailConfig,
    GuardrailStatus,
    IncomeSource,
    MonteCarloRequest,
    ProjectionRequest,
)
from rmd_calculator import (
    calculate_rmd,
    get_rmd_divisor,
    get_rmd_start_age,
    get_rmd_summary,
    project_rmds,
)
from withdrawal_engine import (
    calculate_annual_rmds,
    get_sorted_accounts_for_withdrawal,
    process_withdrawals,
    project_lifetime_withdrawals,
)
from projection_reports import (
    get_balance_table,
    get_withdrawal_chart_data,
    summarize_projection,
)
from projection_cache import ProjectionCache, fingerprint
from monte_carlo import aggregate_trials, build_trial_requests, run_monte_carlo
from guardrails_engine import (
    calculate_guardrail_status,
    calculate_safe_spending_target,
    classify_zone,
    generate_guardrail_nudge,
    simulate_market_shock,
)
from bucket_engine import (
    analyze_buckets,
    append_refill_history,
    calculate_bucket_status,
    calculate_bucket_withdrawal,
    calculate_monthly_paycheck,
    determine_refill_action,
    evaluate_refill,
    execute_refill,
    guaranteed_sources_from_income,
    map_allocation_to_buckets,
)


# =============================================================================
# PLANNING CONSTANTS TESTS
# =============================================================================

class TestPlanningConstants:
    """Test ordering tables and frequency helpers."""

    def test_traditional_order(self):
        """Traditional draws taxable, then pretax, then Roth."""
        assert get_tax_type_order(WithdrawalOrderStrategy.TRADITIONAL) == [
            TaxType.TAXABLE, TaxType.PRETAX, TaxType.ROTH
        ]

    def test_reverse_order(self):
        """Reverse draws Roth first."""
        assert get_tax_type_order(WithdrawalOrderStrategy.REVERSE)[0] == TaxType.ROTH

    def test_custom_has_no_tier_order(self):
        """Custom order is defined per account, not per tax type."""
        with pytest.raises(ValueError):
            get_tax_type_order(WithdrawalOrderStrategy.CUSTOM)

    def test_to_monthly_amount(self):
        """Income normalizes to monthly from any frequency."""
        assert to_monthly_amount(12000, IncomeFrequency.ANNUALLY) == 1000
        assert to_monthly_amount(3000, IncomeFrequency.QUARTERLY) == 1000
        assert to_monthly_amount(1000, IncomeFrequency.BIWEEKLY) == pytest.approx(26000 / 12)


# =============================================================================
# RMD CALCULATOR TESTS
# =============================================================================

class TestRMDCalculator:
    """Test RMD start ages, divisors and projections."""

    def test_start_age_born_1950s(self):
        """Born before 1960: RMDs start at 73."""
        assert get_rmd_start_age(1955).age == 73

    def test_start_age_born_1960_or_later(self):
        """Born 1960+: RMDs start at 75."""
        assert get_rmd_start_age(1960).age == 75
        assert get_rmd_start_age(1970).age == 75

    def test_divisor_lookup(self):
        assert get_rmd_divisor(73) == 26.5
        assert get_rmd_divisor(120) == 2.0

    def test_divisor_past_table_uses_last_entry(self):
        """Ages beyond the table use the final divisor."""
        assert get_rmd_divisor(125) == 2.0

    def test_calculate_rmd(self):
        """RMD is balance over the divisor."""
        assert calculate_rmd(75, 246000) == pytest.approx(10000)

    def test_no_rmd_below_table_or_empty(self):
        assert calculate_rmd(65, 500000) == 0
        assert calculate_rmd(80, 0) == 0

    def test_project_rmds_starts_at_start_age(self):
        """No RMDs are projected before the start age."""
        projections = project_rmds(70, 1950, 100000, 0.0, 75, start_year=2020)

        assert [p.age for p in projections] == [73, 74, 75]
        assert projections[0].year == 2023
        assert projections[0].rmd_amount == pytest.approx(100000 / 26.5)

    def test_project_rmds_cumulative(self):
        projections = project_rmds(73, 1950, 100000, 0.05, 80, start_year=2023)
        running = 0.0
        for p in projections:
            running += p.rmd_amount
            assert p.cumulative_rmd == pytest.approx(running)

    def test_rmd_summary(self):
        summary = get_rmd_summary(70, 1950, 100000, 0.0, 75, start_year=2020)

        assert summary.rmd_start_age == 73
        assert summary.first_rmd_year == 2023
        assert summary.estimated_first_rmd == pytest.approx(100000 / 26.5)

    def test_rmd_summary_empty_balance(self):
        summary = get_rmd_summary(65, 1960, 0, start_year=2025)

        assert summary.lifetime_rmd == 0
        assert summary.first_rmd_year == 2035


# =============================================================================
# WITHDRAWAL ENGINE TESTS
# =============================================================================

class TestWithdrawalEngine:
    """Test withdrawal sequencing."""

    @pytest.fixture
    def two_accounts(self):
        return [
            Account(id="taxable", name="Brokerage", tax_type=TaxType.TAXABLE,
                    balance=50000, expected_return=0.05),
            Account(id="pretax", name="401k", tax_type=TaxType.PRETAX,
                    balance=100000, expected_return=0.06),
        ]

    def test_first_year_scenario(self, two_accounts):
        """Taxable is exhausted first, the rest comes from pretax."""
        summaries = project_lifetime_withdrawals(
            65, 1960, 66, two_accounts, [60000, 60000]
        )
        first = summaries[0]

        assert first.total_rmd == 0
        assert [w.account_id for w in first.withdrawals] == ["taxable", "pretax"]
        assert first.withdrawals[0].withdrawal_amount == pytest.approx(50000)
        assert first.withdrawals[1].withdrawal_amount == pytest.approx(10000)
        assert first.unfunded_gap == 0
        assert first.balance_of("taxable") == 0
        assert first.balance_of("pretax") == pytest.approx(90000 * 1.06)

    def test_second_year_opens_with_grown_balance(self, two_accounts):
        summaries = project_lifetime_withdrawals(
            65, 1960, 66, two_accounts, [60000, 60000]
        )

        assert summaries[1].balance_of("pretax") == pytest.approx((90000 * 1.06 - 60000) * 1.06)

    def test_taxable_amounts(self, two_accounts):
        """Pretax draws are fully taxable, taxable-account draws partly."""
        first = project_lifetime_withdrawals(65, 1960, 65, two_accounts, [60000])[0]

        assert first.withdrawals[0].taxable_amount == pytest.approx(50000 * 0.15)
        assert first.withdrawals[1].taxable_amount == pytest.approx(10000)
        assert first.total_taxable_withdrawals == pytest.approx(17500)

    def test_caller_accounts_not_mutated(self, two_accounts):
        project_lifetime_withdrawals(65, 1960, 66, two_accounts, [60000, 60000])

        assert two_accounts[0].balance == 50000
        assert two_accounts[1].balance == 100000

    def test_totals_identity_without_rmd(self):
        """Drawn plus unfunded equals the requested gap every year."""
        accounts = [
            Account(id="taxable", tax_type=TaxType.TAXABLE, balance=30000),
            Account(id="roth", tax_type=TaxType.ROTH, balance=20000),
        ]
        gaps = [20000, 20000, 20000, 20000]
        summaries = project_lifetime_withdrawals(60, 1965, 63, accounts, gaps)

        for summary, gap in zip(summaries, gaps):
            assert summary.total_rmd == 0
            assert summary.total_withdrawals + summary.unfunded_gap == pytest.approx(gap)

        assert [s.unfunded_gap for s in summaries] == [0, 0, 10000, 20000]

    def test_all_excluded_accounts(self):
        """Excluded accounts are never drawn; the whole gap is unfunded."""
        accounts = [
            Account(id="legacy", tax_type=TaxType.TAXABLE, balance=100000,
                    expected_return=0.05, excluded=True),
            Account(id="ira", tax_type=TaxType.ROTH, balance=50000,
                    expected_return=0.04, excluded=True),
        ]
        summaries = project_lifetime_withdrawals(60, 1965, 64, accounts, [10000] * 5)

        for i, summary in enumerate(summaries, start=1):
            assert summary.unfunded_gap == 10000
            assert summary.withdrawals == ()
            assert summary.balance_of("legacy") == pytest.approx(100000 * 1.05 ** i)
            assert summary.balance_of("ira") == pytest.approx(50000 * 1.04 ** i)

    def test_excluded_balances_never_decrease(self, two_accounts):
        """An excluded account only grows, even while others run dry."""
        accounts = two_accounts + [
            Account(id="hsa", tax_type=TaxType.ROTH, balance=40000,
                    expected_return=0.03, excluded=True)
        ]
        summaries = project_lifetime_withdrawals(65, 1960, 70, accounts, [50000] * 6)

        previous = 40000
        for summary in summaries:
            current = summary.balance_of("hsa")
            assert current >= previous
            previous = current
        assert summaries[-1].unfunded_gap > 0

    def test_rmd_drawn_with_zero_gap(self):
        """RMDs come out at 73+ even when nothing needs funding."""
        accounts = [Account(id="ira", tax_type=TaxType.PRETAX, balance=246000)]
        summary = project_lifetime_withdrawals(75, 1950, 75, accounts, [0])[0]

        assert summary.total_rmd == pytest.approx(10000)
        assert summary.total_withdrawals == 0
        assert summary.rmd_excess == pytest.approx(10000)
        assert summary.excess_spent == pytest.approx(10000)
        assert summary.balance_of("ira") == pytest.approx(236000)

    def test_rmd_counts_toward_gap(self):
        accounts = [
            Account(id="ira", tax_type=TaxType.PRETAX, balance=246000),
            Account(id="roth", tax_type=TaxType.ROTH, balance=100000),
        ]
        summary = project_lifetime_withdrawals(75, 1950, 75, accounts, [15000])[0]

        assert summary.gap_after_rmd == pytest.approx(5000)
        assert summary.funded_gap == pytest.approx(15000)
        assert summary.balance_of("ira") == pytest.approx(246000 - 10000 - 5000)
        assert summary.balance_of("roth") == pytest.approx(100000)

    def test_no_rmd_before_start_age(self):
        accounts = [Account(id="ira", tax_type=TaxType.PRETAX, balance=500000)]
        assert calculate_annual_rmds(74, 1960, accounts) == []

    def test_excluded_pretax_owes_no_rmd(self):
        accounts = [Account(id="ira", tax_type=TaxType.PRETAX, balance=500000, excluded=True)]
        assert calculate_annual_rmds(80, 1945, accounts) == []

    def test_excess_rmd_saved(self):
        """Part of the excess RMD is reinvested into the target account."""
        accounts = [
            Account(id="ira", tax_type=TaxType.PRETAX, balance=246000),
            Account(id="brokerage", tax_type=TaxType.TAXABLE, balance=0),
        ]
        excess = ExcessIncomeSettings(enabled=True, save_percentage=50, target_account_id="brokerage")
        summary = project_lifetime_withdrawals(
            75, 1950, 75, accounts, [4000], excess_settings=excess
        )[0]

        assert summary.rmd_excess == pytest.approx(6000)
        assert summary.excess_saved == pytest.approx(3000)
        assert summary.excess_spent == pytest.approx(3000)
        assert summary.balance_of("brokerage") == pytest.approx(3000)

    def test_surplus_credited_before_growth(self):
        accounts = [Account(id="brokerage", tax_type=TaxType.TAXABLE, balance=10000,
                            expected_return=0.10)]
        excess = ExcessIncomeSettings(enabled=True, target_account_id="brokerage")
        summary = project_lifetime_withdrawals(
            65, 1960, 65, accounts, [-5000], excess_settings=excess
        )[0]

        assert summary.excess_saved == pytest.approx(5000)
        assert summary.total_withdrawals == 0
        assert summary.balance_of("brokerage") == pytest.approx(15000 * 1.10)

    def test_surplus_without_excess_savings(self):
        accounts = [Account(id="brokerage", tax_type=TaxType.TAXABLE, balance=10000)]
        summary = project_lifetime_withdrawals(65, 1960, 65, accounts, [-5000])[0]

        assert summary.excess_saved == 0
        assert summary.balance_of("brokerage") == 10000

    def test_lowest_return_drawn_first_within_tier(self):
        accounts = [
            Account(id="fast", tax_type=TaxType.TAXABLE, balance=10000, expected_return=0.08),
            Account(id="slow", tax_type=TaxType.TAXABLE, balance=10000, expected_return=0.02),
        ]
        ordered = get_sorted_accounts_for_withdrawal(accounts)
        assert [a.id for a in ordered] == ["slow", "fast"]

    def test_reverse_order(self):
        accounts = [
            Account(id="taxable", tax_type=TaxType.TAXABLE, balance=10000),
            Account(id="roth", tax_type=TaxType.ROTH, balance=10000),
            Account(id="pretax", tax_type=TaxType.PRETAX, balance=10000),
        ]
        ordered = get_sorted_accounts_for_withdrawal(
            accounts, order_strategy=WithdrawalOrderStrategy.REVERSE
        )
        assert [a.id for a in ordered] == ["roth", "pretax", "taxable"]

    def test_custom_order_unlisted_go_last(self):
        """Unlisted accounts follow listed ones, sorted by expected return."""
        accounts = [
            Account(id="a", tax_type=TaxType.TAXABLE, balance=10000, expected_return=0.05),
            Account(id="b", tax_type=TaxType.ROTH, balance=10000, expected_return=0.03),
            Account(id="c", tax_type=TaxType.PRETAX, balance=10000, expected_return=0.07),
        ]
        ordered = get_sorted_accounts_for_withdrawal(
            accounts,
            [CustomOrderEntry(account_id="c", priority=1)],
            WithdrawalOrderStrategy.CUSTOM,
        )
        assert [a.id for a in ordered] == ["c", "b", "a"]

    def test_custom_order_equal_priorities_tie_on_return(self):
        accounts = [
            Account(id="a", tax_type=TaxType.TAXABLE, balance=10000, expected_return=0.05),
            Account(id="b", tax_type=TaxType.ROTH, balance=10000, expected_return=0.03),
        ]
        ordered = get_sorted_accounts_for_withdrawal(
            accounts,
            [CustomOrderEntry(account_id="a", priority=1), CustomOrderEntry(account_id="b", priority=1)],
            WithdrawalOrderStrategy.CUSTOM,
        )
        assert [a.id for a in ordered] == ["b", "a"]

    def test_empty_and_excluded_accounts_skipped(self):
        accounts = [
            Account(id="empty", tax_type=TaxType.TAXABLE, balance=0),
            Account(id="kept", tax_type=TaxType.TAXABLE, balance=1000, excluded=True),
            Account(id="roth", tax_type=TaxType.ROTH, balance=1000),
        ]
        withdrawals, unfunded, balances = process_withdrawals(1500, accounts)

        assert [w.account_id for w in withdrawals] == ["roth"]
        assert unfunded == pytest.approx(500)
        assert balances["kept"] == 1000

    def test_unknown_custom_account_rejected(self, two_accounts):
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(
                65, 1960, 65, two_accounts, [1000],
                custom_order=[CustomOrderEntry(account_id="nope", priority=1)],
                order_strategy=WithdrawalOrderStrategy.CUSTOM,
            )

    def test_negative_age_rejected(self, two_accounts):
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(-1, 1960, 65, two_accounts, [1000] * 67)

    def test_end_before_start_rejected(self, two_accounts):
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(70, 1960, 65, two_accounts, [])

    def test_gap_count_must_match_years(self, two_accounts):
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(65, 1960, 70, two_accounts, [1000, 1000])

    def test_duplicate_account_ids_rejected(self):
        accounts = [
            Account(id="x", tax_type=TaxType.TAXABLE, balance=1),
            Account(id="x", tax_type=TaxType.ROTH, balance=1),
        ]
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(65, 1960, 65, accounts, [0])

    def test_excess_target_must_exist(self, two_accounts):
        with pytest.raises(ValueError):
            ExcessIncomeSettings(enabled=True)
        with pytest.raises(ValueError):
            project_lifetime_withdrawals(
                65, 1960, 65, two_accounts, [0],
                excess_settings=ExcessIncomeSettings(enabled=True, target_account_id="missing"),
            )

    def test_annual_returns_override_growth(self, two_accounts):
        summary = project_lifetime_withdrawals(
            65, 1960, 65, two_accounts, [0],
            annual_returns=[{"pretax": -0.20}],
        )[0]

        assert summary.balance_of("pretax") == pytest.approx(80000)
        assert summary.balance_of("taxable") == pytest.approx(52500)


# =============================================================================
# PROJECTION REPORTS TESTS
# =============================================================================

class TestProjectionReports:
    """Test chart tables and lifetime summaries."""

    @pytest.fixture
    def accounts(self):
        return [
            Account(id="taxable", name="Brokerage", tax_type=TaxType.TAXABLE, balance=30000),
            Account(id="roth", name="Roth IRA", tax_type=TaxType.ROTH, balance=20000),
        ]

    @pytest.fixture
    def summaries(self, accounts):
        return project_lifetime_withdrawals(60, 1965, 63, accounts, [20000] * 4)

    def test_chart_data(self, summaries, accounts):
        chart = get_withdrawal_chart_data(summaries, accounts)

        assert list(chart["age"]) == [60, 61, 62, 63]
        assert chart.loc[0, "Brokerage"] == pytest.approx(20000)
        assert chart.loc[1, "Roth IRA"] == pytest.approx(10000)
        assert chart.loc[3, "unfunded"] == pytest.approx(20000)

    def test_chart_data_empty(self):
        chart = get_withdrawal_chart_data([])
        assert chart.empty
        assert "unfunded" in chart.columns

    def test_balance_table(self, summaries):
        table = get_balance_table(summaries)

        assert table.index.name == "age"
        assert table.loc[60, "taxable"] == pytest.approx(10000)
        assert table.loc[62, "roth"] == 0

    def test_summarize_projection(self, summaries, accounts):
        summary = summarize_projection(summaries, accounts)

        assert summary.years_projected == 4
        assert summary.lifetime_withdrawals == pytest.approx(50000)
        assert summary.lifetime_debt == pytest.approx(30000)
        assert summary.first_shortfall_age == 62
        assert summary.depletion_age == 62
        assert summary.plan_succeeds is False


# =============================================================================
# PROJECTION CACHE TESTS
# =============================================================================

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestProjectionCache:
    """Test the caller-owned projection cache."""

    @pytest.fixture
    def request_model(self):
        return ProjectionRequest(
            current_age=65,
            birth_year=1960,
            end_age=65,
            accounts=[Account(id="roth", tax_type=TaxType.ROTH, balance=1000)],
            per_year_gaps=[500],
        )

    def test_fingerprint_is_stable(self, request_model):
        copy = ProjectionRequest.model_validate(request_model.model_dump())
        assert fingerprint(copy) == fingerprint(request_model)

    def test_fingerprint_changes_with_inputs(self, request_model):
        changed = request_model.model_copy(update={"per_year_gaps": [600]})
        assert fingerprint(changed) != fingerprint(request_model)

    def test_hit_after_miss(self, request_model):
        cache = ProjectionCache(clock=FakeClock())
        calls = []

        def compute():
            calls.append(1)
            return ["result"]

        assert cache.get_or_compute(request_model, compute) == ["result"]
        assert cache.get_or_compute(request_model, compute) == ["result"]
        assert len(calls) == 1
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_entries_expire(self, request_model):
        clock = FakeClock()
        cache = ProjectionCache(ttl_seconds=10, clock=clock)
        calls = []

        def compute():
            calls.append(1)
            return len(calls)

        cache.get_or_compute(request_model, compute)
        clock.now = 10
        assert cache.get_or_compute(request_model, compute) == 2

    def test_oldest_entry_evicted(self):
        cache = ProjectionCache(max_entries=2, clock=FakeClock())
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") == 3

    def test_invalidate(self, request_model):
        cache = ProjectionCache(clock=FakeClock())
        cache.get_or_compute(request_model, lambda: 1)

        assert cache.invalidate(request_model) is True
        assert cache.invalidate(request_model) is False

    def test_bad_settings_rejected(self):
        with pytest.raises(ValueError):
            ProjectionCache(ttl_seconds=0)
        with pytest.raises(ValueError):
            ProjectionCache(max_entries=0)


# =============================================================================
# MONTE CARLO TESTS
# =============================================================================

class TestMonteCarlo:
    """Test the trial wrapper."""

    @pytest.fixture
    def base(self):
        return ProjectionRequest(
            current_age=65,
            birth_year=1960,
            end_age=67,
            accounts=[Account(id="brokerage", tax_type=TaxType.TAXABLE, balance=100000)],
            per_year_gaps=[40000, 40000, 40000],
        )

    @pytest.fixture
    def draws(self):
        good = [{"brokerage": 0.5}] * 3
        flat = [{"brokerage": 0.0}] * 3
        return [good, flat]

    def test_sequential_run(self, base, draws):
        result = run_monte_carlo(MonteCarloRequest(projection=base, return_draws=draws, parallel=False))

        assert result.trials == 2
        assert result.success_rate == pytest.approx(0.5)
        assert result.worst_lifetime_debt == pytest.approx(20000)
        assert result.median_lifetime_debt == pytest.approx(10000)
        assert result.median_ending_value == pytest.approx(52500 / 2)
        assert result.ages == [65, 66, 67]
        assert set(result.percentiles) == {"p5", "p25", "p50", "p75", "p95"}
        assert all(len(v) == 3 for v in result.percentiles.values())

    def test_parallel_matches_sequential(self, base, draws):
        sequential = run_monte_carlo(MonteCarloRequest(projection=base, return_draws=draws, parallel=False))
        parallel = run_monte_carlo(
            MonteCarloRequest(projection=base, return_draws=draws, parallel=True), max_workers=2
        )
        assert parallel == sequential

    def test_malformed_draw_rejected(self, base):
        with pytest.raises(ValueError):
            build_trial_requests(base, [[{"brokerage": 0.05}]])

    def test_no_trials_rejected(self, base):
        with pytest.raises(ValueError):
            MonteCarloRequest(projection=base, return_draws=[])
        with pytest.raises(ValueError):
            aggregate_trials([])


# =============================================================================
# GUARDRAIL ENGINE TESTS
# =============================================================================

class TestGuardrailEngine:
    """Test zone classification, shocks and nudges."""

    def test_caution_scenario(self):
        """750k of an initial 1M is in the caution zone."""
        status = calculate_guardrail_status(750000, 1000000, 5000)

        assert status.zone == SpendingZone.CAUTION
        assert status.triggered_action == GuardrailAction.CUT
        assert status.recommended_monthly_spending == pytest.approx(4500)
        assert status.adjustment_amount == pytest.approx(-500)
        assert status.adjustment_pct == -10

    def test_prosperity(self):
        status = calculate_guardrail_status(1250000, 1000000, 5000)

        assert status.zone == SpendingZone.PROSPERITY
        assert status.recommended_monthly_spending == pytest.approx(5500)

    def test_safe(self):
        status = calculate_guardrail_status(1000000, 1000000, 5000)

        assert status.zone == SpendingZone.SAFE
        assert status.triggered_action == GuardrailAction.NONE
        assert status.recommended_monthly_spending == 5000

    def test_boundaries_are_inclusive(self):
        assert calculate_guardrail_status(800000, 1000000, 5000).zone == SpendingZone.CAUTION
        assert calculate_guardrail_status(1200000, 1000000, 5000).zone == SpendingZone.PROSPERITY

    def test_zones_exhaustive_and_exclusive(self):
        """Every ratio lands in exactly the zone its thresholds define."""
        config = GuardrailConfig()
        for step in range(0, 301):
            ratio = step / 100
            zone = classify_zone(ratio, config)
            if ratio <= 0.80:
                assert zone == SpendingZone.CAUTION
            elif ratio >= 1.20:
                assert zone == SpendingZone.PROSPERITY
            else:
                assert zone == SpendingZone.SAFE

    def test_zero_initial_portfolio(self):
        """No ratio can be computed: safe, no recommendation."""
        status = calculate_guardrail_status(500000, 0, 4000)

        assert status.zone == SpendingZone.SAFE
        assert status.portfolio_ratio is None
        assert status.recommended_monthly_spending == 4000

    def test_custom_config(self):
        config = GuardrailConfig(lower_threshold_pct=90, spending_cut_pct=5)
        status = calculate_guardrail_status(880000, 1000000, 6000, config)

        assert status.zone == SpendingZone.CAUTION
        assert status.recommended_monthly_spending == pytest.approx(5700)

    def test_config_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            GuardrailConfig(lower_threshold_pct=120, upper_threshold_pct=80)

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValueError):
            calculate_guardrail_status(-1, 1000000, 5000)

    def test_mild_shock_stays_safe(self):
        result = simulate_market_shock(1000000, 1000000, 5000, 0.15)

        assert result.portfolio_after_shock == pytest.approx(850000)
        assert result.shocked_zone == SpendingZone.SAFE
        assert result.budget_change == 0

    def test_severe_shock_triggers_cut(self):
        result = simulate_market_shock(1000000, 1000000, 5000, 0.25)

        assert result.shocked_zone == SpendingZone.CAUTION
        assert result.shocked_monthly_budget == pytest.approx(4500)
        assert result.budget_change == pytest.approx(-500)

    def test_shock_out_of_range(self):
        with pytest.raises(ValueError):
            simulate_market_shock(1000000, 1000000, 5000, 1.5)

    def test_safe_spending_target(self):
        assert calculate_safe_spending_target(900000, 1000000, 5000) == pytest.approx(4500)
        assert calculate_safe_spending_target(900000, 0, 5000) == 5000

    def test_caution_nudge(self):
        status = calculate_guardrail_status(750000, 1000000, 5000)
        message = generate_guardrail_nudge(status)

        assert "below the safety threshold" in message
        assert "10%" in message

    def test_prosperity_nudge_offers_bucket_list(self):
        status = calculate_guardrail_status(1300000, 1000000, 5000)
        message = generate_guardrail_nudge(status, bucket_list_enabled=True)

        assert message.startswith("Good news!")
        assert "Bucket List" in message

    def test_legacy_shortfall_appended(self):
        status = calculate_guardrail_status(750000, 1000000, 5000)
        message = generate_guardrail_nudge(status, legacy_goal=2000000)

        assert "Heads up" in message
        assert "$1,250,000" in message

    def test_legacy_met_no_warning(self):
        status = calculate_guardrail_status(1000000, 1000000, 5000)
        assert "Heads up" not in generate_guardrail_nudge(status, legacy_goal=500000)

    def test_no_ratio_nudge(self):
        status = calculate_guardrail_status(500000, 0, 4000)
        assert "starting portfolio value" in generate_guardrail_nudge(status, verbose=True)

    def test_verbose_adds_detail(self):
        status = calculate_guardrail_status(1000000, 1000000, 5000)
        message = generate_guardrail_nudge(status, verbose=True)

        assert "100.0%" in message
        assert "80%" in message

    def test_verbose_nudge_with_zero_initial_value(self):
        """A status with no starting value still yields a message."""
        status = GuardrailStatus(
            zone=SpendingZone.SAFE,
            triggered_action=GuardrailAction.NONE,
            portfolio_value=500000,
            initial_portfolio_value=0,
            portfolio_ratio=1.0,
            current_monthly_spending=4000,
            recommended_monthly_spending=4000,
            adjustment_amount=0,
            adjustment_pct=0,
            lower_guardrail_value=0,
            upper_guardrail_value=0,
        )
        message = generate_guardrail_nudge(status, verbose=True)

        assert "within your guardrails" in message
        assert "starting value" not in message


# =============================================================================
# BUCKET ENGINE TESTS
# =============================================================================

class TestBucketEngine:
    """Test bucket analysis and the refill waterfall."""

    @pytest.fixture
    def allocation(self):
        return AssetAllocation(
            domestic_stocks=300000,
            intl_stocks=100000,
            real_estate=50000,
            bonds=200000,
            cash=60000,
        )

    def test_allocation_mapping(self, allocation):
        figures = map_allocation_to_buckets(allocation)

        assert figures.cash == 60000
        assert figures.bonds == 200000
        assert figures.growth == 450000

    def test_bucket_coverage(self, allocation):
        analysis = analyze_buckets(allocation, 710000, 40000)
        cash = analysis.bucket(BucketType.CASH)
        growth = analysis.bucket(BucketType.GROWTH)

        assert cash.target_value == 80000
        assert cash.years_covered == pytest.approx(1.5)
        assert cash.percent_full == pytest.approx(75)
        assert cash.is_underfunded is True
        assert cash.needs_replenishment is True
        assert analysis.bucket(BucketType.BONDS).needs_replenishment is False
        assert growth.years_covered == pytest.approx(11.25)
        assert analysis.total_years_covered == pytest.approx(1.5 + 5 + 11.25)

    def test_percent_full_capped(self):
        analysis = analyze_buckets(AssetAllocation(cash=500000), 500000, 40000)
        assert analysis.bucket(BucketType.CASH).percent_full == 150

    def test_condition_a_growth_up(self, allocation):
        analysis = analyze_buckets(
            allocation, 710000, 40000,
            ytd_returns=BucketFigures(cash=1, bonds=3, growth=8),
        )
        refill = analysis.refill_recommendation

        assert refill.condition == RefillCondition.GROWTH_UP
        assert refill.source_bucket == BucketType.GROWTH
        assert refill.amount == pytest.approx(20000)
        assert refill.can_execute is True

    def test_growth_refill_limited_by_gains(self, allocation):
        analysis = analyze_buckets(
            allocation, 710000, 40000,
            ytd_returns=BucketFigures(cash=1, bonds=3, growth=2),
        )
        assert analysis.refill_recommendation.amount == pytest.approx(9000)

    def test_condition_b_bonds_up(self, allocation):
        analysis = analyze_buckets(
            allocation, 710000, 40000,
            ytd_returns=BucketFigures(cash=1, bonds=3, growth=-5),
        )
        refill = analysis.refill_recommendation

        assert refill.condition == RefillCondition.BONDS_UP
        assert refill.source_bucket == BucketType.BONDS
        assert refill.amount == pytest.approx(20000)

    def test_condition_c_both_down(self, allocation):
        analysis = analyze_buckets(
            allocation, 710000, 40000,
            ytd_returns=BucketFigures(cash=1, bonds=-2, growth=-5),
        )
        refill = analysis.refill_recommendation

        assert refill.condition == RefillCondition.PROTECTED
        assert refill.source_bucket is None
        assert refill.can_execute is False
        assert analysis.sequence_risk_protected is True

    def test_refill_never_fires_without_gains(self):
        """Flat or negative sources never refill, however empty cash is."""
        allocation = AssetAllocation(domestic_stocks=500000, bonds=200000, cash=0)
        for growth, bonds in [(0, 0), (-10, 0), (0, -1), (-20, -5)]:
            analysis = analyze_buckets(
                allocation, 700000, 40000,
                ytd_returns=BucketFigures(cash=1, bonds=bonds, growth=growth),
            )
            assert analysis.refill_recommendation.can_execute is False
            assert analysis.refill_recommendation.amount == 0

    def test_refill_disabled(self, allocation):
        analysis = analyze_buckets(allocation, 710000, 40000, refill_enabled=False)
        assert analysis.refill_recommendation.condition is None
        assert analysis.refill_recommendation.can_execute is False

    def test_cash_above_threshold(self, allocation):
        analysis = analyze_buckets(
            allocation, 710000, 40000,
            ytd_returns=BucketFigures(cash=1, bonds=3, growth=8),
            refill_threshold_pct=70,
        )
        assert analysis.refill_recommendation.condition is None

    def test_zero_expenses_fully_covered(self, allocation):
        """Zero expenses clamp coverage instead of dividing by zero."""
        analysis = analyze_buckets(allocation, 710000, 0)

        assert analysis.expenses_defined is False
        for state in analysis.buckets:
            assert state.percent_full == 100
            assert state.years_covered == state.target_years
            assert state.needs_replenishment is False
        assert analysis.refill_recommendation.can_execute is False

    def test_analyze_is_idempotent(self, allocation):
        args = (allocation, 710000, 40000, BucketTargets(), BucketFigures(cash=1, bonds=3, growth=8))
        assert analyze_buckets(*args) == analyze_buckets(*args)

    def test_determine_refill_requires_all_buckets(self, allocation):
        states = calculate_bucket_status(
            map_allocation_to_buckets(allocation), BucketTargets(), BucketFigures(), 40000
        )
        with pytest.raises(ValueError):
            determine_refill_action(states[:2])


# =============================================================================
# REFILL EXECUTION TESTS
# =============================================================================

class TestRefillExecution:
    """Test caller-orchestrated refills."""

    @pytest.fixture
    def settings(self):
        return BucketSettings(
            bucket1_current_value=50000,
            bucket2_current_value=200000,
            bucket3_current_value=500000,
            bucket2_ytd_return=3,
            bucket3_ytd_return=8,
            refill_threshold_pct=80,
        )

    def test_evaluate_refill(self, settings):
        action = evaluate_refill(settings, 40000)

        assert action.condition == RefillCondition.GROWTH_UP
        assert action.amount == pytest.approx(30000)

    def test_execute_from_growth(self, settings):
        outcome = execute_refill(
            settings, BucketType.GROWTH, 20000, 40000, refill_date=date(2025, 3, 1)
        )

        assert outcome.settings.bucket1_current_value == 70000
        assert outcome.settings.bucket3_current_value == 480000
        assert outcome.settings.last_refill_source == "bucket3"
        assert outcome.settings.last_refill_date == date(2025, 3, 1)
        assert outcome.entry.source_bucket == "bucket3"
        assert outcome.entry.condition_triggered == RefillCondition.GROWTH_UP
        assert outcome.entry.bucket1_balance_after == 70000
        assert outcome.entry.source_return_at_refill == 8

    def test_execute_leaves_input_untouched(self, settings):
        execute_refill(settings, BucketType.BONDS, 10000, 40000)

        assert settings.bucket1_current_value == 50000
        assert settings.bucket2_current_value == 200000

    def test_execute_from_bonds(self, settings):
        outcome = execute_refill(settings, BucketType.BONDS, 10000, 40000)

        assert outcome.settings.bucket2_current_value == 190000
        assert outcome.entry.source_bucket == "bucket2"
        assert outcome.entry.condition_triggered == RefillCondition.BONDS_UP

    def test_never_sell_into_loss(self, settings):
        losing = settings.model_copy(update={"bucket3_ytd_return": -2.0})
        with pytest.raises(ValueError):
            execute_refill(losing, BucketType.GROWTH, 10000, 40000)

    def test_disabled_refills_rejected(self, settings):
        disabled = settings.model_copy(update={"refill_enabled": False})
        with pytest.raises(ValueError):
            execute_refill(disabled, BucketType.GROWTH, 10000, 40000)

    def test_cash_above_threshold_rejected(self, settings):
        full = settings.model_copy(update={"bucket1_current_value": 70000})
        with pytest.raises(ValueError):
            execute_refill(full, BucketType.GROWTH, 5000, 40000)

    def test_bad_amounts_rejected(self, settings):
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.GROWTH, 0, 40000)
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.BONDS, 250000, 40000)

    def test_cash_is_not_a_source(self, settings):
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.CASH, 1000, 40000)

    def test_condition_must_match_source(self, settings):
        """A refill is never recorded under the suspended condition."""
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.GROWTH, 5000, 40000,
                           condition=RefillCondition.PROTECTED)
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.GROWTH, 5000, 40000,
                           condition=RefillCondition.BONDS_UP)
        with pytest.raises(ValueError):
            execute_refill(settings, BucketType.BONDS, 5000, 40000,
                           condition=RefillCondition.GROWTH_UP)

        outcome = execute_refill(settings, BucketType.BONDS, 5000, 40000,
                                 condition=RefillCondition.BONDS_UP)
        assert outcome.entry.condition_triggered == RefillCondition.BONDS_UP

    def test_history_is_append_only(self, settings):
        first = execute_refill(settings, BucketType.GROWTH, 5000, 40000)
        second = execute_refill(first.settings, BucketType.BONDS, 5000, 40000)

        history = append_refill_history((), first.entry)
        extended = append_refill_history(history, second.entry)

        assert history == (first.entry,)
        assert extended == (first.entry, second.entry)
        assert extended[1].bucket1_balance_after == 60000


# =============================================================================
# PAYCHECK TESTS
# =============================================================================

class TestPaycheck:
    """Test the monthly paycheck aggregation."""

    @pytest.fixture
    def guaranteed(self):
        return [
            GuaranteedIncomeSource(name="Social Security", monthly_amount=2000),
            GuaranteedIncomeSource(name="Pension", monthly_amount=1000),
        ]

    def test_paycheck_breakdown(self, guaranteed):
        paycheck = calculate_monthly_paycheck(guaranteed, 1500)

        assert paycheck.guaranteed_income == 3000
        assert paycheck.gross_total == 4500
        assert paycheck.estimated_taxes == pytest.approx(675)
        assert paycheck.net_paycheck == pytest.approx(3825)
        assert len(paycheck.sources) == 3
        assert paycheck.sources[-1].name == "Bucket Withdrawal"
        assert paycheck.sources[-1].source_type == PaycheckSourceType.VARIABLE

    def test_no_bucket_line_without_withdrawal(self, guaranteed):
        paycheck = calculate_monthly_paycheck(guaranteed, 0)

        assert all(s.source_type == PaycheckSourceType.GUARANTEED for s in paycheck.sources)

    def test_income_sources_normalized(self):
        sources = [
            IncomeSource(name="Pension", category=IncomeCategory.PENSION,
                         amount=12000, frequency=IncomeFrequency.ANNUALLY),
            IncomeSource(name="Old annuity", category=IncomeCategory.ANNUITY,
                         amount=500, is_active=False),
        ]
        paycheck = calculate_monthly_paycheck(sources, 0, effective_tax_rate=0)

        assert paycheck.guaranteed_income == pytest.approx(1000)
        assert paycheck.net_paycheck == pytest.approx(1000)

    def test_non_guaranteed_income_left_out(self):
        """Employment and rental income never count as guaranteed."""
        sources = [
            IncomeSource(name="Consulting", category=IncomeCategory.EMPLOYMENT, amount=3000),
            IncomeSource(name="Duplex", category=IncomeCategory.RENTAL, amount=1500),
            IncomeSource(name="Social Security", category=IncomeCategory.SOCIAL_SECURITY, amount=2000),
        ]
        paycheck = calculate_monthly_paycheck(sources, 0)

        assert paycheck.guaranteed_income == pytest.approx(2000)
        assert [s.name for s in paycheck.sources] == ["Social Security"]

    def test_guaranteed_sources_from_income(self):
        sources = [
            IncomeSource(name="SS", category=IncomeCategory.SOCIAL_SECURITY, amount=2400),
            IncomeSource(name="Consulting", category=IncomeCategory.EMPLOYMENT, amount=3000),
        ]
        guaranteed = guaranteed_sources_from_income(sources)

        assert [g.name for g in guaranteed] == ["SS"]

    def test_bucket_withdrawal(self, guaranteed):
        assert calculate_bucket_withdrawal(60000, guaranteed) == pytest.approx(2000)
        assert calculate_bucket_withdrawal(24000, guaranteed) == 0

    def test_invalid_inputs(self, guaranteed):
        with pytest.raises(ValueError):
            calculate_monthly_paycheck(guaranteed, -1)
        with pytest.raises(ValueError):
            calculate_monthly_paycheck(guaranteed, 100, effective_tax_rate=1.0)


# =============================================================================
# RUN TESTS
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
