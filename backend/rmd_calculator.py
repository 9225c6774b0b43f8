"""
RetireFlow - RMD Calculator
===========================
IRS Required Minimum Distribution lookups and projections.

Based on the IRS Uniform Lifetime Table and SECURE Act 2.0 start ages.
The withdrawal engine calls these as pure functions.
"""

from datetime import date
from typing import List, Optional

from planning_constants import (
    RMD_AGE_75_FIRST_BIRTH_YEAR,
    RMD_DIVISORS,
    RMD_FALLBACK_DIVISOR,
    RMD_START_AGE_BORN_1960_OR_LATER,
    RMD_START_AGE_BORN_BEFORE_1960,
    RMD_TABLE_MAX_AGE,
    RMD_TABLE_MIN_AGE,
)
from models import RMDProjection, RMDStartAge, RMDSummary


def get_rmd_start_age(birth_year: int) -> RMDStartAge:
    """Determine RMD starting age based on birth year (SECURE Act 2.0)."""
    if birth_year < RMD_AGE_75_FIRST_BIRTH_YEAR:
        return RMDStartAge(
            age=RMD_START_AGE_BORN_BEFORE_1960,
            reason="Born 1951-1959: RMDs begin at age 73",
        )
    return RMDStartAge(
        age=RMD_START_AGE_BORN_1960_OR_LATER,
        reason="Born 1960+: RMDs begin at age 75",
    )


def get_rmd_divisor(age: int) -> float:
    """Uniform Lifetime Table distribution period for `age`."""
    return RMD_DIVISORS.get(min(age, RMD_TABLE_MAX_AGE), RMD_FALLBACK_DIVISOR)


def calculate_rmd(age: int, prior_year_balance: float) -> float:
    """Single-year RMD. Zero below the table or for an empty account."""
    if age < RMD_TABLE_MIN_AGE or prior_year_balance <= 0:
        return 0.0
    return prior_year_balance / get_rmd_divisor(age)


def project_rmds(
    current_age: int,
    birth_year: int,
    balance: float,
    expected_return: float = 0.06,
    end_age: int = 100,
    start_year: Optional[int] = None,
) -> List[RMDProjection]:
    """
    Project RMDs from `current_age` through `end_age` for a combined
    pretax balance.

    Before the start age the balance only grows. From the start age on,
    the RMD is taken from the prior year-end balance and growth applies
    to what is left.
    """
    if balance <= 0:
        return []

    rmd_start_age = get_rmd_start_age(birth_year).age
    year0 = start_year if start_year is not None else date.today().year
    projections = []
    cumulative = 0.0

    for age in range(current_age, end_age + 1):
        if age < rmd_start_age:
            balance *= (1 + expected_return)
            continue

        divisor = get_rmd_divisor(age)
        rmd_amount = balance / divisor
        cumulative += rmd_amount

        projections.append(RMDProjection(
            year=year0 + (age - current_age),
            age=age,
            prior_year_balance=balance,
            divisor=divisor,
            rmd_amount=rmd_amount,
            cumulative_rmd=cumulative,
        ))

        balance = (balance - rmd_amount) * (1 + expected_return)

    return projections


def get_rmd_summary(
    current_age: int,
    birth_year: int,
    balance: float,
    expected_return: float = 0.06,
    end_age: int = 100,
    start_year: Optional[int] = None,
) -> RMDSummary:
    """Headline RMD figures for display."""
    year0 = start_year if start_year is not None else date.today().year
    projections = project_rmds(
        current_age, birth_year, balance, expected_return, end_age, year0
    )

    if not projections:
        start_age = get_rmd_start_age(birth_year).age
        return RMDSummary(
            rmd_start_age=start_age,
            first_rmd_year=year0 + max(0, start_age - current_age),
            estimated_first_rmd=0.0,
            lifetime_rmd=0.0,
            peak_rmd_age=start_age,
            peak_rmd_amount=0.0,
        )

    peak = max(projections, key=lambda p: p.rmd_amount)
    return RMDSummary(
        rmd_start_age=projections[0].age,
        first_rmd_year=projections[0].year,
        estimated_first_rmd=projections[0].rmd_amount,
        lifetime_rmd=projections[-1].cumulative_rmd,
        peak_rmd_age=peak.age,
        peak_rmd_amount=peak.rmd_amount,
    )
