"""
RetireFlow - Planning Constants
===============================
Hardcoded IRS tables, strategy orderings and policy defaults.

These are the ONLY source of truth for the withdrawal, guardrail and
bucket engines. Callers override defaults through the config models,
never by editing these tables at runtime.

Last Updated: 2026 (IRS Uniform Lifetime Table, SECURE Act 2.0 RMD ages)
"""

from enum import Enum
from typing import Dict, List


# =============================================================================
# TAGGED VARIANTS
# =============================================================================

class TaxType(str, Enum):
    TAXABLE = "taxable"
    PRETAX = "pretax"
    ROTH = "roth"


class WithdrawalOrderStrategy(str, Enum):
    TRADITIONAL = "traditional"
    REVERSE = "reverse"
    CUSTOM = "custom"


class SpendingZone(str, Enum):
    PROSPERITY = "prosperity"
    SAFE = "safe"
    CAUTION = "caution"


class GuardrailAction(str, Enum):
    NONE = "none"
    CUT = "cut"
    RAISE = "raise"


class BucketType(str, Enum):
    CASH = "cash"
    BONDS = "bonds"
    GROWTH = "growth"


class RefillCondition(str, Enum):
    GROWTH_UP = "A"        # Sell growth gains
    BONDS_UP = "B"         # Growth down, sell bonds
    PROTECTED = "C"        # Both down, suspend refills


class IncomeFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class IncomeCategory(str, Enum):
    SOCIAL_SECURITY = "social_security"
    PENSION = "pension"
    ANNUITY = "annuity"
    EMPLOYMENT = "employment"
    RENTAL = "rental"
    OTHER = "other"


class PaycheckSourceType(str, Enum):
    GUARANTEED = "guaranteed"
    VARIABLE = "variable"


# =============================================================================
# WITHDRAWAL ORDERING
# =============================================================================

TAX_TYPE_ORDER: Dict[WithdrawalOrderStrategy, List[TaxType]] = {
    WithdrawalOrderStrategy.TRADITIONAL: [TaxType.TAXABLE, TaxType.PRETAX, TaxType.ROTH],
    WithdrawalOrderStrategy.REVERSE: [TaxType.ROTH, TaxType.PRETAX, TaxType.TAXABLE],
}

WITHDRAWAL_ORDER_DESCRIPTIONS: Dict[WithdrawalOrderStrategy, Dict[str, str]] = {
    WithdrawalOrderStrategy.TRADITIONAL: {
        "name": "Traditional Order",
        "description": "Taxable -> Tax-Deferred -> Roth. Maximizes tax-free Roth growth "
                       "and minimizes early taxes.",
    },
    WithdrawalOrderStrategy.REVERSE: {
        "name": "Reverse Order",
        "description": "Roth -> Tax-Deferred -> Taxable. Uses Roth first for tax-free "
                       "income early.",
    },
    WithdrawalOrderStrategy.CUSTOM: {
        "name": "Custom Order",
        "description": "Your own account sequence. Unlisted accounts are drawn last.",
    },
}

# Share of a taxable-account draw treated as realized gain (simplified)
TAXABLE_GAIN_FRACTION = 0.15


def get_tax_type_order(strategy: WithdrawalOrderStrategy) -> List[TaxType]:
    """Tax type sequence for a tier-based strategy."""
    if strategy not in TAX_TYPE_ORDER:
        raise ValueError(f"Strategy '{strategy}' has no tax type ordering")
    return TAX_TYPE_ORDER[strategy]


# =============================================================================
# RMD TABLES (IRS Uniform Lifetime Table, 2022+)
# =============================================================================

RMD_DIVISORS: Dict[int, float] = {
    72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9,
    78: 22.0, 79: 21.1, 80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7,
    84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4, 88: 13.7, 89: 12.9,
    90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1, 94: 9.5, 95: 8.9,
    96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4, 101: 6.0,
    102: 5.6, 103: 5.2, 104: 4.9, 105: 4.6, 106: 4.3, 107: 4.1,
    108: 3.9, 109: 3.7, 110: 3.5, 111: 3.4, 112: 3.3, 113: 3.1,
    114: 3.0, 115: 2.9, 116: 2.8, 117: 2.7, 118: 2.5, 119: 2.3,
    120: 2.0,
}

RMD_TABLE_MIN_AGE = 72
RMD_TABLE_MAX_AGE = 120
RMD_FALLBACK_DIVISOR = 2.0

# SECURE Act 2.0
RMD_START_AGE_BORN_BEFORE_1960 = 73
RMD_START_AGE_BORN_1960_OR_LATER = 75
RMD_AGE_75_FIRST_BIRTH_YEAR = 1960


# =============================================================================
# GUARDRAIL DEFAULTS (Guyton-Klinger, two-threshold form)
# =============================================================================

GUARDRAIL_DEFAULTS = {
    "lower_threshold_pct": 80.0,    # Caution at or below 80% of starting value
    "upper_threshold_pct": 120.0,   # Prosperity at or above 120%
    "spending_cut_pct": 10.0,
    "spending_raise_pct": 10.0,
}

DEFAULT_MARKET_SHOCK = 0.15


# =============================================================================
# BUCKET STRATEGY DEFAULTS
# =============================================================================

BUCKET_CONFIGS: List[Dict] = [
    {
        "bucket": BucketType.CASH,
        "name": "Cash Bucket",
        "description": "Immediate needs (1-3 years)",
        "min_years": 1,
        "max_years": 3,
    },
    {
        "bucket": BucketType.BONDS,
        "name": "Bonds Bucket",
        "description": "Medium-term (4-10 years)",
        "min_years": 4,
        "max_years": 10,
    },
    {
        "bucket": BucketType.GROWTH,
        "name": "Growth Bucket",
        "description": "Long-term (11+ years)",
        "min_years": 11,
        "max_years": 30,
    },
]

BUCKET_DEFAULTS = {
    "bucket1_target_years": 2,
    "bucket2_target_years": 5,
    "bucket3_target_years": 15,
    "refill_threshold_pct": 80.0,
    "bucket2_ytd_return": 3.0,
    "bucket3_ytd_return": 8.0,
}

CASH_YTD_RETURN = 1.0            # Cash earns a small positive return
GROWTH_REFILL_CAP = 0.10         # Max 10% of growth bucket per refill
BONDS_REFILL_CAP = 0.15          # Max 15% of bonds bucket per refill
UNDERFUNDED_PCT = 80.0           # Below 80% full is underfunded
PERCENT_FULL_DISPLAY_CAP = 150.0


# =============================================================================
# PAYCHECK CONSTANTS
# =============================================================================

DEFAULT_EFFECTIVE_TAX_RATE = 0.15

INCOME_PERIODS_PER_YEAR: Dict[IncomeFrequency, int] = {
    IncomeFrequency.WEEKLY: 52,
    IncomeFrequency.BIWEEKLY: 26,
    IncomeFrequency.SEMIMONTHLY: 24,
    IncomeFrequency.MONTHLY: 12,
    IncomeFrequency.QUARTERLY: 4,
    IncomeFrequency.ANNUALLY: 1,
}

GUARANTEED_INCOME_CATEGORIES = {
    IncomeCategory.SOCIAL_SECURITY,
    IncomeCategory.PENSION,
    IncomeCategory.ANNUITY,
}


def to_monthly_amount(amount: float, frequency: IncomeFrequency) -> float:
    """Normalize an income amount paid at `frequency` to a monthly figure."""
    return amount * INCOME_PERIODS_PER_YEAR[frequency] / 12
