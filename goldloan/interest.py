"""
Interest Engine Module

Day-count interest for gold loans with contractual minimums (minimum billed
days and a minimum absolute interest charge), plus the early-repayment
calculator that applies the holiday/Sunday grace period and the early
settlement rebate. All functions are pure; the current date is always passed in.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union

from .config import GoldLoanConfig, get_config
from .holidays import HolidayCalendar, FixedHolidayCalendar
from .money import Currency, Number, ZERO, ceil_div, round_money, to_decimal


DateLike = Union[date, datetime]


def as_date(value: DateLike) -> date:
    """Normalize a datetime to its calendar date"""
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class InterestResult:
    """Outcome of an interest calculation over a date range"""
    principal: Decimal
    annual_rate: Decimal
    total_interest: Decimal       # Rounded, after the minimum-charge floor
    total_amount: Decimal         # Rounded principal + interest
    days_outstanding: int         # Actual whole days between the dates
    effective_days: int           # Billed days after the minimum-days floor
    min_days: int
    min_interest_amount: Decimal
    months: int                   # Number of 30-day compounding blocks
    min_interest_applied: bool
    min_days_applied: bool

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


@dataclass(frozen=True)
class EarlyRepaymentQuote:
    """Amount due to settle a loan on a given date"""
    interest: InterestResult
    requested_date: date
    effective_date: date
    rebate: Decimal
    total_interest: Decimal       # After rebate
    total_amount: Decimal         # After rebate
    grace_period_applied: bool
    grace_period_days: int

    @property
    def total_due(self) -> Decimal:
        return self.total_amount

    @property
    def principal(self) -> Decimal:
        return self.interest.principal

    @property
    def effective_days(self) -> int:
        return self.interest.effective_days

    @property
    def months(self) -> int:
        return self.interest.months

    @property
    def min_interest_applied(self) -> bool:
        return self.interest.min_interest_applied

    @property
    def min_days_applied(self) -> bool:
        return self.interest.min_days_applied

    def to_dict(self) -> Dict[str, Any]:
        result = self.interest.to_dict()
        result.update({
            "requested_date": self.requested_date.isoformat(),
            "effective_date": self.effective_date.isoformat(),
            "rebate": str(self.rebate),
            "total_interest": str(self.total_interest),
            "total_amount": str(self.total_amount),
            "total_due": str(self.total_due),
            "grace_period_applied": self.grace_period_applied,
            "grace_period_days": self.grace_period_days,
        })
        return result


def _currency(config: GoldLoanConfig) -> Currency:
    return Currency.from_code(config.currency_code)


def minimum_days(annual_rate: Number, config: Optional[GoldLoanConfig] = None) -> int:
    """Minimum billed days: short for rates above the threshold, long otherwise"""
    config = config or get_config()
    if to_decimal(annual_rate) > to_decimal(config.min_rate_threshold):
        return config.min_days_high_rate
    return config.min_days_low_rate


def compute_interest(
    principal: Number,
    annual_rate: Number,
    from_date: DateLike,
    to_date: DateLike,
    config: Optional[GoldLoanConfig] = None
) -> InterestResult:
    """
    Calculate interest owed between two dates

    Interest accrues daily at annual_rate/100/365 and compounds every 30 days.
    Spans shorter than the contractual minimum are billed at the minimum, and
    the interest charge is never below the minimum interest amount.

    Args:
        principal: Amount disbursed
        annual_rate: Annual interest rate as a percentage (18 for 18%)
        from_date: Disbursement date
        to_date: Settlement date

    Returns:
        InterestResult with rounded totals
    """
    config = config or get_config()
    currency = _currency(config)
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)

    days_outstanding = (as_date(to_date) - as_date(from_date)).days
    min_days = minimum_days(annual_rate, config)
    effective_days = max(days_outstanding, min_days)

    daily_rate = annual_rate / Decimal("100") / Decimal(config.days_in_year)
    block = config.compounding_block_days
    months = ceil_div(effective_days, block)

    amount = principal
    for i in range(months):
        days_this_block = min(block, effective_days - i * block)
        amount += amount * daily_rate * Decimal(days_this_block)

    interest = amount - principal
    min_interest = to_decimal(config.min_interest_amount)
    min_interest_applied = interest < min_interest
    if min_interest_applied:
        interest = min_interest

    return InterestResult(
        principal=principal,
        annual_rate=annual_rate,
        total_interest=round_money(interest, currency),
        total_amount=round_money(principal + interest, currency),
        days_outstanding=days_outstanding,
        effective_days=effective_days,
        min_days=min_days,
        min_interest_amount=min_interest,
        months=months,
        min_interest_applied=min_interest_applied,
        min_days_applied=effective_days != days_outstanding
    )


def simple_interest(
    principal: Number,
    annual_rate: Number,
    days: int,
    config: Optional[GoldLoanConfig] = None
) -> Decimal:
    """Non-compounded day-count interest, unrounded"""
    config = config or get_config()
    daily_rate = to_decimal(annual_rate) / Decimal("100") / Decimal(config.days_in_year)
    return to_decimal(principal) * daily_rate * Decimal(max(days, 0))


def compute_early_repayment(
    loan,
    as_of: DateLike,
    calendar: Optional[HolidayCalendar] = None,
    config: Optional[GoldLoanConfig] = None
) -> EarlyRepaymentQuote:
    """
    Calculate the amount needed to close a loan on a given date

    The requested date is moved forward past holidays and Sundays, interest is
    computed from disbursement to that effective date at the loan's current
    rate, and settlements within the rebate window earn a rebate on interest.

    Args:
        loan: Anything exposing principal, current_interest_rate and
            disbursement_date (normally a Loan)
        as_of: Requested settlement date
        calendar: Non-business-day calendar (defaults to the configured holidays)

    Returns:
        EarlyRepaymentQuote
    """
    config = config or get_config()
    calendar = calendar or FixedHolidayCalendar.from_config(config)
    currency = _currency(config)

    requested_date = as_date(as_of)
    effective_date = calendar.next_business_day(requested_date)

    result = compute_interest(
        loan.principal,
        loan.current_interest_rate,
        loan.disbursement_date,
        effective_date,
        config
    )

    total_interest = result.total_interest
    total_amount = result.total_amount
    rebate = ZERO
    days = (effective_date - as_date(loan.disbursement_date)).days
    if days <= config.early_rebate_window_days:
        rebate = round_money(total_interest * to_decimal(config.early_rebate_rate), currency)
        total_interest -= rebate
        total_amount -= rebate

    return EarlyRepaymentQuote(
        interest=result,
        requested_date=requested_date,
        effective_date=effective_date,
        rebate=rebate,
        total_interest=round_money(total_interest, currency),
        total_amount=round_money(total_amount, currency),
        grace_period_applied=effective_date != requested_date,
        grace_period_days=(effective_date - requested_date).days
    )
