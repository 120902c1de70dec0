"""
Interest Rate Upgrade Module

Progressive re-pricing of delinquent loans along a fixed rate ladder
(18% -> 24% -> 30%, with 36% as an administrative top tier). Every upgrade
re-rates the whole loan life from the original disbursement date to a new
term end that grows by three months per level, and rebuilds the remaining
schedule from the upgrade date.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import GoldLoanConfig, get_config
from .errors import LoanClosed, NoFurtherUpgrades, ValidationError
from .events import DomainEvent, EventPayload, loan_event
from .interest import simple_interest
from .loans import Loan, LoanStatus, UpgradeReason, UpgradeRecord
from .money import Currency, ZERO, ceil_div, round_money, to_decimal
from .schedule import add_months, build_schedule


@dataclass(frozen=True)
class UpgradeOutcome:
    """Figures describing an applied upgrade"""
    old_rate: Decimal
    new_rate: Decimal
    old_total_payment: Decimal
    new_total_payment: Decimal
    old_remaining_balance: Decimal
    new_remaining_balance: Decimal
    upgrade_date: datetime
    new_term_end_date: date
    upgrade_level: int
    months_remaining: int
    monthly_payment: Decimal
    total_days_from_start: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'old_rate': str(self.old_rate),
            'new_rate': str(self.new_rate),
            'old_total_payment': str(self.old_total_payment),
            'new_total_payment': str(self.new_total_payment),
            'old_remaining_balance': str(self.old_remaining_balance),
            'new_remaining_balance': str(self.new_remaining_balance),
            'upgrade_date': self.upgrade_date.isoformat(),
            'new_term_end_date': self.new_term_end_date.isoformat(),
            'upgrade_level': self.upgrade_level,
            'months_remaining': self.months_remaining,
            'monthly_payment': str(self.monthly_payment),
            'total_days_from_start': self.total_days_from_start,
        }


def rate_ladder(original_rate: Decimal, config: Optional[GoldLoanConfig] = None) -> Optional[List[Decimal]]:
    """Rungs of the ladder for a loan originated at ``original_rate``, or None"""
    config = config or get_config()
    for key, rungs in config.rate_ladders.items():
        if to_decimal(key) == to_decimal(original_rate):
            return [to_decimal(rung) for rung in rungs]
    return None


def next_rung(
    loan: Loan,
    allow_top_tier: bool = False,
    config: Optional[GoldLoanConfig] = None
) -> Tuple[int, Decimal]:
    """
    Next (level, rate) for a loan

    The next level is derived strictly from the current (level, rate) pair so
    a level can never be skipped.

    Raises:
        NoFurtherUpgrades: No ladder, already at the top, the pair is off the
            ladder, or the next rung is the top tier without admin permission
    """
    config = config or get_config()
    ladder = rate_ladder(loan.original_interest_rate, config)
    if not ladder:
        raise NoFurtherUpgrades(
            f"No upgrade ladder for original rate {loan.original_interest_rate}%"
        )

    level = loan.current_upgrade_level
    if level < 0 or level >= len(ladder) or ladder[level] != loan.current_interest_rate:
        raise NoFurtherUpgrades(
            f"Loan {loan.loan_id} rate {loan.current_interest_rate}% does not match ladder level {level}"
        )

    new_level = level + 1
    if new_level >= len(ladder):
        raise NoFurtherUpgrades(f"No further upgrades available for loan {loan.loan_id}")
    if new_level >= config.top_tier_level and not allow_top_tier:
        raise NoFurtherUpgrades(
            f"Upgrade to the top tier for loan {loan.loan_id} requires an administrative action"
        )

    return new_level, ladder[new_level]


def upgrade_interest_rate(
    loan: Loan,
    reason,
    now: datetime,
    allow_top_tier: bool = False,
    config: Optional[GoldLoanConfig] = None
) -> Tuple[Loan, UpgradeOutcome, List[EventPayload]]:
    """
    Move an active loan one rung up the rate ladder

    Args:
        loan: Current loan state
        reason: overdue_upgrade or manual_upgrade
        now: Upgrade time
        allow_top_tier: Permit the administrative top tier; requires manual_upgrade

    Returns:
        Tuple of (new loan state, outcome, [loan.rate_upgraded event])

    Raises:
        ValidationError: Unknown reason, or top tier requested by the sweep
        LoanClosed: Loan is closed
        NoFurtherUpgrades: See next_rung
    """
    config = config or get_config()
    currency = Currency.from_code(config.currency_code)

    try:
        reason = UpgradeReason(reason) if not isinstance(reason, UpgradeReason) else reason
    except ValueError:
        raise ValidationError(f"Unknown upgrade reason '{reason}'")
    if allow_top_tier and reason != UpgradeReason.MANUAL_UPGRADE:
        raise ValidationError("Top tier upgrades must be manual")

    if loan.status == LoanStatus.CLOSED:
        raise LoanClosed(f"Cannot upgrade interest rate for closed loan {loan.loan_id}")
    if loan.status != LoanStatus.ACTIVE:
        raise LoanClosed(f"Loan {loan.loan_id} is not active")

    new_level, new_rate = next_rung(loan, allow_top_tier, config)
    today = now.date()

    # Horizon grows by a fixed block per level, from the original date
    new_term_end_date = add_months(loan.disbursement_date, config.upgrade_block_months * (new_level + 1))
    total_days = (new_term_end_date - loan.disbursement_date).days

    interest = simple_interest(loan.principal, new_rate, total_days, config)
    new_total_payment = round_money(loan.principal + interest, currency)
    new_remaining = max(ZERO, new_total_payment - loan.total_paid)

    months_remaining = max(1, ceil_div((new_term_end_date - today).days, 30))
    monthly_payment = round_money(new_remaining / Decimal(months_remaining), currency)

    record = UpgradeRecord(
        from_rate=loan.current_interest_rate,
        to_rate=new_rate,
        upgrade_date=now,
        reason=reason,
        new_term_end_date=new_term_end_date
    )

    updated = loan.with_ledger(
        new_total_payment,
        loan.total_paid,
        current_interest_rate=new_rate,
        current_upgrade_level=new_level,
        interest_rate_upgrade_date=now,
        interest_rate_upgrade_reason=reason,
        monthly_payment=monthly_payment,
        term_months=ceil_div(total_days, 30),
        installments=build_schedule(today, months_remaining, monthly_payment),
        upgrade_history=loan.upgrade_history + (record,)
    )

    outcome = UpgradeOutcome(
        old_rate=loan.current_interest_rate,
        new_rate=new_rate,
        old_total_payment=loan.total_payment,
        new_total_payment=updated.total_payment,
        old_remaining_balance=loan.remaining_balance,
        new_remaining_balance=updated.remaining_balance,
        upgrade_date=now,
        new_term_end_date=new_term_end_date,
        upgrade_level=new_level,
        months_remaining=months_remaining,
        monthly_payment=monthly_payment,
        total_days_from_start=total_days
    )

    event = loan_event(
        DomainEvent.RATE_UPGRADED, loan.loan_id, now,
        reason=reason,
        **outcome.to_dict()
    )
    return updated, outcome, [event]


def is_eligible_for_upgrade(
    loan: Loan,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> bool:
    """
    Whether the automated sweep should upgrade this loan

    First upgrade: three-month loans at least 90 days past disbursement.
    Second upgrade: loans on the first rung at least 180 days past
    disbursement. The top tier is never reached by the sweep.
    """
    config = config or get_config()
    if loan.status != LoanStatus.ACTIVE:
        return False

    ladder = rate_ladder(loan.original_interest_rate, config)
    if not ladder or len(ladder) < 2:
        return False

    days_since_start = (now.date() - loan.disbursement_date).days
    level = loan.current_upgrade_level

    if level == 0 and loan.current_interest_rate == ladder[0]:
        return (
            loan.term_months == config.first_upgrade_term_months
            and days_since_start >= config.first_upgrade_days
        )
    if level == 1 and len(ladder) > 2 and loan.current_interest_rate == ladder[1]:
        return config.top_tier_level > 2 and days_since_start >= config.second_upgrade_days
    return False
