"""
Installment Schedule Module

Builds the monthly due-date ledger of a loan. Used at origination and again,
from the upgrade date, whenever an interest-rate upgrade regenerates the
remaining schedule.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Tuple
import calendar

from .money import Currency, Number, ZERO, round_money, to_decimal


class InstallmentStatus(Enum):
    """Installment payment states"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


@dataclass(frozen=True)
class Installment:
    """Single monthly installment"""
    number: int
    due_date: date
    amount: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    amount_paid: Decimal = ZERO

    @property
    def is_open(self) -> bool:
        return self.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL)

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.amount - self.amount_paid)

    def apply(self, amount: Decimal) -> Tuple["Installment", Decimal]:
        """
        Apply up to ``amount`` to this installment

        Returns:
            Tuple of (updated installment, portion applied)
        """
        applied = min(amount, self.amount - self.amount_paid)
        amount_paid = self.amount_paid + applied
        status = InstallmentStatus.PAID if amount_paid >= self.amount else InstallmentStatus.PARTIAL
        return replace(self, amount_paid=amount_paid, status=status), applied

    def settle(self) -> "Installment":
        """Mark fully paid, as at loan closure"""
        return replace(self, status=InstallmentStatus.PAID, amount_paid=self.amount)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def installment_amount(
    total: Number,
    term_months: int,
    currency: Currency = Currency.INR
) -> Decimal:
    """Uniform installment: total split evenly, rounded to the currency unit"""
    if term_months < 1:
        raise ValueError("Term must be at least one month")
    return round_money(to_decimal(total) / Decimal(term_months), currency)


def build_schedule(
    start_date: date,
    term_months: int,
    amount: Number
) -> Tuple[Installment, ...]:
    """
    Generate a uniform monthly schedule

    Installment i falls due i calendar months after start_date. Each date is
    computed from start_date directly so month-end clamping never drifts.

    Args:
        start_date: Disbursement (or re-schedule) date
        term_months: Number of installments
        amount: Amount of every installment

    Returns:
        Tuple of pending installments numbered 1..term_months
    """
    if term_months < 1:
        raise ValueError("Term must be at least one month")
    amount = to_decimal(amount)

    return tuple(
        Installment(
            number=i,
            due_date=add_months(start_date, i),
            amount=amount
        )
        for i in range(1, term_months + 1)
    )


def first_open_installment(installments: Sequence[Installment]) -> Optional[Installment]:
    """Earliest installment still pending or partially paid"""
    for installment in installments:
        if installment.is_open:
            return installment
    return None
