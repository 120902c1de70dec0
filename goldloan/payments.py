"""
Payment Allocation Module

Applies incoming payments to a loan. Every payment re-prices the loan to the
payment date through the early-repayment calculator, credits the earliest
open installment, and closes the loan (bullet repayment) once the re-priced
amount is covered.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import replace
from typing import List, Optional, Tuple

from .config import GoldLoanConfig, get_config
from .errors import (
    AlreadyApproved, LoanClosed, NoPendingInstallments, PaymentNotFound, ValidationError
)
from .events import DomainEvent, EventPayload, loan_event
from .holidays import HolidayCalendar
from .interest import EarlyRepaymentQuote, DateLike, compute_early_repayment
from .loans import (
    Actor, GoldReturnStatus, Loan, LoanStatus, Payment, PaymentMethod, PaymentStatus,
    SYSTEM_ACTOR, new_payment_id
)
from .money import Currency, Number, ZERO, round_money, to_decimal
from .schedule import first_open_installment


def _parse_amount(amount: Number) -> Decimal:
    try:
        value = to_decimal(amount)
    except ValueError as e:
        raise ValidationError(str(e))
    if not value.is_finite() or value <= ZERO:
        raise ValidationError("Payment amount must be greater than zero")
    return value


def _parse_method(method) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown payment method '{method}'")


def gold_return_status_at_closure(loan: Loan, now: datetime) -> dict:
    """
    Gold-return fields for a loan that has just closed

    Loans holding gold start in pending; loans without collateral are marked
    returned by the system straight away.
    """
    if loan.has_gold_collateral:
        return {'gold_return_status': GoldReturnStatus.PENDING}
    return {
        'gold_return_status': GoldReturnStatus.RETURNED,
        'gold_return_date': now,
        'gold_returned_by': SYSTEM_ACTOR,
    }


def calculate_early_repayment_amount(
    loan: Loan,
    as_of: DateLike,
    calendar: Optional[HolidayCalendar] = None,
    config: Optional[GoldLoanConfig] = None
) -> EarlyRepaymentQuote:
    """Read-only preview of the amount needed to close the loan on a date"""
    return compute_early_repayment(loan, as_of, calendar, config)


def record_payment(
    loan: Loan,
    amount: Number,
    method,
    entered_by: Optional[Actor],
    now: datetime,
    transaction_id: Optional[str] = None,
    bank_name: Optional[str] = None,
    calendar: Optional[HolidayCalendar] = None,
    config: Optional[GoldLoanConfig] = None
) -> Tuple[Loan, Payment, List[EventPayload]]:
    """
    Record a payment against an active loan

    Args:
        loan: Current loan state
        amount: Amount received
        method: handcash or online
        entered_by: Who recorded the payment
        now: Payment time
        transaction_id: Required for online payments
        bank_name: Depositing bank, if any

    Returns:
        Tuple of (new loan state, payment record, events)

    Raises:
        ValidationError: Bad amount or method
        LoanClosed: Loan is not active
        NoPendingInstallments: Nothing left to pay against
    """
    config = config or get_config()
    currency = Currency.from_code(config.currency_code)

    amount = _parse_amount(amount)
    method = _parse_method(method)
    if method == PaymentMethod.ONLINE and not transaction_id:
        raise ValidationError("Transaction ID is required for online payments")

    if loan.status != LoanStatus.ACTIVE:
        raise LoanClosed(f"Loan {loan.loan_id} is not active for payments")

    installment = first_open_installment(loan.installments)
    if installment is None:
        raise NoPendingInstallments(f"No pending installments found for loan {loan.loan_id}")

    # Re-price the whole loan to the payment date
    quote = compute_early_repayment(loan, now, calendar, config)
    total_payment = quote.total_amount

    updated_installment, applied = installment.apply(amount)
    installments = tuple(
        updated_installment if inst.number == installment.number else inst
        for inst in loan.installments
    )

    # The full amount counts towards the loan, even beyond this installment
    total_paid = loan.total_paid + amount
    updated = loan.with_ledger(total_payment, total_paid, installments=installments)

    payment = Payment(
        payment_id=new_payment_id(),
        amount=amount,
        date=now,
        method=method,
        installment_number=installment.number,
        remaining_balance=updated.remaining_balance,
        entered_by=entered_by,
        transaction_id=transaction_id,
        bank_name=bank_name
    )
    updated = replace(updated, payments=loan.payments + (payment,))

    events = [
        loan_event(
            DomainEvent.PAYMENT_RECORDED, loan.loan_id, now,
            payment_id=payment.payment_id,
            amount=amount,
            method=method,
            installment_number=installment.number,
            applied_to_installment=applied,
            total_payment=updated.total_payment,
            total_paid=updated.total_paid,
            remaining_balance=updated.remaining_balance,
            rebate=quote.rebate,
            grace_period_applied=quote.grace_period_applied
        )
    ]

    paid_in_full = round_money(total_paid, currency) >= round_money(total_payment, currency)
    if paid_in_full or updated.remaining_balance <= ZERO:
        updated = replace(
            updated,
            status=LoanStatus.CLOSED,
            closed_date=now,
            actual_repayment_date=now,
            actual_amount_paid=total_paid,
            installments=tuple(inst.settle() for inst in updated.installments),
            **gold_return_status_at_closure(updated, now)
        )
        events.append(
            loan_event(
                DomainEvent.LOAN_CLOSED, loan.loan_id, now,
                closed_date=now,
                total_paid=total_paid,
                total_payment=total_payment,
                gold_return_status=updated.gold_return_status,
                total_gold_weight=updated.total_gold_weight
            )
        )

    return updated, payment, events


def approve_payment(
    loan: Loan,
    payment_id: str,
    now: datetime,
    approved_by: Optional[Actor] = None
) -> Tuple[Loan, Payment, List[EventPayload]]:
    """
    Approve a pending payment

    Raises:
        PaymentNotFound: No payment with that id
        AlreadyApproved: Payment is already successful
    """
    payment = loan.find_payment(payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found on loan {loan.loan_id}")
    if payment.status == PaymentStatus.SUCCESS:
        raise AlreadyApproved(f"Payment {payment_id} already approved")

    approved = replace(payment, status=PaymentStatus.SUCCESS)
    updated = replace(
        loan,
        payments=tuple(approved if p.payment_id == payment_id else p for p in loan.payments)
    )

    event = loan_event(
        DomainEvent.PAYMENT_APPROVED, loan.loan_id, now,
        payment_id=payment_id,
        amount=payment.amount,
        approved_by=approved_by.name if approved_by else None,
        remaining_balance=updated.remaining_balance
    )
    return updated, approved, [event]
