"""
Gold Return Module

Tracks the hand-back of pledged gold once a loan has closed:

    pending -> scheduled -> returned
    pending | scheduled -> overdue   (more than 30 days after closure)

Reminders are logged on the loan so the reminder sweep never sends the same
type twice.
"""

from datetime import datetime, date
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .config import GoldLoanConfig, get_config
from .errors import GoldAlreadyReturned, LoanNotClosed, ValidationError
from .events import DomainEvent, EventPayload, loan_event
from .loans import (
    Actor, GoldReturnReminder, GoldReturnStatus, Loan, LoanStatus, Recipient, ReminderType
)
from .payments import gold_return_status_at_closure


OPEN_STATUSES = (GoldReturnStatus.PENDING, GoldReturnStatus.SCHEDULED)


def _require_closed(loan: Loan, action: str) -> None:
    if loan.status != LoanStatus.CLOSED:
        raise LoanNotClosed(f"Gold return can only be {action} for closed loans ({loan.loan_id})")


def days_since_closed(loan: Loan, now: datetime) -> int:
    """Whole days since closure; 0 for open loans or missing closure dates"""
    if loan.status != LoanStatus.CLOSED or loan.closed_date is None:
        return 0
    return max(0, (now - loan.closed_date).days)


def is_gold_return_overdue(
    loan: Loan,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> bool:
    config = config or get_config()
    return (
        days_since_closed(loan, now) > config.gold_return_overdue_days
        and loan.gold_return_status != GoldReturnStatus.RETURNED
    )


def schedule_gold_return(
    loan: Loan,
    scheduled_date: Optional[date],
    notes: str,
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Schedule the return of gold for a closed loan

    Raises:
        ValidationError: No date given
        LoanNotClosed: Loan is not closed
        GoldAlreadyReturned: Gold has already been handed back
    """
    if scheduled_date is None:
        raise ValidationError("Scheduled return date is required")
    _require_closed(loan, "scheduled")
    if loan.gold_return_status == GoldReturnStatus.RETURNED:
        raise GoldAlreadyReturned(f"Gold for loan {loan.loan_id} has already been returned")

    updated = replace(
        loan,
        gold_return_status=GoldReturnStatus.SCHEDULED,
        gold_return_scheduled_date=scheduled_date,
        gold_return_notes=notes or ""
    )
    event = loan_event(
        DomainEvent.GOLD_RETURN_SCHEDULED, loan.loan_id, now,
        scheduled_date=scheduled_date,
        notes=updated.gold_return_notes
    )
    return updated, [event]


def mark_gold_returned(
    loan: Loan,
    returned_by: Optional[Actor],
    notes: str,
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Record that the customer has collected the gold

    Raises:
        LoanNotClosed: Loan is not closed
    """
    _require_closed(loan, "marked")

    updated = replace(
        loan,
        gold_return_status=GoldReturnStatus.RETURNED,
        gold_return_date=now,
        gold_returned_by=returned_by,
        gold_return_notes=notes or loan.gold_return_notes
    )
    event = loan_event(
        DomainEvent.GOLD_RETURNED, loan.loan_id, now,
        returned_by=returned_by.name if returned_by else None,
        total_gold_weight=loan.total_gold_weight
    )
    return updated, [event]


def add_gold_return_reminder(
    loan: Loan,
    reminder_type,
    sent_to,
    message: str,
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Append a reminder to the log

    Returns the loan and a loan.gold_return_reminder_due event for the
    delivery side. Callers check the log first so each type goes out once.
    """
    try:
        reminder_type = ReminderType(reminder_type)
        sent_to = Recipient(sent_to)
    except ValueError as e:
        raise ValidationError(str(e))

    reminder = GoldReturnReminder(
        sent_date=now,
        type=reminder_type,
        sent_to=sent_to,
        message=message or ""
    )
    event = loan_event(
        DomainEvent.GOLD_RETURN_REMINDER_DUE, loan.loan_id, now,
        reminder_type=reminder_type,
        sent_to=sent_to,
        customer_id=loan.customer_id,
        message=reminder.message
    )
    return replace(loan, gold_return_reminders=loan.gold_return_reminders + (reminder,)), [event]


def has_reminder(loan: Loan, reminder_type) -> bool:
    """Whether a reminder of this type is already in the log"""
    reminder_type = ReminderType(reminder_type)
    return any(r.type == reminder_type for r in loan.gold_return_reminders)


def initialize_gold_return_status(loan: Loan, now: datetime) -> Tuple[Loan, List[EventPayload]]:
    """
    Backfill the gold return status of a closed loan that has none

    Raises:
        LoanNotClosed: Loan is not closed
    """
    if loan.status != LoanStatus.CLOSED:
        raise LoanNotClosed(
            f"Gold return status can only be initialized for closed loans ({loan.loan_id})"
        )
    if loan.gold_return_status is not None:
        return loan, []
    return replace(loan, **gold_return_status_at_closure(loan, now)), []


def mark_gold_return_overdue(
    loan: Loan,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> Tuple[Loan, List[EventPayload]]:
    """
    Time-triggered overdue edge

    No-op unless the return is still pending or scheduled and the closure is
    more than the configured number of days old.

    Raises:
        LoanNotClosed: Loan is not closed
    """
    config = config or get_config()
    _require_closed(loan, "marked overdue")

    if loan.gold_return_status not in OPEN_STATUSES:
        return loan, []
    days = days_since_closed(loan, now)
    if days <= config.gold_return_overdue_days:
        return loan, []

    updated = replace(loan, gold_return_status=GoldReturnStatus.OVERDUE)
    event = loan_event(
        DomainEvent.GOLD_RETURN_OVERDUE, loan.loan_id, now,
        days_since_closed=days,
        total_gold_weight=loan.total_gold_weight,
        gold_items=[(item.description, item.net_weight) for item in loan.gold_items],
        sent_to=Recipient.ADMIN
    )
    return updated, [event]


def due_reminder_types(
    loan: Loan,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> List[ReminderType]:
    """Reminder types whose day threshold has passed and that are not yet logged"""
    config = config or get_config()
    days = days_since_closed(loan, now)

    due = []
    for name, threshold in sorted(config.gold_return_reminder_days.items(), key=lambda kv: kv[1]):
        reminder_type = ReminderType(name)
        if days >= threshold and not has_reminder(loan, reminder_type):
            due.append(reminder_type)
    return due


def render_reminder_message(loan: Loan, reminder_type: ReminderType, now: datetime) -> str:
    """Plain-text body for a customer gold collection reminder"""
    days = days_since_closed(loan, now)
    details = f"Total gold weight: {loan.total_gold_weight}g, items: {len(loan.gold_items)}."

    if reminder_type == ReminderType.INITIAL:
        return (
            f"Your loan {loan.loan_id} has been closed. Your gold items are ready "
            f"for collection. {details} Please bring valid ID proof and the loan closure receipt."
        )
    if reminder_type == ReminderType.FOLLOWUP:
        return (
            f"Your gold items from loan {loan.loan_id} are still waiting for collection. "
            f"It has been {days} days since your loan was closed. {details}"
        )
    if reminder_type == ReminderType.URGENT:
        return (
            f"URGENT: Your gold items from loan {loan.loan_id} have been waiting for "
            f"collection for {days} days. {details} Please contact us immediately."
        )
    return (
        f"FINAL NOTICE: Your gold items from loan {loan.loan_id} have been waiting for "
        f"collection for {days} days. {details} Please collect them within the next 7 days."
    )


def gold_return_summary(
    loan: Loan,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> Dict[str, Any]:
    """Read-only gold return overview"""
    status = loan.gold_return_status or GoldReturnStatus.PENDING
    return {
        'loan_id': loan.loan_id,
        'customer_id': loan.customer_id,
        'total_gold_weight': loan.total_gold_weight,
        'gold_item_count': len(loan.gold_items),
        'closed_date': loan.closed_date,
        'days_since_closed': days_since_closed(loan, now),
        'gold_return_status': status,
        'scheduled_return_date': loan.gold_return_scheduled_date,
        'actual_return_date': loan.gold_return_date,
        'reminders_sent': len(loan.gold_return_reminders),
        'is_overdue': is_gold_return_overdue(loan, now, config),
    }
