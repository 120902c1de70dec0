"""
Scheduled Sweeps Module

Batch processors run by an external job scheduler. Each one walks the loan
book and drives the regular LoanService operations, so every change made by a
sweep goes through the same locking, versioning and event dispatch as an
interactive call. A failure on one loan is logged and counted; the sweep
carries on with the rest.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from .errors import GoldLoanError
from .events import DomainEvent, EventPayload, loan_event
from .gold_return import OPEN_STATUSES, due_reminder_types, render_reminder_message
from .loans import LoanStatus, Recipient, UpgradeReason
from .money import ZERO
from .schedule import first_open_installment
from .service import LoanService
from .upgrades import is_eligible_for_upgrade


logger = logging.getLogger("goldloan.sweeps")


@dataclass
class SweepResult:
    """Outcome counters of a sweep run"""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = field(default_factory=dict)   # loan_id -> error

    def record_failure(self, loan_id: str, error: Exception) -> None:
        self.failed += 1
        self.failures[loan_id] = str(error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'failures': dict(self.failures),
        }


def process_interest_rate_upgrades(service: LoanService, now: Optional[datetime] = None) -> SweepResult:
    """
    Upgrade every eligible active loan by one rung

    Args:
        service: Loan service
        now: Sweep time; defaults to the service clock

    Returns:
        SweepResult with total eligible loans and per-loan outcomes
    """
    now = now or service.clock.now()
    result = SweepResult()

    eligible = [
        loan for loan in service.list_loans(status=LoanStatus.ACTIVE)
        if is_eligible_for_upgrade(loan, now, service.config)
    ]
    result.total = len(eligible)
    logger.info(f"Found {result.total} loans eligible for interest rate upgrade")

    for loan in eligible:
        try:
            _, outcome = service.upgrade_interest_rate(loan.loan_id, UpgradeReason.OVERDUE_UPGRADE)
            result.succeeded += 1
            logger.info(
                f"Upgraded loan {loan.loan_id} from {outcome.old_rate}% to {outcome.new_rate}%"
            )
        except GoldLoanError as e:
            result.record_failure(loan.loan_id, e)
            logger.error(f"Failed to upgrade loan {loan.loan_id}: {e}")

    logger.info(
        f"Interest rate upgrade sweep complete: {result.succeeded} upgraded, {result.failed} failed"
    )
    return result


def process_gold_return_reminders(service: LoanService, now: Optional[datetime] = None) -> SweepResult:
    """
    Chase customers who have not collected their gold

    For every closed loan whose return is pending or scheduled: flag it
    overdue once the closure is old enough (this also alerts the admin), then
    log each reminder type that has come due, which announces it.
    Reminder types already in the log are never sent again.
    """
    now = now or service.clock.now()
    result = SweepResult()

    loans = [
        loan for loan in service.list_loans(status=LoanStatus.CLOSED)
        if loan.gold_return_status in OPEN_STATUSES
    ]
    result.total = len(loans)
    logger.info(f"Found {result.total} closed loans with pending gold returns")

    for loan in loans:
        try:
            service.mark_gold_return_overdue(loan.loan_id)
            loan = service.get_loan(loan.loan_id)

            due = due_reminder_types(loan, now, service.config)
            if not due:
                result.skipped += 1
                continue

            # The service publishes each reminder once its log entry is saved
            for reminder_type in due:
                message = render_reminder_message(loan, reminder_type, now)
                loan = service.add_gold_return_reminder(
                    loan.loan_id, reminder_type, Recipient.CUSTOMER, message
                )
            result.succeeded += 1
        except GoldLoanError as e:
            result.record_failure(loan.loan_id, e)
            logger.error(f"Failed to process gold return reminders for loan {loan.loan_id}: {e}")

    logger.info(
        f"Gold return reminder sweep complete: {result.succeeded} loans reminded, "
        f"{result.skipped} up to date, {result.failed} failed"
    )
    return result


def find_payment_reminders(service: LoanService, now: Optional[datetime] = None) -> List[EventPayload]:
    """
    Announce upcoming and overdue installments

    Upcoming: the next open installment falls due in one of the configured
    offsets (3, 1 or 0 days). Overdue: every open installment past its due
    date. Loans are not modified.

    Returns:
        The loan.payment_reminder_due events that were published
    """
    now = now or service.clock.now()
    today = now.date()
    offsets = set(service.config.payment_reminder_offsets)
    events = []

    for loan in service.list_loans(status=LoanStatus.ACTIVE):
        upcoming = first_open_installment(loan.installments)
        if upcoming is not None:
            days_until_due = (upcoming.due_date - today).days
            if days_until_due in offsets:
                events.append(loan_event(
                    DomainEvent.PAYMENT_REMINDER_DUE, loan.loan_id, now,
                    kind="upcoming",
                    customer_id=loan.customer_id,
                    installment_number=upcoming.number,
                    due_date=upcoming.due_date,
                    amount_due=upcoming.outstanding,
                    days_until_due=days_until_due
                ))

        for installment in loan.installments:
            if installment.is_open and installment.due_date < today:
                events.append(loan_event(
                    DomainEvent.PAYMENT_REMINDER_DUE, loan.loan_id, now,
                    kind="overdue",
                    customer_id=loan.customer_id,
                    installment_number=installment.number,
                    due_date=installment.due_date,
                    amount_due=installment.outstanding,
                    days_overdue=(today - installment.due_date).days
                ))

    service.dispatcher.publish_all(events)
    logger.info(f"Published {len(events)} payment reminders")
    return events


def upgrade_statistics(service: LoanService, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Counts of loans awaiting an upgrade and of upgrades already applied"""
    now = now or service.clock.now()
    active = service.list_loans(status=LoanStatus.ACTIVE)

    eligible = [loan for loan in active if is_eligible_for_upgrade(loan, now, service.config)]
    first = [loan for loan in eligible if loan.current_upgrade_level == 0]
    second = [loan for loan in eligible if loan.current_upgrade_level == 1]

    history: Dict[str, int] = {}
    for loan in active:
        for record in loan.upgrade_history:
            key = f"{record.from_rate}->{record.to_rate}"
            history[key] = history.get(key, 0) + 1

    total_days = sum((now.date() - loan.disbursement_date).days for loan in eligible)
    return {
        'total_eligible': len(eligible),
        'first_upgrade_eligible': len(first),
        'second_upgrade_eligible': len(second),
        'total_principal': sum((loan.principal for loan in eligible), ZERO),
        'upgrade_history': history,
        'average_days_since_start': round(total_days / len(eligible)) if eligible else 0,
    }
