"""
Auction Module

Collateral auction for severely delinquent loans:

    not_ready -> ready_for_auction -> auction_scheduled -> auctioned
    any state except auctioned -> cancelled

Every transition appends a customer notification to the loan and emits
loan.auction_state_changed. Auctioning closes the loan.
"""

from datetime import datetime, date, time, timezone
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .errors import AlreadyAuctioned, LoanClosed, NotReadyForAuction
from .events import DomainEvent, EventPayload, loan_event
from .loans import (
    Actor, AuctionNotification, AuctionNotificationType, AuctionStatus, Loan, LoanStatus,
    Recipient
)


def _transition(
    loan: Loan,
    now: datetime,
    new_status: AuctionStatus,
    notification_type: AuctionNotificationType,
    message: str,
    by: Optional[Actor],
    **changes: Any
) -> Tuple[Loan, List[EventPayload]]:
    notification = AuctionNotification(
        sent_date=now,
        type=notification_type,
        sent_to=Recipient.CUSTOMER,
        message=message,
        sent_by=by
    )
    updated = replace(
        loan,
        auction_status=new_status,
        auction_notifications=loan.auction_notifications + (notification,),
        **changes
    )
    event = loan_event(
        DomainEvent.AUCTION_STATE_CHANGED, loan.loan_id, now,
        from_status=loan.auction_status,
        to_status=new_status,
        notification_type=notification_type,
        message=message,
        by=by.name if by else None
    )
    return updated, [event]


def mark_ready_for_auction(
    loan: Loan,
    notes: str,
    by: Optional[Actor],
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Flag an active loan for auction

    Raises:
        LoanClosed: Loan is closed
        AlreadyAuctioned: Loan has already been auctioned
    """
    if loan.status == LoanStatus.CLOSED:
        raise LoanClosed(f"Cannot mark closed loan {loan.loan_id} for auction")
    if loan.auction_status == AuctionStatus.AUCTIONED:
        raise AlreadyAuctioned(f"Loan {loan.loan_id} has already been auctioned")

    message = (
        f"Loan {loan.loan_id} has been marked as ready for auction due to non-payment. "
        f"Please pay the full amount to avoid auction."
    )
    return _transition(
        loan, now, AuctionStatus.READY_FOR_AUCTION, AuctionNotificationType.AUCTION_WARNING,
        message, by,
        auction_ready_date=now,
        auction_notes=notes or ""
    )


def schedule_auction(
    loan: Loan,
    auction_date: date,
    notes: str,
    by: Optional[Actor],
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Schedule the auction of a loan that is ready for it

    Raises:
        LoanClosed: Loan is closed
        NotReadyForAuction: Loan is not ready_for_auction
    """
    if loan.status == LoanStatus.CLOSED:
        raise LoanClosed(f"Cannot schedule auction for closed loan {loan.loan_id}")
    if loan.auction_status != AuctionStatus.READY_FOR_AUCTION:
        raise NotReadyForAuction(
            f"Loan {loan.loan_id} must be marked as ready for auction before scheduling"
        )

    message = (
        f"Auction for loan {loan.loan_id} has been scheduled for {auction_date:%a %b %d %Y}. "
        f"Please pay the full amount before this date to avoid auction."
    )
    return _transition(
        loan, now, AuctionStatus.AUCTION_SCHEDULED, AuctionNotificationType.AUCTION_SCHEDULED,
        message, by,
        auction_scheduled_date=auction_date,
        auction_notes=notes or loan.auction_notes
    )


def mark_as_auctioned(
    loan: Loan,
    auction_date: Optional[date],
    notes: str,
    by: Optional[Actor],
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Record the sale of the collateral and close the loan

    The closure date is the auction date (midnight UTC) or ``now`` when no
    date is given.

    Raises:
        LoanClosed: Loan is closed
        NotReadyForAuction: Loan is neither ready nor scheduled
    """
    if loan.status == LoanStatus.CLOSED:
        raise LoanClosed(f"Cannot auction closed loan {loan.loan_id}")
    if loan.auction_status not in (AuctionStatus.READY_FOR_AUCTION, AuctionStatus.AUCTION_SCHEDULED):
        raise NotReadyForAuction(
            f"Loan {loan.loan_id} must be scheduled or ready for auction before marking as auctioned"
        )

    if auction_date is None:
        auction_date = now.date()
        closed_date = now
    else:
        closed_date = datetime.combine(auction_date, time(), tzinfo=timezone.utc)

    message = (
        f"Loan {loan.loan_id} has been auctioned on {auction_date:%a %b %d %Y}. "
        f"The gold items have been sold to recover the outstanding amount."
    )
    return _transition(
        loan, now, AuctionStatus.AUCTIONED, AuctionNotificationType.FINAL_WARNING,
        message, by,
        auction_date=auction_date,
        auction_notes=notes or loan.auction_notes,
        status=LoanStatus.CLOSED,
        closed_date=closed_date
    )


def cancel_auction(
    loan: Loan,
    notes: str,
    by: Optional[Actor],
    now: datetime
) -> Tuple[Loan, List[EventPayload]]:
    """
    Cancel a pending auction

    Raises:
        AlreadyAuctioned: Loan has already been auctioned
    """
    if loan.auction_status == AuctionStatus.AUCTIONED:
        raise AlreadyAuctioned(f"Cannot cancel already auctioned loan {loan.loan_id}")

    message = (
        f"Auction for loan {loan.loan_id} has been cancelled. "
        f"Please continue with regular payments."
    )
    return _transition(
        loan, now, AuctionStatus.CANCELLED, AuctionNotificationType.AUCTION_WARNING,
        message, by,
        auction_notes=notes or loan.auction_notes
    )


def auction_summary(loan: Loan, now: datetime) -> Dict[str, Any]:
    """Read-only auction overview"""
    days_since_ready = (now - loan.auction_ready_date).days if loan.auction_ready_date else 0
    return {
        'loan_id': loan.loan_id,
        'customer_id': loan.customer_id,
        'auction_status': loan.auction_status,
        'auction_ready_date': loan.auction_ready_date,
        'auction_scheduled_date': loan.auction_scheduled_date,
        'auction_date': loan.auction_date,
        'days_since_ready': days_since_ready,
        'total_gold_weight': loan.total_gold_weight,
        'outstanding_amount': loan.remaining_balance,
        'notifications_sent': len(loan.auction_notifications),
        'notes': loan.auction_notes,
    }
