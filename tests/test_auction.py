"""
Tests for the auction state machine
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from goldloan.auction import (
    auction_summary, cancel_auction, mark_as_auctioned, mark_ready_for_auction, schedule_auction
)
from goldloan.config import GoldLoanConfig
from goldloan.errors import AlreadyAuctioned, LoanClosed, NotReadyForAuction
from goldloan.events import DomainEvent
from goldloan.loans import (
    Actor, AuctionNotificationType, AuctionStatus, GoldItem, LoanParams, LoanStatus, Recipient,
    originate
)
from goldloan.payments import record_payment


DISBURSED = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
ADMIN = Actor("admin-1", "Admin")


class TestAuctionLifecycle:
    """Test ready -> scheduled -> auctioned"""

    def setup_method(self):
        self.loan, _ = originate(
            LoanParams("CUST001", Decimal("50000"), 3, Decimal("18"),
                       gold_items=(GoldItem("Necklace", Decimal("22"), Decimal("20")),)),
            DISBURSED, GoldLoanConfig()
        )

    def test_full_lifecycle(self):
        """Test full lifecycle"""
        loan, events = mark_ready_for_auction(self.loan, "Six months overdue", ADMIN, NOW)

        assert loan.auction_status == AuctionStatus.READY_FOR_AUCTION
        assert loan.auction_ready_date == NOW
        assert loan.auction_notes == "Six months overdue"
        assert events[0].event_type == DomainEvent.AUCTION_STATE_CHANGED
        assert events[0].data["from_status"] == AuctionStatus.NOT_READY
        assert events[0].data["to_status"] == AuctionStatus.READY_FOR_AUCTION

        loan, events = schedule_auction(loan, date(2024, 6, 15), "", ADMIN, NOW)

        assert loan.auction_status == AuctionStatus.AUCTION_SCHEDULED
        assert loan.auction_scheduled_date == date(2024, 6, 15)
        assert loan.auction_notes == "Six months overdue"
        assert "Sat Jun 15 2024" in loan.auction_notifications[-1].message

        loan, events = mark_as_auctioned(loan, date(2024, 6, 15), "Sold", ADMIN, NOW)

        assert loan.auction_status == AuctionStatus.AUCTIONED
        assert loan.status == LoanStatus.CLOSED
        assert loan.auction_date == date(2024, 6, 15)
        assert loan.closed_date == datetime(2024, 6, 15, tzinfo=timezone.utc)
        assert loan.auction_notes == "Sold"
        assert events[0].data["to_status"] == AuctionStatus.AUCTIONED

        assert [n.type for n in loan.auction_notifications] == [
            AuctionNotificationType.AUCTION_WARNING,
            AuctionNotificationType.AUCTION_SCHEDULED,
            AuctionNotificationType.FINAL_WARNING,
        ]
        assert all(n.sent_to == Recipient.CUSTOMER for n in loan.auction_notifications)
        assert all(n.sent_by == ADMIN for n in loan.auction_notifications)

    def test_auction_straight_from_ready(self):
        """Test auction straight from ready"""
        loan, _ = mark_ready_for_auction(self.loan, "", ADMIN, NOW)
        loan, _ = mark_as_auctioned(loan, None, "", ADMIN, NOW)

        assert loan.auction_status == AuctionStatus.AUCTIONED
        assert loan.auction_date == date(2024, 6, 1)
        assert loan.closed_date == NOW

    def test_cancel_then_mark_ready_again(self):
        """Test cancel then mark ready again"""
        loan, _ = mark_ready_for_auction(self.loan, "", ADMIN, NOW)
        loan, _ = schedule_auction(loan, date(2024, 6, 15), "", ADMIN, NOW)
        loan, events = cancel_auction(loan, "Customer paid", ADMIN, NOW)

        assert loan.auction_status == AuctionStatus.CANCELLED
        assert loan.status == LoanStatus.ACTIVE
        assert events[0].data["from_status"] == AuctionStatus.AUCTION_SCHEDULED

        loan, _ = mark_ready_for_auction(loan, "", ADMIN, NOW)
        assert loan.auction_status == AuctionStatus.READY_FOR_AUCTION

    def test_summary(self):
        """Test summary"""
        loan, _ = mark_ready_for_auction(self.loan, "", ADMIN, DISBURSED)
        summary = auction_summary(loan, NOW)

        assert summary["auction_status"] == AuctionStatus.READY_FOR_AUCTION
        assert summary["days_since_ready"] == 152
        assert summary["outstanding_amount"] == Decimal("52278")
        assert summary["total_gold_weight"] == Decimal("20")
        assert summary["notifications_sent"] == 1


class TestAuctionGuards:
    """Test the rejected transitions"""

    def setup_method(self):
        config = GoldLoanConfig()
        self.loan, _ = originate(LoanParams("CUST001", Decimal("50000"), 3, Decimal("18")), DISBURSED, config)
        ready, _ = mark_ready_for_auction(self.loan, "", ADMIN, NOW)
        self.auctioned, _ = mark_as_auctioned(ready, None, "", ADMIN, NOW)
        self.closed, _, _ = record_payment(
            self.loan, Decimal("60000"), "handcash", None, datetime(2024, 2, 1, tzinfo=timezone.utc), config=config
        )

    def test_schedule_requires_ready(self):
        """Test scheduling requires ready_for_auction"""
        with pytest.raises(NotReadyForAuction) as exc_info:
            schedule_auction(self.loan, date(2024, 6, 15), "", ADMIN, NOW)
        assert exc_info.value.guard == "NotReadyForAuction"

    def test_auctioned_requires_ready_or_scheduled(self):
        """Test auctioning requires ready or scheduled"""
        with pytest.raises(NotReadyForAuction):
            mark_as_auctioned(self.loan, None, "", ADMIN, NOW)

    def test_closed_loan_cannot_be_marked_ready(self):
        """Test closed loan cannot be marked ready"""
        assert self.closed.status == LoanStatus.CLOSED
        with pytest.raises(LoanClosed):
            mark_ready_for_auction(self.closed, "", ADMIN, NOW)

    def test_auctioned_loan_is_final(self):
        """Test auctioned loan is final"""
        with pytest.raises(AlreadyAuctioned):
            cancel_auction(self.auctioned, "", ADMIN, NOW)
        with pytest.raises(LoanClosed):
            schedule_auction(self.auctioned, date(2024, 6, 15), "", ADMIN, NOW)
        with pytest.raises(LoanClosed):
            mark_as_auctioned(self.auctioned, None, "", ADMIN, NOW)

    def test_auctioned_loan_reports_closed_before_auctioned(self):
        """Test auctioned loan reports closed before auctioned"""
        with pytest.raises(LoanClosed):
            mark_ready_for_auction(self.auctioned, "", ADMIN, NOW)

    def test_paid_off_loan_cannot_go_to_auction(self):
        """Test a loan closed by payment after being flagged cannot be auctioned"""
        config = GoldLoanConfig()
        ready, _ = mark_ready_for_auction(self.loan, "", ADMIN, datetime(2024, 1, 20, tzinfo=timezone.utc))
        paid_off, _, _ = record_payment(
            ready, Decimal("60000"), "handcash", None, datetime(2024, 2, 1, tzinfo=timezone.utc), config=config
        )
        assert paid_off.status == LoanStatus.CLOSED
        assert paid_off.auction_status == AuctionStatus.READY_FOR_AUCTION

        with pytest.raises(LoanClosed) as exc_info:
            schedule_auction(paid_off, date(2024, 6, 15), "", ADMIN, NOW)
        assert exc_info.value.guard == "LoanClosed"

        with pytest.raises(LoanClosed):
            mark_as_auctioned(paid_off, date(2024, 6, 1), "", ADMIN, NOW)

    def test_paid_off_scheduled_auction_cannot_complete(self):
        """Test a scheduled auction on a since-closed loan keeps the payment closure"""
        config = GoldLoanConfig()
        ready, _ = mark_ready_for_auction(self.loan, "", ADMIN, datetime(2024, 1, 20, tzinfo=timezone.utc))
        scheduled, _ = schedule_auction(ready, date(2024, 6, 15), "", ADMIN, datetime(2024, 1, 21, tzinfo=timezone.utc))
        closed_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
        paid_off, _, _ = record_payment(scheduled, Decimal("60000"), "handcash", None, closed_at, config=config)

        with pytest.raises(LoanClosed):
            mark_as_auctioned(paid_off, date(2024, 6, 15), "", ADMIN, NOW)
        assert paid_off.closed_date == closed_at
