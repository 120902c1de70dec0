"""
Tests for the loan service

Covers the load/transition/save/publish cycle, retries on concurrent
updates and the end-to-end loan scenarios.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import Mock, patch

from goldloan.clock import FixedClock
from goldloan.config import GoldLoanConfig
from goldloan.errors import ConcurrencyConflict, LoanClosed, LoanNotFound
from goldloan.events import DomainEvent, EventDispatcher
from goldloan.holidays import FixedHolidayCalendar
from goldloan.loans import (
    Actor, AuctionStatus, GoldItem, GoldReturnStatus, LoanParams, LoanStatus, PaymentStatus
)
from goldloan.service import LoanService
from goldloan.storage import InMemoryLoanStorage


DISBURSED = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
TELLER = Actor("emp-7", "Teller")


class FlakyStorage(InMemoryLoanStorage):
    """Fails the first N updates as if another writer got there first"""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def save(self, loan):
        if loan.version > 0:
            self.attempts += 1
            if self.failures > 0:
                self.failures -= 1
                raise ConcurrencyConflict("simulated concurrent update")
        return super().save(loan)


def make_service(storage=None, now=DISBURSED, config=None):
    return LoanService(
        storage or InMemoryLoanStorage(),
        clock=FixedClock(now),
        calendar=FixedHolidayCalendar([date(2024, 8, 15)]),
        dispatcher=EventDispatcher(),
        config=config or GoldLoanConfig()
    )


def gold_params(**kwargs):
    params = dict(
        customer_id="CUST001",
        principal=Decimal("36500"),
        term_months=3,
        interest_rate=Decimal("10"),
        gold_items=(GoldItem("Chain", Decimal("11"), Decimal("10")),),
    )
    params.update(kwargs)
    return LoanParams(**params)


class TestLoanServiceOperations:
    """Test the load, transition, save, publish cycle"""

    def setup_method(self):
        self.service = make_service()
        self.handler = Mock()
        self.service.dispatcher.subscribe_all(self.handler)

    def test_originate_saves_and_publishes(self):
        """Test originate saves and publishes"""
        loan = self.service.originate(gold_params())

        assert loan.version == 1
        assert self.service.get_loan(loan.loan_id) == loan
        assert self.handler.call_count == 1
        assert self.handler.call_args[0][0].event_type == DomainEvent.LOAN_ORIGINATED

    def test_get_missing_loan(self):
        """Test getting a missing loan raises"""
        with pytest.raises(LoanNotFound):
            self.service.get_loan("missing")
        with pytest.raises(LoanNotFound):
            self.service.record_payment("missing", Decimal("100"), "handcash")

    def test_originate_regenerates_colliding_ids(self):
        """Test originate regenerates colliding ids"""
        with patch("goldloan.loans.random.randint", side_effect=[5, 5, 7]):
            first = self.service.originate(gold_params())
            second = self.service.originate(gold_params())

        assert first.loan_id == "GL24010110000005"
        assert second.loan_id == "GL24010110000007"
        assert self.service.storage.count() == 2

    def test_originate_with_taken_explicit_id(self):
        """Test originate with taken explicit id"""
        self.service.originate(gold_params(loan_id="GL1"))

        with pytest.raises(ConcurrencyConflict):
            self.service.originate(gold_params(loan_id="GL1"))

    def test_record_payment_uses_clock(self):
        """Test record payment uses clock"""
        loan = self.service.originate(gold_params())
        self.service.clock.set(datetime(2024, 1, 31, 11, 0, tzinfo=timezone.utc))

        updated, payment = self.service.record_payment(loan.loan_id, Decimal("10000"), "handcash", TELLER)

        assert updated.version == 2
        assert updated.remaining_balance == Decimal("26794")
        assert payment.date == datetime(2024, 1, 31, 11, 0, tzinfo=timezone.utc)
        assert self.service.get_loan(loan.loan_id).total_paid == Decimal("10000")

    def test_guard_violation_leaves_loan_unchanged(self):
        """Test guard violation leaves loan unchanged"""
        loan = self.service.originate(gold_params())
        self.service.record_payment(loan.loan_id, Decimal("40000"), "handcash")
        self.handler.reset_mock()

        with pytest.raises(LoanClosed):
            self.service.record_payment(loan.loan_id, Decimal("100"), "handcash")

        stored = self.service.get_loan(loan.loan_id)
        assert stored.status == LoanStatus.CLOSED
        assert stored.version == 2
        assert len(stored.payments) == 1
        self.handler.assert_not_called()

    def test_no_op_transition_is_not_saved(self):
        """Test no-op transitions are not saved"""
        loan = self.service.originate(gold_params())
        closed, _ = self.service.record_payment(loan.loan_id, Decimal("40000"), "handcash")

        same = self.service.mark_gold_return_overdue(loan.loan_id)

        assert same.version == closed.version

    def test_repayment_preview(self):
        """Test repayment preview"""
        loan = self.service.originate(gold_params())

        quote = self.service.calculate_early_repayment_amount(loan.loan_id, date(2024, 1, 31))

        assert quote.total_due == Decimal("36794")
        assert self.service.get_loan(loan.loan_id).version == 1

    def test_failing_handler_does_not_undo_save(self):
        """Test failing handler does not undo save"""
        loan = self.service.originate(gold_params())
        self.service.dispatcher.subscribe(DomainEvent.PAYMENT_RECORDED, Mock(side_effect=RuntimeError("smtp down")))

        updated, _ = self.service.record_payment(loan.loan_id, Decimal("100"), "handcash")

        assert self.service.get_loan(loan.loan_id).version == updated.version == 2
        assert self.handler.call_count == 2

    def test_list_loans(self):
        """Test listing loans by status"""
        first = self.service.originate(gold_params(loan_id="GL1"))
        self.service.originate(gold_params(loan_id="GL2"))
        self.service.record_payment(first.loan_id, Decimal("40000"), "handcash")

        assert [loan.loan_id for loan in self.service.list_loans(status=LoanStatus.ACTIVE)] == ["GL2"]
        assert len(self.service.list_loans()) == 2


class TestConcurrencyRetries:
    """Test reload-and-retry on ConcurrencyConflict"""

    def test_retries_after_conflict(self):
        """Test retries after conflict"""
        storage = FlakyStorage(failures=2)
        service = make_service(storage)
        handler = Mock()
        service.dispatcher.subscribe(DomainEvent.PAYMENT_RECORDED, handler)
        loan = service.originate(gold_params())

        updated, _ = service.record_payment(loan.loan_id, Decimal("100"), "handcash")

        assert storage.attempts == 3
        assert updated.version == 2
        assert len(updated.payments) == 1
        assert handler.call_count == 1

    def test_gives_up_after_max_retries(self):
        """Test gives up after max retries"""
        storage = FlakyStorage(failures=10)
        service = make_service(storage, config=GoldLoanConfig(max_conflict_retries=2))
        handler = Mock()
        service.dispatcher.subscribe(DomainEvent.PAYMENT_RECORDED, handler)
        loan = service.originate(gold_params())

        with pytest.raises(ConcurrencyConflict):
            service.record_payment(loan.loan_id, Decimal("100"), "handcash")

        assert storage.attempts == 3
        assert service.get_loan(loan.loan_id).payments == ()
        handler.assert_not_called()

    def test_loan_locks_are_released(self):
        """Test per-loan locks do not pile up once operations finish"""
        service = make_service()
        for _ in range(3):
            loan = service.originate(gold_params())
            service.record_payment(loan.loan_id, Decimal("100"), "handcash")

        assert len(service._locks) == 0


class TestLoanScenarios:
    """End-to-end loan lifecycles"""

    def test_pay_off_and_return_gold(self):
        """Test pay off and return gold"""
        service = make_service()
        loan = service.originate(gold_params())

        service.clock.set(datetime(2024, 1, 31, 11, 0, tzinfo=timezone.utc))
        loan, payment = service.record_payment(loan.loan_id, Decimal("10000"), "handcash", TELLER)
        loan, _ = service.approve_payment(loan.loan_id, payment.payment_id, TELLER)
        assert loan.payments[0].status == PaymentStatus.SUCCESS

        loan, _ = service.record_payment(loan.loan_id, loan.remaining_balance, "online", TELLER,
                                         transaction_id="UTR1")
        assert loan.status == LoanStatus.CLOSED
        assert loan.gold_return_status == GoldReturnStatus.PENDING

        service.clock.advance(days=2)
        loan = service.schedule_gold_return(loan.loan_id, date(2024, 2, 5), "Morning visit")
        assert loan.gold_return_status == GoldReturnStatus.SCHEDULED

        service.clock.set(datetime(2024, 2, 5, 10, 0, tzinfo=timezone.utc))
        loan = service.mark_gold_returned(loan.loan_id, TELLER)
        assert loan.gold_return_status == GoldReturnStatus.RETURNED
        assert loan.gold_return_date == datetime(2024, 2, 5, 10, 0, tzinfo=timezone.utc)

        summary = service.gold_return_summary(loan.loan_id)
        assert summary["is_overdue"] is False

    def test_upgrade_then_auction(self):
        """Test upgrade then auction"""
        service = make_service(config=GoldLoanConfig())
        loan = service.originate(gold_params(principal=Decimal("50000"), interest_rate=Decimal("18")))

        service.clock.set(datetime(2024, 4, 5, 9, 0, tzinfo=timezone.utc))
        loan, outcome = service.upgrade_interest_rate(loan.loan_id)
        assert loan.current_interest_rate == Decimal("24")
        assert outcome.new_rate == Decimal("24")

        service.clock.set(datetime(2024, 9, 1, 9, 0, tzinfo=timezone.utc))
        admin = Actor("admin-1", "Admin")
        loan = service.mark_ready_for_auction(loan.loan_id, "No payments", admin)
        loan = service.schedule_auction(loan.loan_id, date(2024, 9, 20), by=admin)
        loan = service.mark_as_auctioned(loan.loan_id, date(2024, 9, 20), by=admin)

        assert loan.status == LoanStatus.CLOSED
        assert loan.auction_status == AuctionStatus.AUCTIONED
        assert service.auction_summary(loan.loan_id)["notifications_sent"] == 3

        with pytest.raises(LoanClosed):
            service.record_payment(loan.loan_id, Decimal("100"), "handcash")

    def test_cancelled_auction_keeps_loan_active(self):
        """Test cancelled auction keeps loan active"""
        service = make_service()
        loan = service.originate(gold_params())

        service.mark_ready_for_auction(loan.loan_id)
        loan = service.cancel_auction(loan.loan_id, "Customer paid arrears")

        assert loan.auction_status == AuctionStatus.CANCELLED
        assert loan.status == LoanStatus.ACTIVE

    def test_paid_off_loan_leaves_auction(self):
        """Test a loan paid off after being flagged cannot then be auctioned"""
        service = make_service()
        loan = service.originate(gold_params())
        admin = Actor("admin-1", "Admin")
        service.mark_ready_for_auction(loan.loan_id, "Arrears", admin)

        service.clock.set(datetime(2024, 1, 31, 11, 0, tzinfo=timezone.utc))
        closed, _ = service.record_payment(loan.loan_id, Decimal("36794"), "handcash", TELLER)
        assert closed.status == LoanStatus.CLOSED

        with pytest.raises(LoanClosed):
            service.mark_as_auctioned(loan.loan_id, date(2024, 6, 1), by=admin)

        unchanged = service.get_loan(loan.loan_id)
        assert unchanged.version == closed.version
        assert unchanged.closed_date == datetime(2024, 1, 31, 11, 0, tzinfo=timezone.utc)
        assert unchanged.gold_return_status == GoldReturnStatus.PENDING
