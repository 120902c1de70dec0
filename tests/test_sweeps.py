"""
Tests for the scheduled sweeps
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import Mock, patch

from goldloan.clock import FixedClock
from goldloan.config import GoldLoanConfig
from goldloan.errors import ConcurrencyConflict
from goldloan.events import DomainEvent, EventDispatcher
from goldloan.holidays import FixedHolidayCalendar
from goldloan.loans import GoldItem, GoldReturnStatus, LoanParams, Recipient, ReminderType
from goldloan.service import LoanService
from goldloan.storage import InMemoryLoanStorage
from goldloan.sweeps import (
    find_payment_reminders, process_gold_return_reminders, process_interest_rate_upgrades,
    upgrade_statistics
)


DISBURSED = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def at(year, month, day):
    return datetime(year, month, day, 9, 0, tzinfo=timezone.utc)


def make_service():
    return LoanService(
        InMemoryLoanStorage(),
        clock=FixedClock(DISBURSED),
        calendar=FixedHolidayCalendar([]),
        dispatcher=EventDispatcher(),
        config=GoldLoanConfig()
    )


class TestInterestRateUpgradeSweep:
    """Test the upgrade sweep"""

    def setup_method(self):
        self.service = make_service()
        self.three_month = self.service.originate(
            LoanParams("CUST001", Decimal("50000"), 3, Decimal("18"), loan_id="GL1")
        )
        self.six_month = self.service.originate(
            LoanParams("CUST002", Decimal("50000"), 6, Decimal("18"), loan_id="GL2")
        )
        self.low_rate = self.service.originate(
            LoanParams("CUST003", Decimal("50000"), 3, Decimal("12"), loan_id="GL3")
        )

    def test_nothing_due_before_ninety_days(self):
        """Test nothing due before ninety days"""
        result = process_interest_rate_upgrades(self.service, at(2024, 3, 30))

        assert result.total == 0
        assert self.service.get_loan("GL1").current_upgrade_level == 0

    def test_upgrades_eligible_loans(self):
        """Test upgrades eligible loans"""
        self.service.clock.set(at(2024, 4, 5))

        result = process_interest_rate_upgrades(self.service)

        assert result.total == 1
        assert result.succeeded == 1
        assert self.service.get_loan("GL1").current_interest_rate == Decimal("24")
        assert self.service.get_loan("GL2").current_upgrade_level == 0

    def test_failures_are_counted_per_loan(self):
        """Test failures are counted per loan"""
        self.service.clock.set(at(2024, 4, 5))

        with patch.object(self.service, "upgrade_interest_rate", side_effect=ConcurrencyConflict("busy")):
            result = process_interest_rate_upgrades(self.service)

        assert result.total == 1
        assert result.succeeded == 0
        assert result.failed == 1
        assert result.failures == {"GL1": "busy"}
        assert result.to_dict()["failed"] == 1

    def test_second_run_is_a_no_op(self):
        """Test a second run is a no-op"""
        self.service.clock.set(at(2024, 4, 5))
        process_interest_rate_upgrades(self.service)

        result = process_interest_rate_upgrades(self.service)

        assert result.total == 0
        assert len(self.service.get_loan("GL1").upgrade_history) == 1

    def test_statistics(self):
        """Test upgrade statistics"""
        stats = upgrade_statistics(self.service, at(2024, 4, 5))

        assert stats["total_eligible"] == 1
        assert stats["first_upgrade_eligible"] == 1
        assert stats["second_upgrade_eligible"] == 0
        assert stats["total_principal"] == Decimal("50000")
        assert stats["average_days_since_start"] == 95

        self.service.clock.set(at(2024, 4, 5))
        self.service.upgrade_interest_rate("GL1")
        stats = upgrade_statistics(self.service, at(2024, 4, 5))
        assert stats["upgrade_history"] == {"18->24": 1}


class TestGoldReturnReminderSweep:
    """Test the gold return reminder sweep"""

    def setup_method(self):
        self.service = make_service()
        self.handler = Mock()
        self.admin_handler = Mock()
        self.service.dispatcher.subscribe(DomainEvent.GOLD_RETURN_REMINDER_DUE, self.handler)
        self.service.dispatcher.subscribe(DomainEvent.GOLD_RETURN_OVERDUE, self.admin_handler)

        loan = self.service.originate(LoanParams(
            "CUST001", Decimal("36500"), 3, Decimal("10"), loan_id="GL1",
            gold_items=(GoldItem("Chain", Decimal("11"), Decimal("10")),)
        ))
        self.service.clock.set(datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc))
        self.service.record_payment(loan.loan_id, Decimal("36794"), "handcash")

    def run(self, when):
        self.service.clock.set(when)
        return process_gold_return_reminders(self.service)

    def reminder_types(self):
        return [r.type for r in self.service.get_loan("GL1").gold_return_reminders]

    def test_sends_initial_reminder(self):
        """Test sends initial reminder"""
        result = self.run(at(2024, 2, 4))

        assert result.total == 1
        assert result.succeeded == 1
        assert self.reminder_types() == [ReminderType.INITIAL]
        event = self.handler.call_args[0][0]
        assert event.data["reminder_type"] == ReminderType.INITIAL
        assert event.data["sent_to"] == Recipient.CUSTOMER
        assert "GL1" in event.data["message"]

    def test_running_twice_sends_each_type_once(self):
        """Test running twice sends each type once"""
        self.run(at(2024, 2, 4))
        result = self.run(at(2024, 2, 4))

        assert result.skipped == 1
        assert self.reminder_types() == [ReminderType.INITIAL]
        assert self.handler.call_count == 1

    def test_catches_up_on_missed_reminders(self):
        """Test catches up on missed reminders"""
        self.run(at(2024, 2, 16))

        assert self.reminder_types() == [ReminderType.INITIAL, ReminderType.FOLLOWUP, ReminderType.URGENT]

    def test_marks_overdue_and_alerts_admin(self):
        """Test marks overdue and alerts admin"""
        result = self.run(at(2024, 3, 5))

        loan = self.service.get_loan("GL1")
        assert loan.gold_return_status == GoldReturnStatus.OVERDUE
        assert self.admin_handler.call_count == 1
        assert ReminderType.FINAL in self.reminder_types()
        assert result.succeeded == 1

        # Overdue loans drop out of later runs
        assert self.run(at(2024, 3, 20)).total == 0

    def test_reminder_not_announced_when_save_fails(self):
        """Test a reminder whose log entry cannot be saved is not sent"""
        with patch.object(self.service.storage, "save", side_effect=ConcurrencyConflict("busy")):
            result = self.run(at(2024, 2, 4))

        assert result.failed == 1
        assert result.failures == {"GL1": "busy"}
        assert self.reminder_types() == []
        self.handler.assert_not_called()

        self.run(at(2024, 2, 4))
        assert self.reminder_types() == [ReminderType.INITIAL]
        assert self.handler.call_count == 1

    def test_returned_gold_is_not_chased(self):
        """Test returned gold is not chased"""
        self.service.mark_gold_returned("GL1")

        result = self.run(at(2024, 2, 20))

        assert result.total == 0
        self.handler.assert_not_called()


class TestPaymentReminders:
    """Test upcoming and overdue installment reminders"""

    def setup_method(self):
        self.service = make_service()
        self.handler = Mock()
        self.service.dispatcher.subscribe(DomainEvent.PAYMENT_REMINDER_DUE, self.handler)
        self.service.originate(LoanParams("CUST001", Decimal("36500"), 3, Decimal("10"), loan_id="GL1"))

    def test_upcoming_reminder_offsets(self):
        """Test upcoming reminder offsets"""
        assert len(find_payment_reminders(self.service, at(2024, 1, 29))) == 1
        assert find_payment_reminders(self.service, at(2024, 1, 30)) == []
        assert len(find_payment_reminders(self.service, at(2024, 1, 31))) == 1

        events = find_payment_reminders(self.service, at(2024, 2, 1))
        assert events[0].data["kind"] == "upcoming"
        assert events[0].data["days_until_due"] == 0
        assert events[0].data["due_date"] == date(2024, 2, 1)

    def test_overdue_installments(self):
        """Test overdue installments"""
        events = find_payment_reminders(self.service, at(2024, 3, 10))

        overdue = [e for e in events if e.data["kind"] == "overdue"]
        assert [e.data["installment_number"] for e in overdue] == [1, 2]
        assert overdue[0].data["days_overdue"] == 38
        assert self.handler.call_count == len(events)

    def test_paid_installments_are_skipped(self):
        """Test paid installments are skipped"""
        loan = self.service.get_loan("GL1")
        self.service.clock.set(at(2024, 1, 20))
        self.service.record_payment("GL1", loan.monthly_payment, "handcash")

        events = find_payment_reminders(self.service, at(2024, 2, 29))

        assert [e.data["installment_number"] for e in events] == [2]
