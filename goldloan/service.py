"""
Loan Service Module

Imperative shell around the pure loan transitions. Each operation:

1. serializes on the loan id (per-loan lock),
2. loads the loan and reads the clock once,
3. runs exactly one transition,
4. saves against the loaded version, reloading and re-running the whole
   transition on ConcurrencyConflict up to ``max_conflict_retries`` times,
5. publishes the transition's events after a successful save.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import threading
import weakref

from .auction import (
    auction_summary, cancel_auction, mark_as_auctioned, mark_ready_for_auction, schedule_auction
)
from .clock import Clock, SystemClock
from .config import GoldLoanConfig, get_config
from .errors import ConcurrencyConflict, LoanNotFound
from .events import EventDispatcher, EventPayload
from .gold_return import (
    add_gold_return_reminder, gold_return_summary, initialize_gold_return_status,
    mark_gold_return_overdue, mark_gold_returned, schedule_gold_return
)
from .holidays import FixedHolidayCalendar, HolidayCalendar
from .interest import DateLike, EarlyRepaymentQuote
from .loans import Actor, Loan, LoanParams, LoanStatus, Payment, UpgradeReason, originate
from .logging_config import log_action
from .payments import approve_payment, calculate_early_repayment_amount, record_payment
from .storage import LoanStorage
from .upgrades import UpgradeOutcome, upgrade_interest_rate


logger = logging.getLogger("goldloan.service")

# transition(loan, now) -> (new loan, result, events)
Transition = Callable[[Loan, datetime], Tuple[Loan, Any, List[EventPayload]]]


class LoanService:
    """
    Entry point for every change to a loan
    """

    def __init__(
        self,
        storage: LoanStorage,
        clock: Optional[Clock] = None,
        calendar: Optional[HolidayCalendar] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[GoldLoanConfig] = None
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.calendar = calendar or FixedHolidayCalendar.from_config(self.config)
        self.dispatcher = dispatcher or EventDispatcher()

        # Entries vanish once no operation holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _loan_lock(self, loan_id: str):
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    def _publish(self, events: List[EventPayload]) -> None:
        self.dispatcher.publish_all(events)

    def _apply(self, loan_id: str, action: str, transition: Transition,
               actor: Optional[Actor] = None) -> Tuple[Loan, Any]:
        """
        Run one transition against the stored loan

        Returns:
            Tuple of (saved loan, transition result)

        Raises:
            LoanNotFound: No such loan
            ConcurrencyConflict: Retries exhausted
        """
        retries = self.config.max_conflict_retries
        lock = self._loan_lock(loan_id)
        with lock:
            attempt = 0
            while True:
                loan = self.get_loan(loan_id)
                now = self.clock.now()
                new_loan, result, events = transition(loan, now)

                if new_loan is loan:
                    self._publish(events)
                    return loan, result

                try:
                    saved = self.storage.save(new_loan)
                except ConcurrencyConflict:
                    if attempt >= retries:
                        logger.error(f"Giving up on {action} for loan {loan_id} after {attempt + 1} attempts")
                        raise
                    attempt += 1
                    logger.warning(f"Concurrent update on loan {loan_id} during {action}, retry {attempt}/{retries}")
                    continue

                log_action(
                    logger, "info", f"Applied {action} to loan {loan_id}",
                    loan_id=loan_id,
                    action=action,
                    user_id=actor.id if actor else None,
                    extra={'version': saved.version, 'status': saved.status.value}
                )
                self._publish(events)
                return saved, result

    # --- Queries -------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.storage.load(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, status: Optional[LoanStatus] = None, **filters: Any) -> List[Loan]:
        return self.storage.find(status=status, **filters)

    def calculate_early_repayment_amount(
        self,
        loan_id: str,
        as_of: Optional[DateLike] = None
    ) -> EarlyRepaymentQuote:
        """Preview the amount that would close the loan; nothing is saved"""
        loan = self.get_loan(loan_id)
        return calculate_early_repayment_amount(
            loan, as_of or self.clock.now(), self.calendar, self.config
        )

    def gold_return_summary(self, loan_id: str) -> Dict[str, Any]:
        return gold_return_summary(self.get_loan(loan_id), self.clock.now(), self.config)

    def auction_summary(self, loan_id: str) -> Dict[str, Any]:
        return auction_summary(self.get_loan(loan_id), self.clock.now())

    # --- Origination ---------------------------------------------------------

    def originate(self, params: LoanParams) -> Loan:
        """
        Originate, disburse and store a new loan

        Generated loan ids that collide with an existing loan are regenerated.

        Raises:
            ValidationError: Bad parameters
            ConcurrencyConflict: Explicit loan id already taken, or no free id found
        """
        attempt = 0
        while True:
            now = self.clock.now()
            loan, events = originate(params, now, self.config)
            try:
                saved = self.storage.save(loan)
                break
            except ConcurrencyConflict:
                if params.loan_id or attempt >= self.config.max_conflict_retries:
                    raise
                attempt += 1
                logger.warning(f"Loan id {loan.loan_id} already taken, generating another")

        log_action(
            logger, "info", f"Originated loan {saved.loan_id}",
            loan_id=saved.loan_id,
            action="originate",
            extra={'principal': str(saved.principal), 'term_months': saved.term_months}
        )
        self._publish(events)
        return saved

    # --- Payments ------------------------------------------------------------

    def record_payment(
        self,
        loan_id: str,
        amount,
        method,
        entered_by: Optional[Actor] = None,
        transaction_id: Optional[str] = None,
        bank_name: Optional[str] = None
    ) -> Tuple[Loan, Payment]:
        def transition(loan, now):
            return record_payment(
                loan, amount, method, entered_by, now,
                transaction_id=transaction_id,
                bank_name=bank_name,
                calendar=self.calendar,
                config=self.config
            )

        return self._apply(loan_id, "record_payment", transition, entered_by)

    def approve_payment(
        self,
        loan_id: str,
        payment_id: str,
        approved_by: Optional[Actor] = None
    ) -> Tuple[Loan, Payment]:
        def transition(loan, now):
            return approve_payment(loan, payment_id, now, approved_by)

        return self._apply(loan_id, "approve_payment", transition, approved_by)

    # --- Interest rate upgrades -----------------------------------------------

    def upgrade_interest_rate(
        self,
        loan_id: str,
        reason=UpgradeReason.OVERDUE_UPGRADE,
        allow_top_tier: bool = False,
        by: Optional[Actor] = None
    ) -> Tuple[Loan, UpgradeOutcome]:
        def transition(loan, now):
            return upgrade_interest_rate(loan, reason, now, allow_top_tier, self.config)

        return self._apply(loan_id, "upgrade_interest_rate", transition, by)

    # --- Gold return ---------------------------------------------------------

    def schedule_gold_return(self, loan_id: str, scheduled_date: Optional[date], notes: str = "") -> Loan:
        def transition(loan, now):
            new_loan, events = schedule_gold_return(loan, scheduled_date, notes, now)
            return new_loan, None, events

        return self._apply(loan_id, "schedule_gold_return", transition)[0]

    def mark_gold_returned(self, loan_id: str, returned_by: Optional[Actor] = None, notes: str = "") -> Loan:
        def transition(loan, now):
            new_loan, events = mark_gold_returned(loan, returned_by, notes, now)
            return new_loan, None, events

        return self._apply(loan_id, "mark_gold_returned", transition, returned_by)[0]

    def add_gold_return_reminder(self, loan_id: str, reminder_type, sent_to, message: str = "") -> Loan:
        def transition(loan, now):
            new_loan, events = add_gold_return_reminder(loan, reminder_type, sent_to, message, now)
            return new_loan, None, events

        return self._apply(loan_id, "add_gold_return_reminder", transition)[0]

    def initialize_gold_return_status(self, loan_id: str) -> Loan:
        def transition(loan, now):
            new_loan, events = initialize_gold_return_status(loan, now)
            return new_loan, None, events

        return self._apply(loan_id, "initialize_gold_return_status", transition)[0]

    def mark_gold_return_overdue(self, loan_id: str) -> Loan:
        def transition(loan, now):
            new_loan, events = mark_gold_return_overdue(loan, now, self.config)
            return new_loan, None, events

        return self._apply(loan_id, "mark_gold_return_overdue", transition)[0]

    # --- Auction -------------------------------------------------------------

    def mark_ready_for_auction(self, loan_id: str, notes: str = "", by: Optional[Actor] = None) -> Loan:
        def transition(loan, now):
            new_loan, events = mark_ready_for_auction(loan, notes, by, now)
            return new_loan, None, events

        return self._apply(loan_id, "mark_ready_for_auction", transition, by)[0]

    def schedule_auction(self, loan_id: str, auction_date: date, notes: str = "",
                         by: Optional[Actor] = None) -> Loan:
        def transition(loan, now):
            new_loan, events = schedule_auction(loan, auction_date, notes, by, now)
            return new_loan, None, events

        return self._apply(loan_id, "schedule_auction", transition, by)[0]

    def mark_as_auctioned(self, loan_id: str, auction_date: Optional[date] = None, notes: str = "",
                          by: Optional[Actor] = None) -> Loan:
        def transition(loan, now):
            new_loan, events = mark_as_auctioned(loan, auction_date, notes, by, now)
            return new_loan, None, events

        return self._apply(loan_id, "mark_as_auctioned", transition, by)[0]

    def cancel_auction(self, loan_id: str, notes: str = "", by: Optional[Actor] = None) -> Loan:
        def transition(loan, now):
            new_loan, events = cancel_auction(loan, notes, by, now)
            return new_loan, None, events

        return self._apply(loan_id, "cancel_auction", transition, by)[0]
