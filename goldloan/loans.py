"""
Loan Module

The gold loan aggregate: immutable value types for the loan, its installments,
payments, upgrade history, collateral, gold-return and auction logs, plus
origination and storage (de)serialization. Every later change to a loan goes
through the transition functions in payments, upgrades, gold_return and
auction, each returning a new Loan and the domain events it produced.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
from enum import Enum
import random
import uuid

from .config import GoldLoanConfig, get_config
from .errors import ValidationError
from .events import DomainEvent, EventPayload, loan_event
from .interest import compute_interest
from .money import Currency, Number, ZERO, to_decimal
from .schedule import (
    Installment, InstallmentStatus, add_months, build_schedule, installment_amount
)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    APPROVED = "approved"    # Approved, not yet disbursed
    REJECTED = "rejected"
    ACTIVE = "active"        # Disbursed and in repayment
    CLOSED = "closed"        # Fully repaid or auctioned


class PaymentMethod(Enum):
    HANDCASH = "handcash"
    ONLINE = "online"


class PaymentStatus(Enum):
    PENDING = "pending"      # Recorded, awaiting approval
    SUCCESS = "success"      # Approved


class UpgradeReason(Enum):
    OVERDUE_UPGRADE = "overdue_upgrade"
    MANUAL_UPGRADE = "manual_upgrade"


class GoldReturnStatus(Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RETURNED = "returned"
    OVERDUE = "overdue"


class ReminderType(Enum):
    INITIAL = "initial"
    FOLLOWUP = "followup"
    URGENT = "urgent"
    FINAL = "final"


class Recipient(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    BOTH = "both"


class AuctionStatus(Enum):
    NOT_READY = "not_ready"
    READY_FOR_AUCTION = "ready_for_auction"
    AUCTION_SCHEDULED = "auction_scheduled"
    AUCTIONED = "auctioned"
    CANCELLED = "cancelled"


class AuctionNotificationType(Enum):
    AUCTION_WARNING = "auction_warning"
    AUCTION_SCHEDULED = "auction_scheduled"
    FINAL_WARNING = "final_warning"


@dataclass(frozen=True)
class Actor:
    """Person or process performing an action"""
    id: str
    name: str


SYSTEM_ACTOR = Actor(id="system", name="System (No Gold Items)")


@dataclass(frozen=True)
class GoldItem:
    """Pledged gold item; photos are opaque references"""
    description: str
    gross_weight: Decimal
    net_weight: Decimal
    photo_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'gross_weight', to_decimal(self.gross_weight))
        object.__setattr__(self, 'net_weight', to_decimal(self.net_weight))
        if self.gross_weight < ZERO or self.net_weight < ZERO:
            raise ValidationError("Gold item weights cannot be negative")


@dataclass(frozen=True)
class Payment:
    """Record of a payment against a loan"""
    payment_id: str
    amount: Decimal
    date: datetime
    method: PaymentMethod
    installment_number: int
    remaining_balance: Decimal      # Balance snapshot right after this payment
    entered_by: Optional[Actor] = None
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING


@dataclass(frozen=True)
class UpgradeRecord:
    """One step up the interest-rate ladder"""
    from_rate: Decimal
    to_rate: Decimal
    upgrade_date: datetime
    reason: UpgradeReason
    new_term_end_date: date
    calculated_from_original_date: bool = True


@dataclass(frozen=True)
class GoldReturnReminder:
    sent_date: datetime
    type: ReminderType
    sent_to: Recipient
    message: str = ""


@dataclass(frozen=True)
class AuctionNotification:
    sent_date: datetime
    type: AuctionNotificationType
    sent_to: Recipient
    message: str = ""
    sent_by: Optional[Actor] = None


def remaining_balance_of(total_payment: Decimal, total_paid: Decimal) -> Decimal:
    """Amount still owed; never negative"""
    return max(ZERO, total_payment - total_paid)


@dataclass(frozen=True)
class Loan:
    """
    Gold loan aggregate

    Immutable: transitions build a new instance with dataclasses.replace.
    Construction validates the balance and schedule invariants.
    """
    loan_id: str
    customer_id: str
    principal: Decimal
    term_months: int
    original_interest_rate: Decimal
    current_interest_rate: Decimal
    disbursement_date: date
    created_at: datetime
    total_payment: Decimal              # Amount due for full closure, re-derived
    monthly_payment: Decimal
    status: LoanStatus = LoanStatus.ACTIVE
    total_paid: Decimal = ZERO
    remaining_balance: Decimal = None
    installments: Tuple[Installment, ...] = ()
    payments: Tuple[Payment, ...] = ()
    upgrade_history: Tuple[UpgradeRecord, ...] = ()
    current_upgrade_level: int = 0
    interest_rate_upgrade_date: Optional[datetime] = None
    interest_rate_upgrade_reason: Optional[UpgradeReason] = None
    gold_items: Tuple[GoldItem, ...] = ()
    closed_date: Optional[datetime] = None
    actual_repayment_date: Optional[datetime] = None
    actual_amount_paid: Decimal = ZERO

    # Gold return tracking (meaningful once closed)
    gold_return_status: Optional[GoldReturnStatus] = None
    gold_return_date: Optional[datetime] = None
    gold_return_scheduled_date: Optional[date] = None
    gold_return_notes: str = ""
    gold_returned_by: Optional[Actor] = None
    gold_return_reminders: Tuple[GoldReturnReminder, ...] = ()

    # Auction management
    auction_status: AuctionStatus = AuctionStatus.NOT_READY
    auction_ready_date: Optional[datetime] = None
    auction_scheduled_date: Optional[date] = None
    auction_date: Optional[date] = None
    auction_notes: str = ""
    auction_notifications: Tuple[AuctionNotification, ...] = ()

    # Optimistic concurrency, owned by the storage adapter
    version: int = 0

    def __post_init__(self):
        for name in ('principal', 'original_interest_rate', 'current_interest_rate',
                     'total_payment', 'monthly_payment', 'total_paid', 'actual_amount_paid'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

        expected = remaining_balance_of(self.total_payment, self.total_paid)
        if self.remaining_balance is None:
            object.__setattr__(self, 'remaining_balance', expected)
        elif to_decimal(self.remaining_balance) != expected:
            raise ValueError(
                f"Remaining balance {self.remaining_balance} does not equal "
                f"max(0, {self.total_payment} - {self.total_paid})"
            )
        else:
            object.__setattr__(self, 'remaining_balance', to_decimal(self.remaining_balance))

        numbers = [inst.number for inst in self.installments]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"Installment numbers must be 1..{len(numbers)}, got {numbers}")
        due_dates = [inst.due_date for inst in self.installments]
        if any(later <= earlier for earlier, later in zip(due_dates, due_dates[1:])):
            raise ValueError("Installment due dates must be strictly increasing")

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def total_gold_weight(self) -> Decimal:
        return sum((item.net_weight for item in self.gold_items), ZERO)

    @property
    def has_gold_collateral(self) -> bool:
        return any(item.net_weight > ZERO for item in self.gold_items)

    def find_payment(self, payment_id: str) -> Optional[Payment]:
        for payment in self.payments:
            if payment.payment_id == payment_id:
                return payment
        return None

    def with_ledger(self, total_payment: Decimal, total_paid: Decimal, **changes: Any) -> "Loan":
        """Copy with new totals and the remaining balance re-derived from them"""
        return replace(
            self,
            total_payment=total_payment,
            total_paid=total_paid,
            remaining_balance=remaining_balance_of(total_payment, total_paid),
            **changes
        )


@dataclass(frozen=True)
class LoanParams:
    """Inputs for originating a loan"""
    customer_id: str
    principal: Number
    term_months: int
    interest_rate: Number
    gold_items: Sequence[GoldItem] = field(default_factory=tuple)
    disbursement_date: Optional[date] = None   # Defaults to the origination date
    loan_id: Optional[str] = None


def generate_loan_id(now: datetime) -> str:
    """Human-readable loan id: GL + timestamp + two random digits"""
    return f"GL{now:%y%m%d%H%M%S}{random.randint(0, 99):02d}"


def new_payment_id() -> str:
    return str(uuid.uuid4())


def originate(
    params: LoanParams,
    now: datetime,
    config: Optional[GoldLoanConfig] = None
) -> Tuple[Loan, List[EventPayload]]:
    """
    Originate and disburse a new loan

    Prices the loan over its full term, fixes the uniform monthly installment
    and builds the schedule from the disbursement date.

    Args:
        params: Loan parameters
        now: Origination time

    Returns:
        Tuple of (new active loan, [loan.originated event])

    Raises:
        ValidationError: If principal, term or rate are out of range
    """
    config = config or get_config()
    currency = Currency.from_code(config.currency_code)

    try:
        principal = to_decimal(params.principal)
        rate = to_decimal(params.interest_rate)
    except ValueError as e:
        raise ValidationError(str(e))

    if principal < to_decimal(config.min_principal):
        raise ValidationError(f"Loan amount cannot be less than {config.min_principal}")
    if params.term_months < 1:
        raise ValidationError("Loan term cannot be less than 1 month")
    if rate < ZERO:
        raise ValidationError("Interest rate cannot be negative")
    if not params.customer_id:
        raise ValidationError("Customer id is required")

    disbursement_date = params.disbursement_date or now.date()
    closure_date = add_months(disbursement_date, params.term_months)
    pricing = compute_interest(principal, rate, disbursement_date, closure_date, config)

    total_payment = pricing.total_amount
    monthly_payment = installment_amount(total_payment, params.term_months, currency)

    loan = Loan(
        loan_id=params.loan_id or generate_loan_id(now),
        customer_id=params.customer_id,
        principal=principal,
        term_months=params.term_months,
        original_interest_rate=rate,
        current_interest_rate=rate,
        disbursement_date=disbursement_date,
        created_at=now,
        total_payment=total_payment,
        monthly_payment=monthly_payment,
        status=LoanStatus.ACTIVE,
        installments=build_schedule(disbursement_date, params.term_months, monthly_payment),
        gold_items=tuple(params.gold_items)
    )

    event = loan_event(
        DomainEvent.LOAN_ORIGINATED, loan.loan_id, now,
        customer_id=loan.customer_id,
        principal=loan.principal,
        interest_rate=loan.current_interest_rate,
        term_months=loan.term_months,
        total_payment=loan.total_payment,
        monthly_payment=loan.monthly_payment,
        total_gold_weight=loan.total_gold_weight
    )
    return loan, [event]


# --- Serialization -----------------------------------------------------------

def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _d(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _actor_to_dict(actor: Optional[Actor]) -> Optional[Dict[str, str]]:
    return {'id': actor.id, 'name': actor.name} if actor else None


def _actor_from_dict(data: Optional[Dict[str, str]]) -> Optional[Actor]:
    return Actor(id=data['id'], name=data['name']) if data else None


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    """Convert loan to a JSON-serializable dictionary (Decimals as strings)"""
    return {
        'loan_id': loan.loan_id,
        'customer_id': loan.customer_id,
        'principal': str(loan.principal),
        'term_months': loan.term_months,
        'original_interest_rate': str(loan.original_interest_rate),
        'current_interest_rate': str(loan.current_interest_rate),
        'current_upgrade_level': loan.current_upgrade_level,
        'disbursement_date': loan.disbursement_date.isoformat(),
        'created_at': loan.created_at.isoformat(),
        'status': loan.status.value,
        'closed_date': _iso(loan.closed_date),
        'actual_repayment_date': _iso(loan.actual_repayment_date),
        'actual_amount_paid': str(loan.actual_amount_paid),
        'total_payment': str(loan.total_payment),
        'monthly_payment': str(loan.monthly_payment),
        'total_paid': str(loan.total_paid),
        'remaining_balance': str(loan.remaining_balance),
        'interest_rate_upgrade_date': _iso(loan.interest_rate_upgrade_date),
        'interest_rate_upgrade_reason': (
            loan.interest_rate_upgrade_reason.value if loan.interest_rate_upgrade_reason else None
        ),
        'installments': [
            {
                'number': inst.number,
                'due_date': inst.due_date.isoformat(),
                'amount': str(inst.amount),
                'status': inst.status.value,
                'amount_paid': str(inst.amount_paid),
            }
            for inst in loan.installments
        ],
        'payments': [
            {
                'payment_id': p.payment_id,
                'amount': str(p.amount),
                'date': p.date.isoformat(),
                'method': p.method.value,
                'installment_number': p.installment_number,
                'remaining_balance': str(p.remaining_balance),
                'entered_by': _actor_to_dict(p.entered_by),
                'transaction_id': p.transaction_id,
                'bank_name': p.bank_name,
                'status': p.status.value,
            }
            for p in loan.payments
        ],
        'upgrade_history': [
            {
                'from_rate': str(u.from_rate),
                'to_rate': str(u.to_rate),
                'upgrade_date': u.upgrade_date.isoformat(),
                'reason': u.reason.value,
                'new_term_end_date': u.new_term_end_date.isoformat(),
                'calculated_from_original_date': u.calculated_from_original_date,
            }
            for u in loan.upgrade_history
        ],
        'gold_items': [
            {
                'description': item.description,
                'gross_weight': str(item.gross_weight),
                'net_weight': str(item.net_weight),
                'photo_ids': list(item.photo_ids),
            }
            for item in loan.gold_items
        ],
        'gold_return_status': loan.gold_return_status.value if loan.gold_return_status else None,
        'gold_return_date': _iso(loan.gold_return_date),
        'gold_return_scheduled_date': _iso(loan.gold_return_scheduled_date),
        'gold_return_notes': loan.gold_return_notes,
        'gold_returned_by': _actor_to_dict(loan.gold_returned_by),
        'gold_return_reminders': [
            {
                'sent_date': r.sent_date.isoformat(),
                'type': r.type.value,
                'sent_to': r.sent_to.value,
                'message': r.message,
            }
            for r in loan.gold_return_reminders
        ],
        'auction_status': loan.auction_status.value,
        'auction_ready_date': _iso(loan.auction_ready_date),
        'auction_scheduled_date': _iso(loan.auction_scheduled_date),
        'auction_date': _iso(loan.auction_date),
        'auction_notes': loan.auction_notes,
        'auction_notifications': [
            {
                'sent_date': n.sent_date.isoformat(),
                'type': n.type.value,
                'sent_to': n.sent_to.value,
                'message': n.message,
                'sent_by': _actor_to_dict(n.sent_by),
            }
            for n in loan.auction_notifications
        ],
        'version': loan.version,
    }


def loan_from_dict(data: Dict[str, Any]) -> Loan:
    """Convert dictionary to loan"""
    reason = data.get('interest_rate_upgrade_reason')
    gold_status = data.get('gold_return_status')

    return Loan(
        loan_id=data['loan_id'],
        customer_id=data['customer_id'],
        principal=Decimal(data['principal']),
        term_months=data['term_months'],
        original_interest_rate=Decimal(data['original_interest_rate']),
        current_interest_rate=Decimal(data['current_interest_rate']),
        current_upgrade_level=data.get('current_upgrade_level', 0),
        disbursement_date=date.fromisoformat(data['disbursement_date']),
        created_at=_dt(data['created_at']),
        status=LoanStatus(data['status']),
        closed_date=_dt(data.get('closed_date')),
        actual_repayment_date=_dt(data.get('actual_repayment_date')),
        actual_amount_paid=Decimal(data.get('actual_amount_paid', '0')),
        total_payment=Decimal(data['total_payment']),
        monthly_payment=Decimal(data['monthly_payment']),
        total_paid=Decimal(data['total_paid']),
        remaining_balance=Decimal(data['remaining_balance']),
        interest_rate_upgrade_date=_dt(data.get('interest_rate_upgrade_date')),
        interest_rate_upgrade_reason=UpgradeReason(reason) if reason else None,
        installments=tuple(
            Installment(
                number=inst['number'],
                due_date=date.fromisoformat(inst['due_date']),
                amount=Decimal(inst['amount']),
                status=InstallmentStatus(inst['status']),
                amount_paid=Decimal(inst['amount_paid']),
            )
            for inst in data.get('installments', [])
        ),
        payments=tuple(
            Payment(
                payment_id=p['payment_id'],
                amount=Decimal(p['amount']),
                date=_dt(p['date']),
                method=PaymentMethod(p['method']),
                installment_number=p['installment_number'],
                remaining_balance=Decimal(p['remaining_balance']),
                entered_by=_actor_from_dict(p.get('entered_by')),
                transaction_id=p.get('transaction_id'),
                bank_name=p.get('bank_name'),
                status=PaymentStatus(p['status']),
            )
            for p in data.get('payments', [])
        ),
        upgrade_history=tuple(
            UpgradeRecord(
                from_rate=Decimal(u['from_rate']),
                to_rate=Decimal(u['to_rate']),
                upgrade_date=_dt(u['upgrade_date']),
                reason=UpgradeReason(u['reason']),
                new_term_end_date=date.fromisoformat(u['new_term_end_date']),
                calculated_from_original_date=u.get('calculated_from_original_date', True),
            )
            for u in data.get('upgrade_history', [])
        ),
        gold_items=tuple(
            GoldItem(
                description=item['description'],
                gross_weight=Decimal(item['gross_weight']),
                net_weight=Decimal(item['net_weight']),
                photo_ids=tuple(item.get('photo_ids', [])),
            )
            for item in data.get('gold_items', [])
        ),
        gold_return_status=GoldReturnStatus(gold_status) if gold_status else None,
        gold_return_date=_dt(data.get('gold_return_date')),
        gold_return_scheduled_date=_d(data.get('gold_return_scheduled_date')),
        gold_return_notes=data.get('gold_return_notes') or "",
        gold_returned_by=_actor_from_dict(data.get('gold_returned_by')),
        gold_return_reminders=tuple(
            GoldReturnReminder(
                sent_date=_dt(r['sent_date']),
                type=ReminderType(r['type']),
                sent_to=Recipient(r['sent_to']),
                message=r.get('message') or "",
            )
            for r in data.get('gold_return_reminders', [])
        ),
        auction_status=AuctionStatus(data.get('auction_status', 'not_ready')),
        auction_ready_date=_dt(data.get('auction_ready_date')),
        auction_scheduled_date=_d(data.get('auction_scheduled_date')),
        auction_date=_d(data.get('auction_date')),
        auction_notes=data.get('auction_notes') or "",
        auction_notifications=tuple(
            AuctionNotification(
                sent_date=_dt(n['sent_date']),
                type=AuctionNotificationType(n['type']),
                sent_to=Recipient(n['sent_to']),
                message=n.get('message') or "",
                sent_by=_actor_from_dict(n.get('sent_by')),
            )
            for n in data.get('auction_notifications', [])
        ),
        version=data.get('version', 0),
    )
