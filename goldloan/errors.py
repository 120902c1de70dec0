"""Exception hierarchy for the gold loan core."""


class GoldLoanError(Exception):
    """Base exception for all gold loan errors."""


class ValidationError(GoldLoanError):
    """Raised when input is malformed; nothing has been mutated."""


class GuardViolation(GoldLoanError):
    """
    Raised when a business-rule precondition fails.

    The ``guard`` attribute carries the rule name so adapters can surface it
    verbatim to callers.
    """

    guard = "GuardViolation"

    def __init__(self, message: str = ""):
        super().__init__(message or self.guard)
        self.message = message or self.guard


class NoPendingInstallments(GuardViolation):
    guard = "NoPendingInstallments"


class LoanClosed(GuardViolation):
    guard = "LoanClosed"


class NoFurtherUpgrades(GuardViolation):
    guard = "NoFurtherUpgrades"


class NotReadyForAuction(GuardViolation):
    guard = "NotReadyForAuction"


class AlreadyAuctioned(GuardViolation):
    guard = "AlreadyAuctioned"


class LoanNotClosed(GuardViolation):
    guard = "LoanNotClosed"


class GoldAlreadyReturned(GuardViolation):
    guard = "GoldAlreadyReturned"


class AlreadyApproved(GuardViolation):
    guard = "AlreadyApproved"


class NotFound(GoldLoanError):
    """Raised when a referenced entity does not exist."""


class LoanNotFound(NotFound):
    """Raised when no loan exists for the given loan id."""


class PaymentNotFound(NotFound):
    """Raised when a loan has no payment with the given id."""


class ConcurrencyConflict(GoldLoanError):
    """Raised when a save loses an optimistic-concurrency race; reload and retry."""
