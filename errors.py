class LedgerError(Exception):
    """base class for commission ledger failures."""


class DuplicateEvent(LedgerError):
    """the (event_id, event_type) pair was already ingested."""

    def __init__(self, event_id: str, event_type: str):
        super().__init__(f"event {event_id} ({event_type}) already processed")
        self.event_id = event_id
        self.event_type = event_type


class UnknownAttribution(LedgerError):
    """a revenue event references an account with no usable attribution."""

    def __init__(self, account_id: str, reason: str = "no attribution"):
        super().__init__(f"account {account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason


class InvalidTransition(LedgerError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class TransferFailed(LedgerError):
    """
    the external transfer did not go through.

    ambiguous=True means we cannot tell whether the money moved
    (timeout, 5xx) and the payout must be reconciled, not retried.
    """

    def __init__(self, message: str, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class TransferTimeout(TransferFailed):
    def __init__(self, message: str):
        super().__init__(message, ambiguous=True)


class AffiliateTreeError(ValueError):
    """parent assignment would create a cycle or exceed the tree depth."""


class InvalidPromoCode(ValueError):
    reason = "invalid"

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or f"promo code {code!r} is {self.reason}")
        self.code = code


class CodeNotFound(InvalidPromoCode):
    reason = "not_found"

    def __init__(self, code: str):
        super().__init__(code, f"promo code {code!r} does not exist")


class CodeInactive(InvalidPromoCode):
    reason = "inactive"


class CodeExpired(InvalidPromoCode):
    reason = "expired"


class CodeExhausted(InvalidPromoCode):
    reason = "exhausted"


class NotFound(ValueError):
    """a referenced affiliate, promo code or referral code does not exist."""
