"""Domain-specific exceptions"""

from decimal import Decimal


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class AccountNotFoundError(DomainException):
    """Account does not exist; fatal for the request"""

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class AccountExistsError(DomainException):
    """Account id is already registered"""

    def __init__(self, account_id: str):
        super().__init__(f"Account already exists: {account_id}")
        self.account_id = account_id


class InsufficientCreditsError(DomainException):
    """Balance does not cover the requested debit. Expected and user-facing."""

    def __init__(self, account_id: str, balance: Decimal, requested: Decimal):
        super().__init__(f"Insufficient credits: balance {balance}, requested {requested}")
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class LedgerTransientError(DomainException):
    """Datastore timeout or conflict that outlasted the retry budget"""

    pass


class LedgerConflictError(LedgerTransientError):
    """Compare-and-swap lost to a concurrent writer"""

    pass


class DetectionUnavailableError(DomainException):
    """Risk signals could not be collected"""

    pass


class TransactionNotFoundError(DomainException):
    """Referenced transaction does not exist for the account"""

    pass


class RefundNotFoundError(DomainException):
    """Refund request does not exist"""

    pass
