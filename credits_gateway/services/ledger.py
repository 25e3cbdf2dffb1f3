"""Credit ledger - the single source of truth for account balances

Every balance mutation is one atomic conditional UPDATE on the account row
followed by an append to the transaction log, inside one database
transaction. Transient datastore errors are retried with exponential backoff;
after the retry budget the operation fails closed with LedgerTransientError.
"""

import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from credits_gateway.config import settings
from credits_gateway.domain.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerConflictError,
    LedgerTransientError,
    TransactionNotFoundError,
)
from credits_gateway.domain.models import Account, BanStatus, LedgerResult, Transaction, TransactionKind
from credits_gateway.domain.pricing import credits_to_tenths, tenths_to_credits
from credits_gateway.infrastructure.database.models import CreditTransaction, UserAccount
from credits_gateway.infrastructure.database.repositories import AccountRepository, TransactionRepository
from credits_gateway.infrastructure.observability.metrics import (
    credits_granted_counter,
    ledger_failure_counter,
    ledger_retry_counter,
)
from credits_gateway.utils.date_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError, LedgerConflictError)
CREDIT_KINDS = (TransactionKind.PURCHASE, TransactionKind.BONUS, TransactionKind.REFUND)


def to_account(row: UserAccount) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        subscription_tier=row.subscription_tier,
        balance=tenths_to_credits(row.balance_tenths),
        total_purchased=tenths_to_credits(row.total_purchased_tenths),
        total_used=tenths_to_credits(row.total_used_tenths),
        created_at=as_utc(row.created_at),
        banned=row.banned,
        ban_reason=row.ban_reason,
        ban_expires_at=as_utc(row.ban_expires_at),
    )


def to_transaction(row: CreditTransaction) -> Transaction:
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        kind=TransactionKind(row.kind),
        amount=tenths_to_credits(row.amount_tenths),
        balance_after=tenths_to_credits(row.balance_after_tenths),
        description=row.description,
        metadata=dict(row.details or {}),
        external_ref=row.external_ref,
        created_at=as_utc(row.created_at),
    )


class Ledger:
    """Balance checks, debits, and credits with per-account atomicity"""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        signup_grant: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_retries = settings.ledger_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.ledger_backoff_base if backoff_base is None else backoff_base
        self.signup_grant = settings.signup_grant_credits if signup_grant is None else signup_grant

    def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        """
        Run work in its own transaction, retrying transient failures.

        Retry strategy:
        - Exponential backoff: base, 2x base, 4x base, ... (base * 2^(attempt-1))
        - Retries on operational errors, pool timeouts, and CAS conflicts
        - Domain errors (not found, insufficient credits) are never retried
        """
        attempt = 0
        while True:
            try:
                with self.session_factory() as db:
                    result = work(db)
                    db.commit()
                    return result

            except TRANSIENT_ERRORS as e:
                attempt += 1

                if attempt >= self.max_retries:
                    ledger_failure_counter.labels(operation=operation).inc()
                    logger.error(
                        f"Ledger {operation} failed after {attempt} attempts: {e}",
                        extra={"step": "ledger_retry_exhausted", "operation": operation},
                    )
                    raise LedgerTransientError(f"Ledger {operation} unavailable") from e

                ledger_retry_counter.labels(operation=operation).inc()
                backoff = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    f"Ledger {operation} retry {attempt} in {backoff:.2f}s: {e}",
                    extra={"step": "ledger_retry", "operation": operation},
                )
                time.sleep(backoff)

    # Accounts

    def open_account(
        self,
        account_id: str,
        email: Optional[str] = None,
        subscription_tier: str = "free",
        starting_credits: Optional[Union[Decimal, int]] = None,
    ) -> Account:
        """Create an account with the signup grant, recorded as a bonus transaction"""
        grant = credits_to_tenths(self.signup_grant if starting_credits is None else starting_credits)

        def work(db: Session) -> Account:
            accounts = AccountRepository(db)
            if accounts.get(account_id) is not None:
                raise AccountExistsError(account_id)

            row = accounts.create(account_id, email, subscription_tier, balance_tenths=grant)
            if grant > 0:
                TransactionRepository(db).append(
                    account_id=account_id,
                    kind=TransactionKind.BONUS.value,
                    amount_tenths=grant,
                    balance_after_tenths=grant,
                    description="Signup bonus",
                    details={"type": "signup_grant"},
                )
            return to_account(row)

        try:
            account = self._run("open_account", work)
        except IntegrityError as e:
            raise AccountExistsError(account_id) from e

        if grant > 0:
            credits_granted_counter.labels(kind=TransactionKind.BONUS.value).inc(float(tenths_to_credits(grant)))
        logger.info("Account opened", extra={"account_id": account_id, "step": "open_account"})
        return account

    def get_account(self, account_id: str) -> Account:
        def work(db: Session) -> Account:
            row = AccountRepository(db).get(account_id)
            if row is None:
                raise AccountNotFoundError(account_id)
            return to_account(row)

        return self._run("get_account", work)

    def balance(self, account_id: str) -> Decimal:
        return self.get_account(account_id).balance

    def can_afford(self, account_id: str, credits: Union[Decimal, int]) -> bool:
        """Optimistic pre-check only; debit() is the authoritative check"""
        return self.balance(account_id) >= Decimal(credits)

    # Mutations

    def debit(
        self,
        account_id: str,
        credits: Union[Decimal, int],
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerResult:
        """
        Atomically subtract credits. Never partial.

        Raises:
            InsufficientCreditsError: balance does not cover credits
            AccountNotFoundError: no such account
            LedgerTransientError: datastore unavailable after retries
        """
        tenths = credits_to_tenths(credits)
        if tenths == 0:
            raise ValueError("Debit amount must be positive")

        def work(db: Session) -> LedgerResult:
            accounts = AccountRepository(db)
            new_balance = accounts.debit_if_covered(account_id, tenths)
            if new_balance is None:
                row = accounts.get(account_id)
                if row is None:
                    raise AccountNotFoundError(account_id)
                raise InsufficientCreditsError(
                    account_id, tenths_to_credits(row.balance_tenths), tenths_to_credits(tenths)
                )

            txn = TransactionRepository(db).append(
                account_id=account_id,
                kind=TransactionKind.USAGE.value,
                amount_tenths=-tenths,
                balance_after_tenths=new_balance,
                description=description,
                details=metadata,
            )
            return LedgerResult(
                new_balance=tenths_to_credits(new_balance),
                transaction_id=txn.id,
                charged=tenths_to_credits(tenths),
            )

        return self._run("debit", work)

    def debit_up_to(
        self,
        account_id: str,
        credits: Union[Decimal, int],
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        external_ref: Optional[str] = None,
    ) -> LedgerResult:
        """
        Take min(balance, credits): the account may reach exactly zero but never
        below. result.charged is what was actually taken. With an external_ref
        an entry is written even when nothing could be taken, so the same
        reference is never charged later.
        """
        tenths = credits_to_tenths(credits)

        def work(db: Session) -> LedgerResult:
            accounts = AccountRepository(db)
            transactions = TransactionRepository(db)
            row = accounts.get(account_id)
            if row is None:
                raise AccountNotFoundError(account_id)

            if external_ref is not None:
                existing = transactions.find_by_reference(account_id, external_ref)
                if existing is not None:
                    return LedgerResult(
                        new_balance=tenths_to_credits(row.balance_tenths),
                        transaction_id=existing.id,
                        charged=tenths_to_credits(-existing.amount_tenths),
                    )

            observed = row.balance_tenths
            take = min(observed, tenths)
            details = dict(metadata or {})
            details["requested_credits"] = str(tenths_to_credits(tenths))

            if take == 0:
                if external_ref is None:
                    return LedgerResult(new_balance=tenths_to_credits(observed), transaction_id=None)
                # Zero-amount entry so the reference counts as applied
                txn = transactions.append(
                    account_id=account_id,
                    kind=TransactionKind.USAGE.value,
                    amount_tenths=0,
                    balance_after_tenths=observed,
                    description=description,
                    details=details,
                    external_ref=external_ref,
                )
                return LedgerResult(new_balance=tenths_to_credits(observed), transaction_id=txn.id)

            new_balance = accounts.debit_if_unchanged(account_id, observed, take)
            if new_balance is None:
                raise LedgerConflictError(f"Balance of {account_id} changed during clamped debit")

            txn = transactions.append(
                account_id=account_id,
                kind=TransactionKind.USAGE.value,
                amount_tenths=-take,
                balance_after_tenths=new_balance,
                description=description,
                details=details,
                external_ref=external_ref,
            )
            return LedgerResult(
                new_balance=tenths_to_credits(new_balance),
                transaction_id=txn.id,
                charged=tenths_to_credits(take),
            )

        return self._run("debit_up_to", work)

    def credit(
        self,
        account_id: str,
        credits: Union[Decimal, int],
        kind: Union[TransactionKind, str],
        description: str,
        external_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerResult:
        """
        Atomically add credits (purchase, bonus, or refund). No upper bound.

        An external_ref already recorded for the account is not applied twice;
        the original transaction is returned instead.
        """
        kind = TransactionKind(kind)
        if kind not in CREDIT_KINDS:
            raise ValueError(f"Cannot credit with transaction kind {kind.value!r}")
        tenths = credits_to_tenths(credits)
        if tenths == 0:
            raise ValueError("Credit amount must be positive")

        def work(db: Session) -> LedgerResult:
            transactions = TransactionRepository(db)
            if external_ref is not None:
                existing = transactions.find_by_reference(account_id, external_ref)
                if existing is not None:
                    row = AccountRepository(db).get(account_id)
                    return LedgerResult(
                        new_balance=tenths_to_credits(row.balance_tenths),
                        transaction_id=existing.id,
                        charged=Decimal("0"),
                    )

            new_balance = AccountRepository(db).add_credits(
                account_id, tenths, purchased=kind == TransactionKind.PURCHASE
            )
            if new_balance is None:
                raise AccountNotFoundError(account_id)

            txn = transactions.append(
                account_id=account_id,
                kind=kind.value,
                amount_tenths=tenths,
                balance_after_tenths=new_balance,
                description=description,
                details=metadata,
                external_ref=external_ref,
            )
            return LedgerResult(new_balance=tenths_to_credits(new_balance), transaction_id=txn.id)

        try:
            result = self._run("credit", work)
        except IntegrityError:
            # Concurrent delivery of the same external_ref won the insert
            if external_ref is None:
                raise
            existing = self.find_by_reference(account_id, external_ref)
            if existing is None:
                raise
            return LedgerResult(new_balance=self.balance(account_id), transaction_id=existing.id)

        credits_granted_counter.labels(kind=kind.value).inc(float(tenths_to_credits(tenths)))
        return result

    # Reads

    def history(self, account_id: str, limit: int = 20) -> List[Transaction]:
        """Most recent transactions first, at most limit of them"""

        def work(db: Session) -> List[Transaction]:
            if AccountRepository(db).get(account_id) is None:
                raise AccountNotFoundError(account_id)
            return [to_transaction(row) for row in TransactionRepository(db).recent(account_id, limit)]

        return self._run("history", work)

    def get_transaction(self, account_id: str, transaction_id: int) -> Transaction:
        def work(db: Session) -> Transaction:
            row = TransactionRepository(db).get(account_id, transaction_id)
            if row is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found for {account_id}")
            return to_transaction(row)

        return self._run("get_transaction", work)

    def find_by_reference(self, account_id: str, external_ref: str) -> Optional[Transaction]:
        def work(db: Session) -> Optional[Transaction]:
            row = TransactionRepository(db).find_by_reference(account_id, external_ref)
            return to_transaction(row) if row is not None else None

        return self._run("find_by_reference", work)

    # Bans

    def ban_status(self, account_id: str) -> BanStatus:
        """Current ban state; an expired ban is lifted as a side effect"""

        def work(db: Session) -> BanStatus:
            accounts = AccountRepository(db)
            row = accounts.get(account_id)
            if row is None:
                raise AccountNotFoundError(account_id)
            if not row.banned:
                return BanStatus(banned=False)

            expires_at = as_utc(row.ban_expires_at)
            if expires_at is not None and expires_at <= utc_now():
                accounts.clear_ban(account_id)
                logger.info("Ban expired", extra={"account_id": account_id, "step": "ban_expired"})
                return BanStatus(banned=False)

            return BanStatus(banned=True, reason=row.ban_reason, expires_at=expires_at)

        return self._run("ban_status", work)

    def ban(self, account_id: str, reason: str, duration_days: Optional[int] = None) -> BanStatus:
        """Ban temporarily (duration_days) or permanently (None)"""
        expires_at = utc_now() + timedelta(days=duration_days) if duration_days else None

        def work(db: Session) -> BanStatus:
            if not AccountRepository(db).set_ban(account_id, reason, expires_at):
                raise AccountNotFoundError(account_id)
            return BanStatus(banned=True, reason=reason, expires_at=expires_at)

        status = self._run("ban", work)
        logger.warning(
            "Account banned",
            extra={"account_id": account_id, "step": "ban", "reason": reason, "expires_at": str(expires_at)},
        )
        return status
