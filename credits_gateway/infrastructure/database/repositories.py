"""Data access layer for accounts, ledger entries, and risk signal sources"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from credits_gateway.infrastructure.database.models import (
    AbuseLog,
    ActivityEvent,
    CreditTransaction,
    RefundRequest,
    UsagePeriod,
    UserAccount,
)


class AccountRepository:
    """Repository for account balance rows. Balance writes are single conditional UPDATEs."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id: str) -> Optional[UserAccount]:
        return self.db.get(UserAccount, account_id)

    def create(
        self,
        account_id: str,
        email: Optional[str],
        subscription_tier: str,
        balance_tenths: int,
    ) -> UserAccount:
        """Insert a new account row"""
        db_account = UserAccount(
            id=account_id,
            email=email,
            subscription_tier=subscription_tier,
            balance_tenths=balance_tenths,
            total_purchased_tenths=0,
            total_used_tenths=0,
            banned=False,
        )
        self.db.add(db_account)
        self.db.flush()
        return db_account

    def debit_if_covered(self, account_id: str, tenths: int) -> Optional[int]:
        """
        Subtract tenths where balance >= tenths.

        Returns the new balance, or None when the row is missing or the balance
        does not cover the amount.
        """
        stmt = (
            update(UserAccount)
            .where(UserAccount.id == account_id, UserAccount.balance_tenths >= tenths)
            .values(
                balance_tenths=UserAccount.balance_tenths - tenths,
                total_used_tenths=UserAccount.total_used_tenths + tenths,
            )
            .returning(UserAccount.balance_tenths)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def debit_if_unchanged(self, account_id: str, expected_balance: int, tenths: int) -> Optional[int]:
        """Compare-and-swap debit; None means a concurrent writer moved the balance"""
        stmt = (
            update(UserAccount)
            .where(UserAccount.id == account_id, UserAccount.balance_tenths == expected_balance)
            .values(
                balance_tenths=UserAccount.balance_tenths - tenths,
                total_used_tenths=UserAccount.total_used_tenths + tenths,
            )
            .returning(UserAccount.balance_tenths)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_credits(self, account_id: str, tenths: int, purchased: bool) -> Optional[int]:
        """Add tenths to the balance; None when the account does not exist"""
        values = {"balance_tenths": UserAccount.balance_tenths + tenths}
        if purchased:
            values["total_purchased_tenths"] = UserAccount.total_purchased_tenths + tenths

        stmt = (
            update(UserAccount)
            .where(UserAccount.id == account_id)
            .values(**values)
            .returning(UserAccount.balance_tenths)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def set_ban(self, account_id: str, reason: str, expires_at: Optional[datetime]) -> bool:
        stmt = (
            update(UserAccount)
            .where(UserAccount.id == account_id)
            .values(banned=True, ban_reason=reason, ban_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0

    def clear_ban(self, account_id: str) -> None:
        stmt = (
            update(UserAccount)
            .where(UserAccount.id == account_id)
            .values(banned=False, ban_reason=None, ban_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)


class TransactionRepository:
    """Repository for append-only ledger entries"""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        account_id: str,
        kind: str,
        amount_tenths: int,
        balance_after_tenths: int,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        external_ref: Optional[str] = None,
    ) -> CreditTransaction:
        """Insert a ledger entry; flush to get its sequence id"""
        db_txn = CreditTransaction(
            account_id=account_id,
            kind=kind,
            amount_tenths=amount_tenths,
            balance_after_tenths=balance_after_tenths,
            description=description,
            details=details or {},
            external_ref=external_ref,
        )
        self.db.add(db_txn)
        self.db.flush()
        return db_txn

    def recent(self, account_id: str, limit: int = 20) -> List[CreditTransaction]:
        """Most recent entries first"""
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def get(self, account_id: str, transaction_id: int) -> Optional[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(
                CreditTransaction.account_id == account_id,
                CreditTransaction.id == transaction_id,
            )
            .first()
        )

    def find_by_reference(self, account_id: str, external_ref: str) -> Optional[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(
                CreditTransaction.account_id == account_id,
                CreditTransaction.external_ref == external_ref,
            )
            .first()
        )


class RefundRepository:
    """Repository for refund requests"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, account_id: str, reason: str, status: str = "pending") -> RefundRequest:
        db_refund = RefundRequest(account_id=account_id, reason=reason, status=status)
        self.db.add(db_refund)
        self.db.flush()
        return db_refund

    def list_for_account(self, account_id: str) -> List[RefundRequest]:
        """All refund requests, newest first"""
        return (
            self.db.query(RefundRequest)
            .filter(RefundRequest.account_id == account_id)
            .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
            .all()
        )

    def get(self, refund_id: int) -> Optional[RefundRequest]:
        return self.db.get(RefundRequest, refund_id)


class UsageRepository:
    """Repository for monthly usage counters"""

    def __init__(self, db: Session):
        self.db = db

    def increment(self, account_id: str, period: str) -> None:
        """Bump the period counter, creating the row on first use"""
        stmt = (
            update(UsagePeriod)
            .where(UsagePeriod.account_id == account_id, UsagePeriod.period == period)
            .values(requests_used=UsagePeriod.requests_used + 1)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            self.db.add(UsagePeriod(account_id=account_id, period=period, requests_used=1))
            self.db.flush()

    def used_in(self, account_id: str, period: str) -> int:
        row = (
            self.db.query(UsagePeriod)
            .filter(UsagePeriod.account_id == account_id, UsagePeriod.period == period)
            .one_or_none()
        )
        return row.requests_used if row is not None else 0

    def recent(self, account_id: str, limit: int = 3) -> List[UsagePeriod]:
        """Most recent periods first"""
        return (
            self.db.query(UsagePeriod)
            .filter(UsagePeriod.account_id == account_id)
            .order_by(UsagePeriod.period.desc())
            .limit(limit)
            .all()
        )


class ActivityRepository:
    """Repository for permitted-request events"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, account_id: str, action: str) -> None:
        self.db.add(ActivityEvent(account_id=account_id, action=action))

    def count_since(self, account_id: str, actions: Iterable[str], since: datetime) -> int:
        return (
            self.db.query(func.count(ActivityEvent.id))
            .filter(
                ActivityEvent.account_id == account_id,
                ActivityEvent.action.in_(list(actions)),
                ActivityEvent.created_at >= since,
            )
            .scalar()
        )


class AbuseLogRepository:
    """Repository for flagged-decision audit records"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        account_id: str,
        action: str,
        decision: str,
        score: Optional[int],
        risk_level: Optional[str],
        reasons: List[str],
    ) -> AbuseLog:
        db_log = AbuseLog(
            account_id=account_id,
            action=action,
            decision=decision,
            score=score,
            risk_level=risk_level,
            reasons=reasons,
        )
        self.db.add(db_log)
        self.db.flush()
        return db_log

    def list_for_account(self, account_id: str, limit: int = 50) -> List[AbuseLog]:
        return (
            self.db.query(AbuseLog)
            .filter(AbuseLog.account_id == account_id)
            .order_by(AbuseLog.created_at.desc(), AbuseLog.id.desc())
            .limit(limit)
            .all()
        )
