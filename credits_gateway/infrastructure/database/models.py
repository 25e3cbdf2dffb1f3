"""SQLAlchemy ORM models for accounts, the credit ledger, and risk signals

Credit amounts are stored as integer tenths of a credit.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from credits_gateway.utils.date_utils import utc_now

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
SequenceId = BigInteger().with_variant(Integer, "sqlite")


class UserAccount(Base):
    """Account balance row; the cached projection of the ledger"""

    __tablename__ = "accounts"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=True, index=True)
    subscription_tier = Column(Text, nullable=False, default="free")
    balance_tenths = Column(BigInteger, nullable=False, default=0)
    total_purchased_tenths = Column(BigInteger, nullable=False, default=0)
    total_used_tenths = Column(BigInteger, nullable=False, default=0)
    banned = Column(Boolean, nullable=False, default=False)
    ban_reason = Column(Text, nullable=True)
    ban_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("balance_tenths >= 0", name="ck_balance_non_negative"),
    )


class CreditTransaction(Base):
    """Append-only ledger entry"""

    __tablename__ = "credit_transactions"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    account_id = Column(Text, ForeignKey("accounts.id"), nullable=False)
    kind = Column(Text, nullable=False)  # purchase | usage | refund | bonus
    amount_tenths = Column(BigInteger, nullable=False)  # negative for usage
    balance_after_tenths = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False, default="")
    details = Column(JSON, nullable=True)
    external_ref = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
        Index("ux_credit_transactions_account_ref", "account_id", "external_ref", unique=True),
    )


class RefundRequest(Base):
    """Refund request raised by a user; decided outside this service"""

    __tablename__ = "refund_requests"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    account_id = Column(Text, ForeignKey("accounts.id"), nullable=False, index=True)
    reason = Column(Text, nullable=False, default="")
    status = Column(Text, nullable=False, default="pending")  # pending | approved | partial | rejected
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class UsagePeriod(Base):
    """Monthly paid-request counter per account"""

    __tablename__ = "usage_periods"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    account_id = Column(Text, ForeignKey("accounts.id"), nullable=False)
    period = Column(Text, nullable=False)  # YYYY-MM
    requests_used = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("account_id", "period", name="uq_usage_account_period"),
    )


class ActivityEvent(Base):
    """One permitted request, kept for rate-based risk signals"""

    __tablename__ = "activity_events"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    account_id = Column(Text, ForeignKey("accounts.id"), nullable=False)
    action = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_activity_account_action_created", "account_id", "action", "created_at"),
    )


class AbuseLog(Base):
    """Audit record for every decision other than a low-risk allow"""

    __tablename__ = "abuse_logs"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    account_id = Column(Text, nullable=False, index=True)
    action = Column(Text, nullable=False)
    decision = Column(Text, nullable=False)
    score = Column(Integer, nullable=True)
    risk_level = Column(Text, nullable=True)
    reasons = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
