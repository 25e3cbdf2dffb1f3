"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"


class Feature(str, Enum):
    """Paid features a handler can request"""

    CHAT = "chat"
    IMAGE_GENERATION = "image_generation"
    QUIZ_GENERATION = "quiz_generation"
    NOTE_GENERATION = "note_generation"
    SLIDESHOW_GENERATION = "slideshow_generation"
    NOTE_ENHANCEMENT = "note_enhancement"
    TAB_GENERATION = "tab_generation"


class ActionKind(str, Enum):
    """Action kinds understood by the risk engine"""

    MESSAGE = "message"
    IMAGE = "image"
    REFUND = "refund"
    SIGNUP = "signup"
    QUIZ = "quiz"
    NOTE = "note"
    SLIDESHOW = "slideshow"


GENERATION_ACTIONS = frozenset({ActionKind.QUIZ, ActionKind.NOTE, ActionKind.SLIDESHOW})


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Decision(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"
    BAN = "ban"

    @property
    def permits(self) -> bool:
        return self in (Decision.ALLOW, Decision.WARN)


@dataclass
class Account:
    """Credit account projection"""

    id: str
    email: Optional[str]
    subscription_tier: str
    balance: Decimal
    total_purchased: Decimal
    total_used: Decimal
    created_at: datetime
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires_at: Optional[datetime] = None


@dataclass
class Transaction:
    """Immutable ledger entry"""

    id: int
    account_id: str
    kind: TransactionKind
    amount: Decimal  # negative for usage
    balance_after: Decimal
    description: str
    metadata: Dict[str, Any]
    external_ref: Optional[str]
    created_at: datetime


@dataclass
class LedgerResult:
    """Outcome of a successful balance mutation"""

    new_balance: Decimal
    transaction_id: Optional[int]
    charged: Decimal = Decimal("0")


@dataclass
class BanStatus:
    banned: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class RiskSignal:
    """Recent account behaviour consumed by the risk engine"""

    account_age_days: int
    subscription_tier: str = "free"
    refund_count: int = 0
    days_since_last_refund: Optional[int] = None
    approved_refund_count: int = 0
    actions_last_minute: int = 0
    generations_last_hour: int = 0
    saturated_periods: int = 0
    usage_spike_pct: Optional[float] = None
    is_disposable_email: bool = False


@dataclass
class RiskAssessment:
    """Output of risk evaluation"""

    score: int
    risk_level: RiskLevel
    reasons: List[str]
    action: Decision

    @property
    def is_abusive(self) -> bool:
        return self.score >= 60


@dataclass
class ChatCostEstimate:
    input_words: int
    estimated_output_words: int
    estimated_credits: Decimal


@dataclass
class ChatCost:
    input_words: int
    output_words: int
    credits_used: Decimal


@dataclass
class Authorization:
    """AccessGate verdict for one request"""

    decision: Decision
    reason: str
    balance: Decimal
    charged: Decimal = Decimal("0")
    transaction_id: Optional[int] = None
    assessment: Optional[RiskAssessment] = None
    unlimited: bool = False

    @property
    def permitted(self) -> bool:
        return self.decision.permits


@dataclass
class Reconciliation:
    """Adjustment applied after the real cost of a request is known"""

    transaction_id: Optional[int]
    estimated_credits: Decimal
    actual_credits: Decimal
    adjustment: Decimal  # positive = extra charge, negative = refunded
    shortfall: Decimal = Decimal("0")
    balance: Optional[Decimal] = None
    already_applied: bool = False
    adjustment_transaction_id: Optional[int] = field(default=None)
