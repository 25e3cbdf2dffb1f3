"""Pydantic schemas for API request/response validation"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from credits_gateway.domain.models import Feature

SubscriptionTier = Literal["free", "starter", "premium", "unlimited"]


class SignupRequest(BaseModel):
    """Request body for POST /v1/accounts"""

    account_id: str = Field(..., min_length=1, description="Account identifier")
    email: Optional[str] = None
    subscription_tier: SubscriptionTier = "free"


class AccountResponse(BaseModel):
    account_id: str
    email: Optional[str] = None
    subscription_tier: str
    balance: float
    total_purchased: float
    total_used: float
    banned: bool
    created_at: str


class SignupResponse(BaseModel):
    """Response for POST /v1/accounts; the signup itself is risk-screened"""

    account: AccountResponse
    decision: str
    reason: str


class BalanceResponse(BaseModel):
    account_id: str
    balance: float
    unlimited: bool = False


class TransactionItem(BaseModel):
    """Single ledger entry"""

    transaction_id: int
    kind: str
    amount: float
    balance_after: float
    description: str
    metadata: Dict[str, Any] = {}
    external_ref: Optional[str] = None
    created_at: str


class TransactionHistoryResponse(BaseModel):
    account_id: str
    transactions: List[TransactionItem]


class AuthorizeRequest(BaseModel):
    """Request body for POST /v1/authorize"""

    account_id: str = Field(..., min_length=1)
    feature: Feature
    text: str = Field("", description="Chat input; ignored for flat-priced features")


class AuthorizeResponse(BaseModel):
    decision: str
    permitted: bool
    reason: str
    balance: float
    charged: float
    transaction_id: Optional[int] = None
    unlimited: bool = False
    risk_score: Optional[int] = None
    risk_level: Optional[str] = None
    risk_reasons: List[str] = []


class ReconcileRequest(BaseModel):
    """Request body for POST /v1/reconcile"""

    account_id: str = Field(..., min_length=1)
    transaction_id: Optional[int] = Field(None, description="Usage transaction returned by /v1/authorize")
    input_text: str
    output_text: str


class ReconcileResponse(BaseModel):
    transaction_id: Optional[int] = None
    input_words: int
    output_words: int
    estimated_credits: float
    actual_credits: float
    adjustment: float
    shortfall: float
    balance: Optional[float] = None
    already_applied: bool = False


class PurchaseRequest(BaseModel):
    """Payment webhook for a completed credit package purchase"""

    account_id: str = Field(..., min_length=1)
    package: str
    payment_reference: str = Field(..., min_length=1, description="Payment id; purchases apply once")


class RefundCreditRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    credits: Decimal = Field(..., gt=0)
    description: str = "Refund"
    reference: Optional[str] = None


class CreditResponse(BaseModel):
    account_id: str
    credits_added: float
    balance: float
    transaction_id: Optional[int] = None


class RefundRequestCreate(BaseModel):
    """Request body for POST /v1/refunds/request"""

    account_id: str = Field(..., min_length=1)
    reason: str = ""


class RefundRequestResponse(BaseModel):
    refund_id: Optional[int] = None
    status: Optional[str] = None
    decision: str
    reason: str


class RefundResolveRequest(BaseModel):
    status: Literal["approved", "partial", "rejected"]


class RefundResponse(BaseModel):
    refund_id: int
    account_id: str
    reason: str
    status: str
    created_at: str


class AbuseLogItem(BaseModel):
    """Single flagged access decision"""

    id: int
    action: str
    decision: str
    score: Optional[int] = None
    risk_level: Optional[str] = None
    reasons: List[str]
    created_at: str


class AbuseLogResponse(BaseModel):
    account_id: str
    entries: List[AbuseLogItem]
