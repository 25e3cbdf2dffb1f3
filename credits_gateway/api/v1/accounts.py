"""Account endpoints: signup, balance, transaction history, abuse log"""

from fastapi import APIRouter, Depends, Query, Request

from credits_gateway.api.dependencies import get_access_gate, get_audit_log, get_ledger, get_request_id
from credits_gateway.api.v1.schemas import (
    AbuseLogItem,
    AbuseLogResponse,
    AccountResponse,
    BalanceResponse,
    SignupRequest,
    SignupResponse,
    TransactionHistoryResponse,
    TransactionItem,
)
from credits_gateway.domain.models import Account, ActionKind
from credits_gateway.services.access_gate import AccessGate
from credits_gateway.services.audit import AbuseAuditLog
from credits_gateway.services.ledger import Ledger

router = APIRouter()


def account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        account_id=account.id,
        email=account.email,
        subscription_tier=account.subscription_tier,
        balance=float(account.balance),
        total_purchased=float(account.total_purchased),
        total_used=float(account.total_used),
        banned=account.banned,
        created_at=account.created_at.isoformat(),
    )


@router.post("/accounts", response_model=SignupResponse, status_code=201)
def create_account(
    request_body: SignupRequest,
    request: Request,
    ledger: Ledger = Depends(get_ledger),
    gate: AccessGate = Depends(get_access_gate),
):
    """
    Open an account with the signup grant, then screen the signup.

    A risky signup keeps its account; a ban decision leaves it banned and
    every later request is refused.
    """
    ledger.open_account(
        request_body.account_id,
        email=request_body.email,
        subscription_tier=request_body.subscription_tier,
    )
    screening = gate.screen(
        request_body.account_id,
        ActionKind.SIGNUP,
        request_id=get_request_id(request),
    )

    return SignupResponse(
        account=account_response(ledger.get_account(request_body.account_id)),
        decision=screening.decision.value,
        reason=screening.reason,
    )


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
def get_balance(account_id: str, gate: AccessGate = Depends(get_access_gate)):
    """Current balance; admin accounts show the unlimited sentinel"""
    if gate.is_admin(account_id):
        return BalanceResponse(
            account_id=account_id,
            balance=float(gate.admin_override.unlimited_balance()),
            unlimited=True,
        )
    return BalanceResponse(account_id=account_id, balance=float(gate.ledger.balance(account_id)))


@router.get("/accounts/{account_id}/transactions", response_model=TransactionHistoryResponse)
def get_transactions(
    account_id: str,
    limit: int = Query(20, ge=1, le=100, description="Maximum entries, newest first"),
    ledger: Ledger = Depends(get_ledger),
):
    transactions = [
        TransactionItem(
            transaction_id=t.id,
            kind=t.kind.value,
            amount=float(t.amount),
            balance_after=float(t.balance_after),
            description=t.description,
            metadata=t.metadata,
            external_ref=t.external_ref,
            created_at=t.created_at.isoformat(),
        )
        for t in ledger.history(account_id, limit=limit)
    ]
    return TransactionHistoryResponse(account_id=account_id, transactions=transactions)


@router.get("/accounts/{account_id}/abuse-log", response_model=AbuseLogResponse)
def get_abuse_log(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    audit: AbuseAuditLog = Depends(get_audit_log),
):
    entries = [
        AbuseLogItem(
            id=entry["id"],
            action=entry["action"],
            decision=entry["decision"],
            score=entry["score"],
            risk_level=entry["risk_level"],
            reasons=entry["reasons"],
            created_at=entry["created_at"].isoformat(),
        )
        for entry in audit.entries(account_id, limit)
    ]
    return AbuseLogResponse(account_id=account_id, entries=entries)
