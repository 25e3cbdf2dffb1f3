"""POST /v1/authorize and POST /v1/reconcile - charge paid features"""

from fastapi import APIRouter, Depends, Request, Response

from credits_gateway.api.dependencies import get_access_gate, get_request_id
from credits_gateway.api.v1.schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    ReconcileRequest,
    ReconcileResponse,
)
from credits_gateway.domain.models import Feature
from credits_gateway.domain.pricing import actual_chat_cost, estimate_chat_cost, flat_cost
from credits_gateway.services.access_gate import (
    INSUFFICIENT_CREDITS,
    SERVICE_UNAVAILABLE,
    USAGE_LIMIT_REACHED,
    AccessGate,
)

router = APIRouter()


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize(
    request_body: AuthorizeRequest,
    request: Request,
    response: Response,
    gate: AccessGate = Depends(get_access_gate),
):
    """
    Decide whether a paid feature request may run and charge its estimate.

    Flow:
    1. Price the request: chat from its input text, everything else flat
    2. Run the access gate (admin, ban, risk, balance, atomic debit)
    3. Map the decision onto the status code: 200 permitted, 402 insufficient
       credits, 429 monthly limit reached, 403 blocked or banned, 503 ledger
       unavailable
    """
    request_id = get_request_id(request)

    if request_body.feature == Feature.CHAT:
        estimated = estimate_chat_cost(request_body.text).estimated_credits
    else:
        estimated = flat_cost(request_body.feature)

    authorization = gate.authorize(
        request_body.account_id,
        request_body.feature,
        estimated,
        request_id=request_id,
    )

    if authorization.reason == INSUFFICIENT_CREDITS:
        response.status_code = 402
    elif authorization.reason == USAGE_LIMIT_REACHED:
        response.status_code = 429
    elif authorization.reason == SERVICE_UNAVAILABLE:
        response.status_code = 503
    elif not authorization.permitted:
        response.status_code = 403

    assessment = authorization.assessment
    return AuthorizeResponse(
        decision=authorization.decision.value,
        permitted=authorization.permitted,
        reason=authorization.reason,
        balance=float(authorization.balance),
        charged=float(authorization.charged),
        transaction_id=authorization.transaction_id,
        unlimited=authorization.unlimited,
        risk_score=assessment.score if assessment else None,
        risk_level=assessment.risk_level.value if assessment else None,
        risk_reasons=assessment.reasons if assessment else [],
    )


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(request_body: ReconcileRequest, gate: AccessGate = Depends(get_access_gate)):
    """Charge or refund the difference between the chat estimate and its real cost"""
    cost = actual_chat_cost(request_body.input_text, request_body.output_text)
    reconciliation = gate.reconcile(request_body.account_id, request_body.transaction_id, cost.credits_used)

    return ReconcileResponse(
        transaction_id=reconciliation.transaction_id,
        input_words=cost.input_words,
        output_words=cost.output_words,
        estimated_credits=float(reconciliation.estimated_credits),
        actual_credits=float(reconciliation.actual_credits),
        adjustment=float(reconciliation.adjustment),
        shortfall=float(reconciliation.shortfall),
        balance=float(reconciliation.balance) if reconciliation.balance is not None else None,
        already_applied=reconciliation.already_applied,
    )
