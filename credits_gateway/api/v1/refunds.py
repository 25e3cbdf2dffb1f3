"""Refund request endpoints"""

from fastapi import APIRouter, Depends, Request, Response

from credits_gateway.api.dependencies import get_access_gate, get_refund_desk, get_request_id
from credits_gateway.api.v1.schemas import (
    RefundRequestCreate,
    RefundRequestResponse,
    RefundResolveRequest,
    RefundResponse,
)
from credits_gateway.domain.models import ActionKind
from credits_gateway.services.access_gate import AccessGate
from credits_gateway.services.refunds import RefundDesk

router = APIRouter()


@router.post("/refunds/request", response_model=RefundRequestResponse, status_code=201)
def request_refund(
    request_body: RefundRequestCreate,
    request: Request,
    response: Response,
    gate: AccessGate = Depends(get_access_gate),
    desk: RefundDesk = Depends(get_refund_desk),
):
    """
    Screen a refund request and record it for review.

    Refused requests are not recorded, so they do not count towards the
    account's refund history.
    """
    screening = gate.screen(
        request_body.account_id,
        ActionKind.REFUND,
        request_id=get_request_id(request),
    )
    if not screening.permitted:
        response.status_code = 403
        return RefundRequestResponse(decision=screening.decision.value, reason=screening.reason)

    ticket = desk.submit(request_body.account_id, request_body.reason)
    return RefundRequestResponse(
        refund_id=ticket.id,
        status=ticket.status,
        decision=screening.decision.value,
        reason=screening.reason,
    )


@router.post("/refunds/{refund_id}/resolve", response_model=RefundResponse)
def resolve_refund(
    refund_id: int,
    request_body: RefundResolveRequest,
    desk: RefundDesk = Depends(get_refund_desk),
):
    ticket = desk.resolve(refund_id, request_body.status)
    return RefundResponse(
        refund_id=ticket.id,
        account_id=ticket.account_id,
        reason=ticket.reason,
        status=ticket.status,
        created_at=ticket.created_at.isoformat(),
    )
