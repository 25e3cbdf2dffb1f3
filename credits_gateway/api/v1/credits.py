"""Credit top-ups: package purchases (payment webhook) and refunds"""

import logging
from fastapi import APIRouter, Depends, Request

from credits_gateway.api.dependencies import get_ledger, get_request_id
from credits_gateway.api.v1.schemas import CreditResponse, PurchaseRequest, RefundCreditRequest
from credits_gateway.domain.models import TransactionKind
from credits_gateway.domain.pricing import CREDIT_PACKAGES, package_credits
from credits_gateway.services.ledger import Ledger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/credits/purchase", response_model=CreditResponse)
def purchase_credits(
    request_body: PurchaseRequest,
    request: Request,
    ledger: Ledger = Depends(get_ledger),
):
    """
    Apply a completed package purchase.

    Payment providers redeliver webhooks; the payment reference is recorded
    on the transaction and a repeated delivery adds nothing.
    """
    credits = package_credits(request_body.package)
    result = ledger.credit(
        request_body.account_id,
        credits,
        TransactionKind.PURCHASE,
        description=f"Purchased {request_body.package} package",
        external_ref=request_body.payment_reference,
        metadata={
            "package": request_body.package,
            "price": CREDIT_PACKAGES[request_body.package]["price"],
        },
    )

    logger.info(
        "Credit purchase applied",
        extra={
            "request_id": get_request_id(request),
            "account_id": request_body.account_id,
            "package": request_body.package,
            "payment_reference": request_body.payment_reference,
            "transaction_id": result.transaction_id,
        },
    )
    return CreditResponse(
        account_id=request_body.account_id,
        credits_added=float(credits),
        balance=float(result.new_balance),
        transaction_id=result.transaction_id,
    )


@router.post("/credits/refund", response_model=CreditResponse)
def refund_credits(request_body: RefundCreditRequest, ledger: Ledger = Depends(get_ledger)):
    result = ledger.credit(
        request_body.account_id,
        request_body.credits,
        TransactionKind.REFUND,
        description=request_body.description,
        external_ref=request_body.reference,
    )
    return CreditResponse(
        account_id=request_body.account_id,
        credits_added=float(request_body.credits),
        balance=float(result.new_balance),
        transaction_id=result.transaction_id,
    )
