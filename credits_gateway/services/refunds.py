"""Refund requests - recorded for support review and fed back into risk signals"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlalchemy.orm import sessionmaker

from credits_gateway.domain.exceptions import AccountNotFoundError, RefundNotFoundError
from credits_gateway.infrastructure.database.repositories import AccountRepository, RefundRepository
from credits_gateway.utils.date_utils import as_utc

logger = logging.getLogger(__name__)

REFUND_STATUSES = ("pending", "approved", "partial", "rejected")


@dataclass
class RefundTicket:
    id: int
    account_id: str
    reason: str
    status: str
    created_at: datetime


def _to_ticket(row) -> RefundTicket:
    return RefundTicket(
        id=row.id,
        account_id=row.account_id,
        reason=row.reason,
        status=row.status,
        created_at=as_utc(row.created_at),
    )


class RefundDesk:
    """Opens and resolves refund requests"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def submit(self, account_id: str, reason: str) -> RefundTicket:
        with self.session_factory() as db:
            if AccountRepository(db).get(account_id) is None:
                raise AccountNotFoundError(account_id)
            ticket = _to_ticket(RefundRepository(db).create(account_id, reason))
            db.commit()

        logger.info("Refund requested", extra={"account_id": account_id, "refund_id": ticket.id})
        return ticket

    def resolve(self, refund_id: int, status: str) -> RefundTicket:
        if status not in REFUND_STATUSES[1:]:
            raise ValueError(f"Refund cannot be resolved as {status!r}")

        with self.session_factory() as db:
            row = RefundRepository(db).get(refund_id)
            if row is None:
                raise RefundNotFoundError(f"Refund request {refund_id} not found")
            row.status = status
            db.flush()
            ticket = _to_ticket(row)
            db.commit()

        logger.info(
            "Refund resolved",
            extra={"account_id": ticket.account_id, "refund_id": refund_id, "status": status},
        )
        return ticket

    def list_for_account(self, account_id: str) -> List[RefundTicket]:
        with self.session_factory() as db:
            return [_to_ticket(row) for row in RefundRepository(db).list_for_account(account_id)]
