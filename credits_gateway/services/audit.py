"""Persistent audit trail of flagged access decisions"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from credits_gateway.domain.models import Decision, RiskAssessment
from credits_gateway.infrastructure.database.repositories import AbuseLogRepository
from credits_gateway.utils.date_utils import as_utc


class AbuseAuditLog:
    """Stores every decision other than a low-risk allow for later review"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(
        self,
        account_id: str,
        action: str,
        decision: Decision,
        assessment: Optional[RiskAssessment],
        reasons: Optional[List[str]] = None,
    ) -> None:
        with self.session_factory() as db:
            AbuseLogRepository(db).create(
                account_id=account_id,
                action=action,
                decision=decision.value,
                score=assessment.score if assessment else None,
                risk_level=assessment.risk_level.value if assessment else None,
                reasons=reasons if reasons is not None else (assessment.reasons if assessment else []),
            )
            db.commit()

    def entries(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.session_factory() as db:
            return [
                {
                    "id": row.id,
                    "action": row.action,
                    "decision": row.decision,
                    "score": row.score,
                    "risk_level": row.risk_level,
                    "reasons": list(row.reasons or []),
                    "created_at": as_utc(row.created_at),
                }
                for row in AbuseLogRepository(db).list_for_account(account_id, limit)
            ]
