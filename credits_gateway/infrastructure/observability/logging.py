"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from credits_gateway.domain.models import Authorization, Decision, Reconciliation
from credits_gateway.utils.date_utils import utc_now


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utc_now().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = "credits-gateway"


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_authorization(
    account_id: str,
    feature: str,
    authorization: Authorization,
    request_id: Optional[str] = None,
) -> None:
    """
    Log an access decision. Low-risk allows go out at info; anything the risk
    engine flagged carries the full assessment at warning for later review.
    """
    assessment = authorization.assessment
    extra = {
        "request_id": request_id,
        "account_id": account_id,
        "feature": feature,
        "step": "authorization",
        "decision": authorization.decision.value,
        "reason": authorization.reason,
        "charged_credits": str(authorization.charged),
    }
    if assessment is not None:
        extra.update(
            {
                "risk_score": assessment.score,
                "risk_level": assessment.risk_level.value,
                "risk_action": assessment.action.value,
                "risk_reasons": assessment.reasons,
            }
        )

    risk_flagged = assessment is not None and assessment.action != Decision.ALLOW
    if risk_flagged or authorization.decision == Decision.BAN:
        logging.warning("Access decision flagged", extra=extra)
    else:
        logging.info("Access decision", extra=extra)


def log_reconciliation(account_id: str, reconciliation: Reconciliation) -> None:
    """Log chat cost reconciliation; absorbed shortfalls are warnings"""
    extra = {
        "account_id": account_id,
        "step": "reconcile",
        "transaction_id": reconciliation.transaction_id,
        "estimated_credits": str(reconciliation.estimated_credits),
        "actual_credits": str(reconciliation.actual_credits),
        "adjustment_credits": str(reconciliation.adjustment),
        "shortfall_credits": str(reconciliation.shortfall),
    }
    if reconciliation.shortfall > 0:
        logging.warning("Reconciliation shortfall absorbed", extra=extra)
    else:
        logging.info("Reconciliation applied", extra=extra)
