"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from credits_gateway.config import settings
from credits_gateway.domain.admin import AdminOverride
from credits_gateway.domain.risk import RiskScorer
from credits_gateway.infrastructure.database.session import get_session_factory
from credits_gateway.services.access_gate import AccessGate
from credits_gateway.services.audit import AbuseAuditLog
from credits_gateway.services.ledger import Ledger
from credits_gateway.services.refunds import RefundDesk
from credits_gateway.services.signals import RiskSignalCollector


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_admin_override() -> AdminOverride:
    """Admin allow-list from configuration"""
    return AdminOverride.from_settings(settings)


def get_ledger(session_factory: sessionmaker = Depends(get_session_factory)) -> Ledger:
    return Ledger(session_factory)


def get_signal_collector(session_factory: sessionmaker = Depends(get_session_factory)) -> RiskSignalCollector:
    return RiskSignalCollector(session_factory)


def get_audit_log(session_factory: sessionmaker = Depends(get_session_factory)) -> AbuseAuditLog:
    return AbuseAuditLog(session_factory)


def get_refund_desk(session_factory: sessionmaker = Depends(get_session_factory)) -> RefundDesk:
    return RefundDesk(session_factory)


def get_access_gate(
    ledger: Ledger = Depends(get_ledger),
    collector: RiskSignalCollector = Depends(get_signal_collector),
    audit: AbuseAuditLog = Depends(get_audit_log),
    admin_override: AdminOverride = Depends(get_admin_override),
) -> AccessGate:
    """Access gate wired to the configured datastore and fail-open policy"""
    return AccessGate(
        ledger=ledger,
        risk_scorer=RiskScorer(collector, fail_open=settings.risk_fail_open),
        admin_override=admin_override,
        activity=collector,
        audit=audit,
    )
