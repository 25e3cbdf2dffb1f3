"""Unit tests for the access gate decision flow and reconciliation"""

import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from credits_gateway.domain.admin import AdminOverride
from credits_gateway.domain.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerTransientError,
)
from credits_gateway.domain.models import (
    ActionKind,
    BanStatus,
    Decision,
    Feature,
    RiskAssessment,
    RiskLevel,
    TransactionKind,
)
from credits_gateway.domain.risk import RiskScorer
from credits_gateway.infrastructure.database.models import UserAccount
from credits_gateway.services.access_gate import (
    INSUFFICIENT_CREDITS,
    SERVICE_UNAVAILABLE,
    USAGE_LIMIT_REACHED,
    AccessGate,
)
from credits_gateway.services.refunds import RefundDesk
from credits_gateway.utils.date_utils import period_key, utc_now


def low_risk() -> RiskAssessment:
    return RiskAssessment(score=0, risk_level=RiskLevel.LOW, reasons=[], action=Decision.ALLOW)


def test_allow_debits_estimate(gate: AccessGate, ledger, collector):
    ledger.open_account("user_1")

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2.5"))

    assert authorization.decision == Decision.ALLOW
    assert authorization.permitted
    assert authorization.charged == Decimal("2.5")
    assert authorization.balance == Decimal("97.5")
    txn = ledger.get_transaction("user_1", authorization.transaction_id)
    assert txn.amount == Decimal("-2.5")

    # Permitted requests feed the rate signals
    assert collector.collect("user_1", ActionKind.MESSAGE).actions_last_minute == 1


def test_insufficient_credits_blocks_without_charging(gate: AccessGate, ledger):
    ledger.open_account("user_1", starting_credits=5)

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("10"))

    assert authorization.decision == Decision.BLOCK
    assert authorization.reason == INSUFFICIENT_CREDITS
    assert authorization.balance == Decimal("5")
    assert authorization.transaction_id is None
    assert ledger.balance("user_1") == Decimal("5")
    assert len(ledger.history("user_1")) == 1


def test_lost_race_reports_insufficient_credits():
    ledger = MagicMock()
    ledger.ban_status.return_value = BanStatus(banned=False)
    ledger.can_afford.return_value = True
    ledger.debit.side_effect = InsufficientCreditsError("user_1", Decimal("3"), Decimal("30"))
    scorer = MagicMock()
    scorer.assess.return_value = low_risk()
    gate = AccessGate(ledger, scorer, AdminOverride())

    authorization = gate.authorize("user_1", Feature.QUIZ_GENERATION, Decimal("30"))

    assert authorization.decision == Decision.BLOCK
    assert authorization.reason == INSUFFICIENT_CREDITS
    assert authorization.balance == Decimal("3")


def test_zero_estimate_is_not_debited(gate: AccessGate, ledger):
    ledger.open_account("user_1")

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("0"))

    assert authorization.permitted
    assert authorization.transaction_id is None
    assert ledger.balance("user_1") == Decimal("100")


def test_unknown_account_is_fatal(gate: AccessGate):
    with pytest.raises(AccountNotFoundError):
        gate.authorize("ghost", Feature.CHAT, Decimal("1"))


def test_negative_estimate_rejected(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    with pytest.raises(ValueError):
        gate.authorize("user_1", Feature.CHAT, Decimal("-1"))


def test_risk_block_does_not_charge(gate: AccessGate, ledger, audit, seed_activity):
    """New free account (30) bursting messages (30) -> 60, block"""
    ledger.open_account("user_1")
    seed_activity("user_1", "message", 21)

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.BLOCK
    assert authorization.reason.startswith("risk blocked")
    assert authorization.assessment.score == 60
    assert ledger.balance("user_1") == Decimal("100")

    entries = audit.entries("user_1")
    assert entries[0]["decision"] == "block"
    assert entries[0]["score"] == 60
    assert "Excessive requests (21 in last minute)" in entries[0]["reasons"]


def test_risk_warn_proceeds_and_is_audited(gate: AccessGate, ledger, audit, seed_usage):
    """New free account (30) saturating its limit three periods running (15) -> 45, warn"""
    ledger.open_account("user_1")
    seed_usage("user_1", {"2025-01": 10, "2025-02": 12, "2025-03": 10})

    authorization = gate.authorize("user_1", Feature.QUIZ_GENERATION, Decimal("30"))

    assert authorization.decision == Decision.WARN
    assert authorization.permitted
    assert authorization.charged == Decimal("30")
    assert ledger.balance("user_1") == Decimal("70")
    assert audit.entries("user_1")[0]["decision"] == "warn"


def test_risk_ban_persists(gate: AccessGate, ledger, audit, session_factory):
    ledger.open_account("user_1")
    desk = RefundDesk(session_factory)
    for _ in range(3):
        desk.submit("user_1", "Not helpful")

    screening = gate.screen("user_1", ActionKind.REFUND)

    assert screening.decision == Decision.BAN
    assert screening.assessment.score == 100
    status = ledger.ban_status("user_1")
    assert status.banned
    assert status.expires_at > utc_now() + timedelta(days=6)

    # Every later request is refused without scoring
    follow_up = gate.authorize("user_1", Feature.CHAT, Decimal("1"))
    assert follow_up.decision == Decision.BAN
    assert follow_up.reason.startswith("account banned")
    assert ledger.balance("user_1") == Decimal("100")
    assert [e["decision"] for e in audit.entries("user_1")] == ["ban", "ban"]


def test_permanent_ban_when_duration_is_zero(ledger, collector, admin_override):
    gate = AccessGate(ledger, RiskScorer(collector), admin_override, ban_duration_days=0)
    ledger.open_account("user_1")
    scorer = MagicMock()
    scorer.assess.return_value = RiskAssessment(
        score=85, risk_level=RiskLevel.CRITICAL, reasons=["Chargeback"], action=Decision.BAN
    )
    gate.risk_scorer = scorer

    gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert ledger.ban_status("user_1").expires_at is None


def test_fail_closed_detection_blocks(ledger, admin_override):
    ledger.open_account("user_1")
    scorer = RiskScorer(MagicMock(side_effect=RuntimeError("signals down")), fail_open=False)
    gate = AccessGate(ledger, scorer, admin_override)

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.BLOCK
    assert ledger.balance("user_1") == Decimal("100")


def test_fail_open_detection_allows(ledger, admin_override):
    ledger.open_account("user_1")
    scorer = RiskScorer(MagicMock(side_effect=RuntimeError("signals down")))
    gate = AccessGate(ledger, scorer, admin_override)

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.ALLOW
    assert authorization.assessment.reasons == ["detection unavailable"]


def test_ledger_outage_fails_closed():
    ledger = MagicMock()
    ledger.ban_status.side_effect = LedgerTransientError("Ledger ban_status unavailable")
    scorer = MagicMock()
    gate = AccessGate(ledger, scorer, AdminOverride())

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.BLOCK
    assert authorization.reason == SERVICE_UNAVAILABLE
    scorer.assess.assert_not_called()


def test_signup_with_disposable_email_is_blocked(gate: AccessGate, ledger):
    ledger.open_account("user_1", email="someone@mailinator.com")

    screening = gate.screen("user_1", ActionKind.SIGNUP)

    assert screening.decision == Decision.BLOCK
    assert "Disposable email address detected" in screening.assessment.reasons


def test_reconcile_charges_only_the_difference(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2.0"))

    reconciliation = gate.reconcile("user_1", authorization.transaction_id, Decimal("3.0"))

    assert reconciliation.estimated_credits == Decimal("2")
    assert reconciliation.adjustment == Decimal("1")
    assert reconciliation.shortfall == Decimal("0")
    assert ledger.balance("user_1") == Decimal("97")


def test_reconcile_twice_never_double_charges(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2.0"))

    first = gate.reconcile("user_1", authorization.transaction_id, Decimal("3.0"))
    second = gate.reconcile("user_1", authorization.transaction_id, Decimal("3.0"))

    assert second.already_applied is True
    assert second.adjustment_transaction_id == first.adjustment_transaction_id
    assert ledger.balance("user_1") == Decimal("97")


def test_reconcile_refunds_overestimate(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2.5"))

    reconciliation = gate.reconcile("user_1", authorization.transaction_id, Decimal("1.2"))

    assert reconciliation.adjustment == Decimal("-1.3")
    assert reconciliation.balance == Decimal("98.8")
    refund = ledger.get_transaction("user_1", reconciliation.adjustment_transaction_id)
    assert refund.kind == TransactionKind.REFUND


def test_reconcile_shortfall_clamps_at_zero(gate: AccessGate, ledger):
    ledger.open_account("user_1", starting_credits=3)
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2"))

    reconciliation = gate.reconcile("user_1", authorization.transaction_id, Decimal("4"))

    assert reconciliation.adjustment == Decimal("1")
    assert reconciliation.shortfall == Decimal("1")
    assert reconciliation.balance == Decimal("0")
    assert ledger.balance("user_1") == Decimal("0")


def test_reconcile_exact_estimate_is_noop(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2"))

    reconciliation = gate.reconcile("user_1", authorization.transaction_id, Decimal("2"))

    assert reconciliation.adjustment == Decimal("0")
    assert reconciliation.adjustment_transaction_id is None
    assert len(ledger.history("user_1")) == 2


def test_reconcile_without_estimate_charges_actual(gate: AccessGate, ledger):
    ledger.open_account("user_1")

    reconciliation = gate.reconcile("user_1", None, Decimal("0.4"))

    assert reconciliation.estimated_credits == Decimal("0")
    assert reconciliation.adjustment == Decimal("0.4")
    assert ledger.balance("user_1") == Decimal("99.6")


def test_reconcile_rejects_non_usage_transaction(gate: AccessGate, ledger):
    ledger.open_account("user_1")
    bonus = ledger.history("user_1")[0]

    with pytest.raises(ValueError):
        gate.reconcile("user_1", bonus.id, Decimal("1"))


def test_reconcile_after_absorbed_shortfall_is_never_charged_later(gate: AccessGate, ledger):
    ledger.open_account("user_1", starting_credits=2)
    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("2"))

    first = gate.reconcile("user_1", authorization.transaction_id, Decimal("3"))
    ledger.credit("user_1", 1000, TransactionKind.PURCHASE, description="Starter", external_ref="pay_1")
    second = gate.reconcile("user_1", authorization.transaction_id, Decimal("3"))

    assert first.adjustment == Decimal("0")
    assert first.shortfall == Decimal("1")
    assert first.adjustment_transaction_id is not None
    assert second.already_applied is True
    assert second.adjustment == Decimal("0")
    assert second.shortfall == Decimal("1")
    assert ledger.balance("user_1") == Decimal("1000")


def test_monthly_usage_limit_blocks_without_charging(gate: AccessGate, ledger, seed_usage):
    ledger.open_account("user_1")
    seed_usage("user_1", {period_key(utc_now()): 10})

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.BLOCK
    assert authorization.reason == USAGE_LIMIT_REACHED
    assert authorization.balance == Decimal("100")
    assert ledger.balance("user_1") == Decimal("100")


def test_monthly_usage_limit_counts_permitted_requests(gate: AccessGate, ledger):
    ledger.open_account("user_1")

    reasons = [gate.authorize("user_1", Feature.CHAT, Decimal("0.1")).reason for _ in range(11)]

    assert reasons == ["ok"] * 10 + [USAGE_LIMIT_REACHED]
    assert ledger.balance("user_1") == Decimal("99")


def test_unlimited_tier_has_no_monthly_limit(gate: AccessGate, ledger, seed_usage):
    ledger.open_account("user_1", subscription_tier="unlimited")
    seed_usage("user_1", {period_key(utc_now()): 5000})

    assert gate.authorize("user_1", Feature.CHAT, Decimal("1")).permitted


def test_screening_ignores_monthly_limit(gate: AccessGate, ledger, seed_usage):
    ledger.open_account("user_1")
    seed_usage("user_1", {period_key(utc_now()): 10})

    assert gate.screen("user_1", ActionKind.REFUND).permitted


def test_expired_ban_clears_on_next_authorize(gate: AccessGate, ledger, session_factory):
    ledger.open_account("user_1")
    ledger.ban("user_1", "Excessive requests", duration_days=7)
    with session_factory() as db:
        db.get(UserAccount, "user_1").ban_expires_at = utc_now() - timedelta(minutes=1)
        db.commit()

    authorization = gate.authorize("user_1", Feature.CHAT, Decimal("1"))

    assert authorization.decision == Decision.ALLOW
    assert authorization.charged == Decimal("1")
    account = ledger.get_account("user_1")
    assert account.banned is False
    assert account.ban_reason is None
    assert account.ban_expires_at is None
