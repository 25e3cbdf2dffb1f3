"""Access gate - the single place where admin, ban, risk, and balance outcomes
combine into a decision for a paid request.

Flow per request:
1. Admin override (account id or the account's stored email) short-circuits:
   allowed, unlimited, never scored, never charged
2. Active ban -> ban
3. Risk assessment: ban persists a ban, block stops without charging, warn proceeds flagged
4. Monthly tier quota -> block "usage limit reached"
5. Affordability pre-check -> block "insufficient credits"
6. Atomic debit of the estimate -> allow (or warn) with the post-debit balance
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from credits_gateway.config import settings
from credits_gateway.domain.admin import AdminOverride
from credits_gateway.domain.exceptions import InsufficientCreditsError, LedgerTransientError
from credits_gateway.domain.models import (
    ActionKind,
    Authorization,
    Decision,
    Feature,
    Reconciliation,
    RiskAssessment,
    TransactionKind,
)
from credits_gateway.domain.pricing import FEATURE_ACTIONS, credits_to_tenths
from credits_gateway.domain.risk import RiskScorer
from credits_gateway.infrastructure.observability.logging import log_authorization, log_reconciliation
from credits_gateway.infrastructure.observability.metrics import (
    record_authorization,
    reconcile_shortfall_counter,
)
from credits_gateway.services.audit import AbuseAuditLog
from credits_gateway.services.ledger import Ledger
from credits_gateway.services.signals import RiskSignalCollector

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "insufficient credits"
SERVICE_UNAVAILABLE = "service unavailable"
USAGE_LIMIT_REACHED = "usage limit reached"
ADMIN_OVERRIDE = "admin override"


class AccessGate:
    """Authorizes, charges, and reconciles paid requests"""

    def __init__(
        self,
        ledger: Ledger,
        risk_scorer: RiskScorer,
        admin_override: AdminOverride,
        activity: Optional[RiskSignalCollector] = None,
        audit: Optional[AbuseAuditLog] = None,
        ban_duration_days: Optional[int] = None,
    ):
        self.ledger = ledger
        self.risk_scorer = risk_scorer
        self.admin_override = admin_override
        self.activity = activity
        self.audit = audit
        self.ban_duration_days = settings.ban_duration_days if ban_duration_days is None else ban_duration_days

    def authorize(
        self,
        account_id: str,
        feature: Union[Feature, str],
        estimated_credits: Union[Decimal, int],
        request_id: Optional[str] = None,
    ) -> Authorization:
        """
        Decide whether a paid feature request may proceed and, if so, charge the estimate.

        Raises:
            AccountNotFoundError: unknown account (fatal for the request)
        """
        feature = Feature(feature)
        estimated = Decimal(estimated_credits)
        credits_to_tenths(estimated)  # rejects negative or sub-tenth estimates

        authorization = self._decide(
            account_id, FEATURE_ACTIONS[feature], estimated, feature.value, billable=True
        )

        record_authorization(authorization.decision.value, feature.value, authorization.charged)
        log_authorization(account_id, feature.value, authorization, request_id)
        return authorization

    def screen(
        self,
        account_id: str,
        action: Union[ActionKind, str],
        request_id: Optional[str] = None,
    ) -> Authorization:
        """Risk-only gate for actions that cost nothing (signup, refund requests)"""
        action = ActionKind(action)
        authorization = self._decide(account_id, action, Decimal("0"), action.value, billable=False)

        record_authorization(authorization.decision.value, action.value, authorization.charged)
        log_authorization(account_id, action.value, authorization, request_id)
        return authorization

    def is_admin(self, account_id: str) -> bool:
        """
        Admin by account id, or by the email stored on the account.

        Caller-supplied emails are never consulted. An id on the allow-list
        needs no account row.
        """
        if self.admin_override.is_admin(account_id):
            return True
        return self.admin_override.is_admin(self.ledger.get_account(account_id).email)

    def _decide(
        self,
        account_id: str,
        action: ActionKind,
        estimated: Decimal,
        description: str,
        billable: bool,
    ) -> Authorization:
        try:
            if self.is_admin(account_id):
                return Authorization(
                    decision=Decision.ALLOW,
                    reason=ADMIN_OVERRIDE,
                    balance=self.admin_override.unlimited_balance(),
                    unlimited=True,
                )

            ban = self.ledger.ban_status(account_id)
            if ban.banned:
                authorization = Authorization(
                    decision=Decision.BAN,
                    reason=f"account banned: {ban.reason}" if ban.reason else "account banned",
                    balance=self.ledger.balance(account_id),
                )
                self._audit(account_id, action, authorization.decision, None, [authorization.reason])
                return authorization

            assessment = self.risk_scorer.assess(account_id, action)

            if assessment.action == Decision.BAN:
                reason = "; ".join(assessment.reasons) or f"risk score {assessment.score}"
                self.ledger.ban(account_id, reason, self.ban_duration_days)
                self._audit(account_id, action, Decision.BAN, assessment)
                return Authorization(
                    decision=Decision.BAN,
                    reason=f"risk banned: {reason}",
                    balance=self.ledger.balance(account_id),
                    assessment=assessment,
                )

            if assessment.action == Decision.BLOCK:
                self._audit(account_id, action, Decision.BLOCK, assessment)
                return Authorization(
                    decision=Decision.BLOCK,
                    reason="risk blocked: " + "; ".join(assessment.reasons),
                    balance=self.ledger.balance(account_id),
                    assessment=assessment,
                )

            return self._charge(account_id, action, estimated, assessment, description, billable)

        except LedgerTransientError as e:
            # Fail closed: affordability could not be verified
            logger.error(
                f"Authorization denied, ledger unavailable: {e}",
                extra={"account_id": account_id, "action": action.value, "step": "authorization"},
            )
            return Authorization(decision=Decision.BLOCK, reason=SERVICE_UNAVAILABLE, balance=Decimal("0"))

    def _charge(
        self,
        account_id: str,
        action: ActionKind,
        estimated: Decimal,
        assessment: RiskAssessment,
        description: str,
        billable: bool,
    ) -> Authorization:
        decision = Decision.WARN if assessment.action == Decision.WARN else Decision.ALLOW
        if decision == Decision.WARN:
            self._audit(account_id, action, Decision.WARN, assessment)

        if billable and not self._has_quota(account_id):
            logger.info("Monthly usage limit reached", extra={"account_id": account_id, "action": action.value})
            return Authorization(
                decision=Decision.BLOCK,
                reason=USAGE_LIMIT_REACHED,
                balance=self.ledger.balance(account_id),
                assessment=assessment,
            )

        if not self.ledger.can_afford(account_id, estimated):
            return self._insufficient(account_id, self.ledger.balance(account_id), assessment)

        transaction_id = None
        charged = Decimal("0")
        if estimated > 0:
            try:
                result = self.ledger.debit(
                    account_id,
                    estimated,
                    description=description.replace("_", " ").capitalize(),
                    metadata={"action": action.value, "risk_score": assessment.score},
                )
            except InsufficientCreditsError as e:
                # Lost a race with a concurrent request on the same account
                return self._insufficient(account_id, e.balance, assessment)
            balance = result.new_balance
            transaction_id = result.transaction_id
            charged = result.charged
        else:
            balance = self.ledger.balance(account_id)

        self._record_activity(account_id, action, billable)

        return Authorization(
            decision=decision,
            reason="flagged for review" if decision == Decision.WARN else "ok",
            balance=balance,
            charged=charged,
            transaction_id=transaction_id,
            assessment=assessment,
        )

    def _insufficient(self, account_id: str, balance: Decimal, assessment: RiskAssessment) -> Authorization:
        logger.info("Insufficient credits", extra={"account_id": account_id, "balance": str(balance)})
        return Authorization(
            decision=Decision.BLOCK,
            reason=INSUFFICIENT_CREDITS,
            balance=balance,
            assessment=assessment,
        )

    def reconcile(
        self,
        account_id: str,
        transaction_ref: Optional[int],
        actual_credits: Union[Decimal, int],
    ) -> Reconciliation:
        """
        Adjust an up-front estimate to the measured cost, by the difference only.

        actual < estimate: the difference is refunded.
        actual > estimate: the difference is debited, clamped at the balance; any
        shortfall is logged and absorbed, so the account can reach zero but never
        go negative.

        Applying the same transaction_ref twice returns the first adjustment. A
        request that was authorized with a zero estimate has no transaction_ref;
        its whole actual cost is the difference.
        """
        actual = Decimal(actual_credits)
        credits_to_tenths(actual)

        if self.is_admin(account_id):
            return Reconciliation(
                transaction_id=transaction_ref,
                estimated_credits=Decimal("0"),
                actual_credits=actual,
                adjustment=Decimal("0"),
                balance=self.admin_override.unlimited_balance(),
            )

        estimated = Decimal("0")
        reference = None
        if transaction_ref is not None:
            original = self.ledger.get_transaction(account_id, transaction_ref)
            if original.kind != TransactionKind.USAGE:
                raise ValueError(f"Transaction {transaction_ref} is not a usage charge")

            estimated = -original.amount
            reference = f"reconcile:{original.id}"

            existing = self.ledger.find_by_reference(account_id, reference)
            if existing is not None:
                requested = Decimal(existing.metadata.get("requested_credits", "0"))
                return Reconciliation(
                    transaction_id=original.id,
                    estimated_credits=estimated,
                    actual_credits=actual,
                    adjustment=-existing.amount,
                    shortfall=max(requested + existing.amount, Decimal("0")),
                    balance=self.ledger.balance(account_id),
                    already_applied=True,
                    adjustment_transaction_id=existing.id,
                )

        difference = actual - estimated
        metadata = {
            "reconciles": transaction_ref,
            "estimated_credits": str(estimated),
            "actual_credits": str(actual),
        }
        shortfall = Decimal("0")
        adjustment_id = None

        if difference > 0:
            result = self.ledger.debit_up_to(
                account_id,
                difference,
                description="Chat usage adjustment",
                metadata=metadata,
                external_ref=reference,
            )
            adjustment = result.charged
            shortfall = difference - result.charged
            if shortfall > 0:
                reconcile_shortfall_counter.inc(float(shortfall))
            balance = result.new_balance
            adjustment_id = result.transaction_id
        elif difference < 0:
            result = self.ledger.credit(
                account_id,
                -difference,
                TransactionKind.REFUND,
                description="Chat estimate refund",
                external_ref=reference,
                metadata=metadata,
            )
            adjustment = difference
            balance = result.new_balance
            adjustment_id = result.transaction_id
        else:
            adjustment = Decimal("0")
            balance = self.ledger.balance(account_id)

        reconciliation = Reconciliation(
            transaction_id=transaction_ref,
            estimated_credits=estimated,
            actual_credits=actual,
            adjustment=adjustment,
            shortfall=shortfall,
            balance=balance,
            adjustment_transaction_id=adjustment_id,
        )
        log_reconciliation(account_id, reconciliation)
        return reconciliation

    def _has_quota(self, account_id: str) -> bool:
        if self.activity is None:
            return True
        try:
            return self.activity.has_quota(account_id)
        except SQLAlchemyError:
            logger.exception("Failed to read usage quota", extra={"account_id": account_id})
            return True

    def _record_activity(self, account_id: str, action: ActionKind, billable: bool) -> None:
        """The charge is committed; losing an activity row only weakens future signals"""
        if self.activity is None:
            return
        try:
            self.activity.record_activity(account_id, action, count_usage=billable)
        except SQLAlchemyError:
            logger.exception("Failed to record activity", extra={"account_id": account_id, "action": action.value})

    def _audit(
        self,
        account_id: str,
        action: ActionKind,
        decision: Decision,
        assessment: Optional[RiskAssessment],
        reasons: Optional[list] = None,
    ) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(account_id, action.value, decision, assessment, reasons)
        except SQLAlchemyError:
            logger.exception("Failed to write abuse log", extra={"account_id": account_id, "action": action.value})
