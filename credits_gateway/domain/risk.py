"""Risk scoring engine - heuristic abuse detection for credit-consuming requests"""

import logging
from typing import Callable, List, Union

from credits_gateway.domain.exceptions import AccountNotFoundError
from credits_gateway.domain.models import (
    GENERATION_ACTIONS,
    ActionKind,
    Decision,
    RiskAssessment,
    RiskLevel,
    RiskSignal,
)
from credits_gateway.infrastructure.observability.metrics import detection_unavailable_counter

logger = logging.getLogger(__name__)

MAX_SCORE = 100
DETECTION_UNAVAILABLE = "detection unavailable"

SignalSource = Callable[[str, ActionKind], RiskSignal]


def evaluate_risk(account_id: str, action: Union[ActionKind, str], signals: RiskSignal) -> RiskAssessment:
    """
    Score recent account behaviour. Every rule is evaluated; triggered rules add
    their points and one reason each, so simultaneous concerns compound.

    Rules:
    - New account (< 1 day): +20, free tier on top: +10
    - Refund requests: 3+ prior: +50, exactly 2: +30, last < 7 days ago: +40,
      2+ approved: +35
    - Tier limit hit on 3 consecutive periods: +15
    - Period-over-period usage up > 500% on an account < 30 days old: +25
    - More than 20 same-kind requests in the last minute: +30
    - More than 10 quiz/note/slideshow generations in the last hour: +25
    - Signup with a disposable email: +40
    """
    action = ActionKind(action)
    score = 0
    reasons: List[str] = []

    if signals.account_age_days < 1:
        score += 20
        reasons.append("Very new account (< 1 day old)")
        if signals.subscription_tier == "free":
            score += 10
            reasons.append("Free tier with immediate heavy usage")

    if action == ActionKind.REFUND:
        if signals.refund_count >= 3:
            score += 50
            reasons.append(f"Multiple refund requests ({signals.refund_count} total)")
        elif signals.refund_count == 2:
            score += 30
            reasons.append("Second refund request")

        if signals.days_since_last_refund is not None and signals.days_since_last_refund < 7:
            score += 40
            reasons.append(f"Recent refund request ({signals.days_since_last_refund} days ago)")

        if signals.approved_refund_count >= 2:
            score += 35
            reasons.append(f"Pattern of approved refunds ({signals.approved_refund_count})")

    if signals.saturated_periods >= 3:
        score += 15
        reasons.append("Consistently hitting usage limits")

    if (
        signals.usage_spike_pct is not None
        and signals.usage_spike_pct > 500
        and signals.account_age_days < 30
    ):
        score += 25
        reasons.append(f"Sudden usage spike ({signals.usage_spike_pct:.0f}% increase)")

    if signals.actions_last_minute > 20:
        score += 30
        reasons.append(f"Excessive requests ({signals.actions_last_minute} in last minute)")

    if action in GENERATION_ACTIONS and signals.generations_last_hour > 10:
        score += 25
        reasons.append(f"Excessive {action.value} generation ({signals.generations_last_hour} in last hour)")

    if action == ActionKind.SIGNUP and signals.is_disposable_email:
        score += 40
        reasons.append("Disposable email address detected")

    score = min(score, MAX_SCORE)
    risk_level, decision = determine_risk_level(score)

    return RiskAssessment(score=score, risk_level=risk_level, reasons=reasons, action=decision)


def determine_risk_level(score: int) -> tuple[RiskLevel, Decision]:
    """
    Map risk score to level and recommended action. First match from the top wins:

    - 80+: critical -> ban
    - 60+: high -> block
    - 35+: medium -> warn
    - else: low -> allow
    """
    if score >= 80:
        return RiskLevel.CRITICAL, Decision.BAN
    elif score >= 60:
        return RiskLevel.HIGH, Decision.BLOCK
    elif score >= 35:
        return RiskLevel.MEDIUM, Decision.WARN
    else:
        return RiskLevel.LOW, Decision.ALLOW


class RiskScorer:
    """Fetches signals for an account and evaluates them"""

    def __init__(self, signal_source: SignalSource, fail_open: bool = True):
        self.signal_source = signal_source
        self.fail_open = fail_open

    def assess(self, account_id: str, action: Union[ActionKind, str]) -> RiskAssessment:
        """
        Evaluate the account's current risk for an action.

        If signals cannot be fetched the outcome follows the configured policy:
        fail open (default) returns low/allow, fail closed returns high/block.
        Either way the fallback is logged for audit.
        """
        action = ActionKind(action)
        try:
            signals = self.signal_source(account_id, action)
        except AccountNotFoundError:
            raise
        except Exception as e:
            detection_unavailable_counter.inc()
            logger.warning(
                f"Risk detection unavailable: {e}",
                extra={
                    "account_id": account_id,
                    "action": action.value,
                    "step": "risk_fallback",
                    "fail_open": self.fail_open,
                },
            )
            return self.fallback_assessment()

        return evaluate_risk(account_id, action, signals)

    def fallback_assessment(self) -> RiskAssessment:
        if self.fail_open:
            return RiskAssessment(
                score=0,
                risk_level=RiskLevel.LOW,
                reasons=[DETECTION_UNAVAILABLE],
                action=Decision.ALLOW,
            )
        return RiskAssessment(
            score=60,
            risk_level=RiskLevel.HIGH,
            reasons=[DETECTION_UNAVAILABLE],
            action=Decision.BLOCK,
        )
