"""Risk signal collection and activity tracking

Signals are read without coordinating with concurrent ledger writes; slightly
stale counts are acceptable for a heuristic.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from credits_gateway.config import settings
from credits_gateway.domain.exceptions import AccountNotFoundError, DetectionUnavailableError
from credits_gateway.domain.models import GENERATION_ACTIONS, ActionKind, RiskSignal
from credits_gateway.infrastructure.database.models import UsagePeriod
from credits_gateway.infrastructure.database.repositories import (
    AccountRepository,
    ActivityRepository,
    RefundRepository,
    UsageRepository,
)
from credits_gateway.utils.date_utils import period_key, utc_now, whole_days_between

RATE_WINDOW = timedelta(seconds=60)
GENERATION_WINDOW = timedelta(minutes=60)
OBSERVED_PERIODS = 3


def count_saturated_periods(periods: Sequence[UsagePeriod], limit: Optional[int]) -> int:
    """Consecutive most recent periods at or over the tier limit"""
    if limit is None:
        return 0
    streak = 0
    for period in periods:
        if period.requests_used < limit:
            break
        streak += 1
    return streak


def usage_increase_pct(periods: Sequence[UsagePeriod]) -> Optional[float]:
    """Percentage change from the previous period to the current one"""
    if len(periods) < 2:
        return None
    current, previous = periods[0].requests_used, periods[1].requests_used
    return (current - previous) / (previous or 1) * 100


def is_disposable_email(email: Optional[str], patterns: List[str]) -> bool:
    if not email:
        return False
    lowered = email.lower()
    return any(pattern in lowered for pattern in patterns)


class RiskSignalCollector:
    """Builds RiskSignal snapshots from stored account activity"""

    def __init__(
        self,
        session_factory: sessionmaker,
        tier_limits: Optional[Dict[str, Optional[int]]] = None,
        disposable_patterns: Optional[List[str]] = None,
    ):
        self.session_factory = session_factory
        self.tier_limits = settings.tier_request_limits if tier_limits is None else tier_limits
        self.disposable_patterns = (
            settings.disposable_email_patterns if disposable_patterns is None else disposable_patterns
        )

    def collect(self, account_id: str, action: Union[ActionKind, str]) -> RiskSignal:
        """
        Snapshot recent behaviour for one account.

        Refund history is only read for refund actions, generation counts only
        for quiz/note/slideshow, and the email check only for signups.

        Raises:
            AccountNotFoundError: unknown account
            DetectionUnavailableError: the signal store could not be read
        """
        action = ActionKind(action)
        try:
            return self._collect(account_id, action, utc_now())
        except SQLAlchemyError as e:
            raise DetectionUnavailableError(f"Risk signals unavailable for {account_id}") from e

    def _collect(self, account_id: str, action: ActionKind, now: datetime) -> RiskSignal:
        with self.session_factory() as db:
            account = AccountRepository(db).get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            tier = account.subscription_tier or "free"
            signal = RiskSignal(
                account_age_days=whole_days_between(account.created_at, now),
                subscription_tier=tier,
            )

            if action == ActionKind.REFUND:
                refunds = RefundRepository(db).list_for_account(account_id)
                signal.refund_count = len(refunds)
                if refunds:
                    signal.days_since_last_refund = whole_days_between(refunds[0].created_at, now)
                signal.approved_refund_count = sum(1 for r in refunds if r.status == "approved")

            periods = UsageRepository(db).recent(account_id, limit=OBSERVED_PERIODS)
            signal.saturated_periods = count_saturated_periods(periods, self.tier_limits.get(tier))
            signal.usage_spike_pct = usage_increase_pct(periods)

            activity = ActivityRepository(db)
            signal.actions_last_minute = activity.count_since(account_id, [action.value], now - RATE_WINDOW)
            if action in GENERATION_ACTIONS:
                signal.generations_last_hour = activity.count_since(
                    account_id,
                    [a.value for a in GENERATION_ACTIONS],
                    now - GENERATION_WINDOW,
                )

            if action == ActionKind.SIGNUP:
                signal.is_disposable_email = is_disposable_email(account.email, self.disposable_patterns)

        return signal

    def has_quota(self, account_id: str) -> bool:
        """False once the current period has used up the tier's monthly request limit"""
        with self.session_factory() as db:
            account = AccountRepository(db).get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            limit = self.tier_limits.get(account.subscription_tier or "free")
            if limit is None:
                return True
            used = UsageRepository(db).used_in(account_id, period_key(utc_now()))
        return used < limit

    def __call__(self, account_id: str, action: Union[ActionKind, str]) -> RiskSignal:
        return self.collect(account_id, action)

    def record_activity(self, account_id: str, action: Union[ActionKind, str], count_usage: bool = True) -> None:
        """Record a permitted request; paid requests also bump the current usage period"""
        action = ActionKind(action)
        with self.session_factory() as db:
            ActivityRepository(db).record(account_id, action.value)
            if count_usage:
                UsageRepository(db).increment(account_id, period_key(utc_now()))
            db.commit()
