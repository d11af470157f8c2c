"""
Free-tier signal quota.

Each identity gets a fixed number of free deal searches ("signals"). Usage is
counted in signal_usage. consume() saturates at the limit and never rejects;
gating is the caller's job (see DealService.search_with_quota).

Reset policy:
- lifetime: the count never resets on its own (only reset() clears it)
- monthly: the count starts over on the first day of each calendar month
"""
import enum
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from dealfinder.config import get_settings
from dealfinder.models.signal_usage import SignalUsage
from dealfinder.utils import utcnow

logger = logging.getLogger(__name__)


class ResetPolicy(str, enum.Enum):
    LIFETIME = "lifetime"
    MONTHLY = "monthly"


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class QuotaTracker:
    def __init__(
        self,
        db: Session,
        limit: Optional[int] = None,
        reset_policy: Optional[ResetPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.db = db
        self.limit = settings.free_signal_limit if limit is None else limit
        self.reset_policy = ResetPolicy(reset_policy or settings.free_signal_reset_policy)
        self.clock = clock

    def _period_start(self, now: datetime) -> datetime:
        if self.reset_policy is ResetPolicy.MONTHLY:
            return month_start(now)
        return now

    def _usage(self, identity_id: str) -> Optional[SignalUsage]:
        usage = self.db.query(SignalUsage).filter(SignalUsage.identity_id == identity_id).first()
        if usage is None:
            return None
        if self.reset_policy is ResetPolicy.MONTHLY:
            current = month_start(self.clock())
            if usage.period_start < current:
                logger.info(f"New quota period for {identity_id}, resetting {usage.count} used signals")
                usage.period_start = current
                usage.count = 0
        return usage

    def get_remaining(self, identity_id: str) -> int:
        usage = self._usage(identity_id)
        used = usage.count if usage else 0
        return max(0, self.limit - used)

    def consume(self, identity_id: str) -> int:
        """Count one signal for identity_id. Returns the number used so far, never above the limit."""
        now = self.clock()
        usage = self._usage(identity_id)
        if usage is None:
            usage = SignalUsage(
                identity_id=identity_id,
                period_start=self._period_start(now),
                count=0,
                first_used_at=now,
            )
            self.db.add(usage)

        if usage.count < self.limit:
            usage.count += 1
        else:
            logger.debug(f"Signal quota already exhausted for {identity_id}")
        usage.last_used_at = now
        self.db.commit()
        return usage.count

    def reset(self, identity_id: str) -> None:
        """Clear usage for an identity, e.g. when it subscribes."""
        usage = self.db.query(SignalUsage).filter(SignalUsage.identity_id == identity_id).first()
        if usage is None:
            return
        usage.count = 0
        usage.period_start = self._period_start(self.clock())
        self.db.commit()
        logger.info(f"Reset signal quota for {identity_id}")
