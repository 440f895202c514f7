"""
Retry policy for failed upgrade steps.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from models import NodeUpgradeRecord


@dataclass
class BackoffPolicy:
    """How often and how many times a failing step is retried."""

    max_attempts: int = 5
    base_delay: float = 30.0
    max_delay: float = 600.0
    exponential: bool = True

    def delay(self, attempt_count: int) -> float:
        """Seconds to wait before retrying after attempt_count failures."""
        if attempt_count <= 0:
            return 0.0
        if not self.exponential:
            return min(self.base_delay, self.max_delay)
        return min(self.base_delay * (2 ** (attempt_count - 1)), self.max_delay)

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

    def ready(self, record: NodeUpgradeRecord, now: Optional[datetime] = None) -> bool:
        """True if the record's last failed attempt is old enough to retry."""
        if record.attempt_count <= 0 or record.last_attempt_time is None:
            return True
        now = now or datetime.now(timezone.utc)
        wait = timedelta(seconds=self.delay(record.attempt_count))
        return now - record.last_attempt_time >= wait
