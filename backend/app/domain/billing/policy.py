"""Tunable billing constants, filled from Settings at the composition root."""

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class BillingPolicy:
    max_retries: int = 3
    retry_base_delay: timedelta = timedelta(minutes=5)
    processing_stale_after: timedelta = timedelta(minutes=30)
    retry_batch_size: int = 20
    default_athlete_limit: int = 75
    default_coach_limit: int = 3
    # Minor currency units per member over the limit
    default_overage_rate: int = 100

    def retry_delay(self, previous_retry_count: int) -> timedelta:
        """Exponential backoff: base * 2**previous_retry_count."""
        return self.retry_base_delay * (2 ** previous_retry_count)
