from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import logging

from lib.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    blocked_until: Optional[datetime] = None

class RateLimiter:
    """Fixed-window attempt counter kept in the rate_limits table."""

    def __init__(self, storage_service):
        self.storage = storage_service

    def check_limit(self, identifier: str, endpoint: str, max_attempts: int,
                    window_minutes: int, now: Optional[datetime] = None) -> RateLimitDecision:
        """Count one attempt and report whether it is within the limit"""
        now = now or utcnow()
        window = timedelta(minutes=window_minutes)
        record = self.storage.get_rate_limit(identifier, endpoint)

        window_start = parse_timestamp(record.get('window_start')) if record else None
        if window_start is None or now - window_start >= window:
            window_start, attempts = now, 0
        else:
            attempts = record.get('attempts') or 0

        blocked_until = window_start + window
        if attempts >= max_attempts:
            logger.warning(f"Rate limit exceeded for {endpoint}")
            return RateLimitDecision(False, 0, blocked_until)

        attempts += 1
        self.storage.save_rate_limit({
            'identifier': identifier,
            'endpoint': endpoint,
            'attempts': attempts,
            'window_start': window_start,
            'updated_at': now,
        })
        return RateLimitDecision(True, max_attempts - attempts)
