import logging
import random
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from lib.dates import to_date
from lib.error_handler import AppError, ConflictError

logger = logging.getLogger(__name__)

MILESTONE_DAYS = [2, 5, 10, 15, 20, 25, 40, 50, 75, 100]
CELEBRATION_OPENERS = [
    "You're doing great!",
    "Nice work!",
    "Keep it up!",
    "You're on a hot streak!",
    "Journaling is becoming second nature!",
    "You were made to keep a journal.",
    "Way to go!",
    "This is awesome!",
    "Keep the journal entries coming!",
    "You're on a roll!",
]

def _distinct_days(entry_dates: Iterable[Any]) -> List[date]:
    return sorted({to_date(d) for d in entry_dates if d}, reverse=True)

def calculate_current_streak(entry_dates: Iterable[Any], today: date) -> int:
    """
    Count consecutive journaling days ending today or yesterday.

    A streak is still alive on a day the user hasn't written yet, so an
    entry yesterday keeps it going; anything older breaks it.
    """
    days = _distinct_days(entry_dates)
    if not days:
        return 0
    if (today - days[0]).days > 1:
        return 0

    streak = 1
    for previous, current in zip(days, days[1:]):
        if previous - current == timedelta(days=1):
            streak += 1
        else:
            break
    return streak

def calculate_longest_streak(entry_dates: Iterable[Any]) -> int:
    days = sorted(_distinct_days(entry_dates))
    if not days:
        return 0
    longest = run = 1
    for previous, current in zip(days, days[1:]):
        run = run + 1 if current - previous == timedelta(days=1) else 1
        longest = max(longest, run)
    return longest

def milestone_message(streak: int, opener: Optional[str] = None) -> str:
    opener = opener or random.choice(CELEBRATION_OPENERS)
    return (
        f"{opener} That's {streak} days in a row you've submitted a journal entry. "
        "Keep up the good work! Your future self will thank you."
    )

class MilestoneService:
    def __init__(self, storage_service, sms_service):
        self.storage = storage_service
        self.sms = sms_service

    async def check_and_send(self, profile: Dict[str, Any], streak: int) -> Optional[int]:
        """Send the celebration for this streak if it's a milestone not yet celebrated."""
        if streak not in MILESTONE_DAYS:
            return None
        if not profile.get('phone_number'):
            return None
        if self.storage.get_milestone(profile['id'], streak):
            return None

        try:
            claim = self.storage.claim_milestone(profile['id'], streak)
        except ConflictError:
            logger.info(f"Milestone {streak} already claimed for user {profile['id']}")
            return None

        message = milestone_message(streak)
        try:
            sid = await self.sms.send_to_user(profile['id'], profile['phone_number'], message)
        except AppError as e:
            logger.error(f"Failed to send milestone message: {e.message}")
            return None

        self.storage.update_milestone(claim['id'], {'sent': True, 'provider_message_id': sid})
        logger.info(f"Milestone message sent for {streak} day streak to user {profile['id']}")
        return streak
