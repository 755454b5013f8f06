import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from api.services.sms import mask_phone
from lib.dates import local_now, parse_timestamp, utcnow
from lib.error_handler import AppError, ErrorHandler

logger = logging.getLogger(__name__)

REMINDER_WINDOW_MINUTES = 15
RECENT_ENTRY_WINDOW = timedelta(hours=23)
DEFAULT_REMINDER_TIME = '20:00'
DEFAULT_REMINDER_TIMEZONE = 'America/New_York'
RECAP_WEEKDAY = 6  # Sunday
RECAP_HOUR = 18
TRIAL_REMINDER_LEAD_DAYS = 3  # remind on the last days of the trial and the day it ends
TRIAL_REMINDER_HOURS = range(13, 16)  # 13:00 to 15:59 local

DEFAULT_PROMPTS = [
    {'id': 'default-gratitude', 'category': 'gratitude', 'prompt_text': "What's one thing you're grateful for today?"},
    {'id': 'default-reflection', 'category': 'reflection', 'prompt_text': "What was the best part of your day?"},
    {'id': 'default-growth', 'category': 'growth', 'prompt_text': "What's something you learned today?"},
    {'id': 'default-feelings', 'category': 'feelings', 'prompt_text': "How are you feeling right now, and why?"},
    {'id': 'default-people', 'category': 'people', 'prompt_text': "Who made a difference in your day?"},
]

def minutes_apart(a: str, b: str) -> int:
    """Distance in minutes between two HH:MM times, wrapping around midnight."""
    ah, am = (int(x) for x in a.split(':'))
    bh, bm = (int(x) for x in b.split(':'))
    diff = abs((ah * 60 + am) - (bh * 60 + bm))
    return min(diff, 24 * 60 - diff)

def reminder_timezone(profile: Dict[str, Any]) -> str:
    return profile.get('reminder_timezone') or profile.get('timezone') or DEFAULT_REMINDER_TIMEZONE

class ReminderService:
    def __init__(self, storage_service, sms_service, public_url: str = '', checkout_url: str = '',
                 trial_days: int = 10):
        self.storage = storage_service
        self.sms = sms_service
        self.public_url = public_url
        self.checkout_url = checkout_url
        self.trial_days = trial_days

    async def _deliver(self, profile: Dict[str, Any], kind: str, period_key: str,
                       message: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        if self.storage.get_reminder(profile['id'], kind, period_key):
            logger.info(f"User {profile['id']}: {kind} already sent for {period_key}")
            return False
        try:
            await self.sms.send_to_user(profile['id'], profile['phone_number'], message)
        except AppError as e:
            logger.error(f"Failed to send {kind} to {mask_phone(profile.get('phone_number'))}")
            ErrorHandler.handle_sms_error(e)
            return False
        self.storage.insert_reminder(dict({
            'user_id': profile['id'],
            'kind': kind,
            'period_key': period_key,
            'sent_at': utcnow(),
        }, **(extra or {})))
        return True

    def next_prompt(self, user_id: str) -> Dict[str, Any]:
        """Pick a prompt the user hasn't had, preferring a different category than last time."""
        prompts = self.storage.list_prompts() or DEFAULT_PROMPTS
        history = self.storage.list_prompt_history(user_id)
        seen = {h.get('prompt_id') for h in history}
        last_category = history[0].get('category') if history else None

        unseen = [p for p in prompts if p['id'] not in seen]
        if not unseen:
            # Every prompt has been used; start over
            unseen = prompts
        fresh_category = [p for p in unseen if p.get('category') != last_category]
        return (fresh_category or unseen)[0]

    async def send_daily_reminders(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        sent = []
        profiles = self.storage.list_profiles(reminder_enabled=True, phone_verified=True)
        logger.info(f"Checking daily reminders for {len(profiles)} users")

        for profile in profiles:
            if not profile.get('phone_number'):
                continue
            local = local_now(reminder_timezone(profile), now)
            reminder_time = profile.get('reminder_time') or DEFAULT_REMINDER_TIME
            if minutes_apart(local.strftime('%H:%M'), reminder_time[:5]) > REMINDER_WINDOW_MINUTES:
                continue

            if self.storage.count_entries_created_since(profile['id'], now - RECENT_ENTRY_WINDOW):
                logger.info(f"User {profile['id']} has already journaled recently, skipping reminder")
                continue

            prompt = self.next_prompt(profile['id'])
            delivered = await self._deliver(profile, 'daily', local.date().isoformat(), prompt['prompt_text'])
            if not delivered:
                continue
            self.storage.insert_prompt_history({
                'user_id': profile['id'],
                'prompt_id': prompt['id'],
                'category': prompt.get('category'),
                'sent_at': now,
            })
            sent.append({'user_id': profile['id'], 'prompt_id': prompt['id']})

        logger.info(f"Daily reminders complete. Sent {len(sent)} reminders.")
        return sent

    async def send_weekly_recaps(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        sent = []
        for profile in self.storage.list_profiles(weekly_recap_enabled=True, phone_verified=True):
            if not profile.get('phone_number'):
                continue
            local = local_now(reminder_timezone(profile), now)
            if local.weekday() != RECAP_WEEKDAY or local.hour != RECAP_HOUR:
                continue

            week_end = local.date()
            week_start = week_end - timedelta(days=6)
            count = self.storage.count_entries_between(profile['id'], week_start, week_end)
            message = (
                f"Weekly Recap: You journaled {count} {'time' if count == 1 else 'times'} this week. "
                f"To read your journal, visit {self.public_url} and login to your account."
            )
            if await self._deliver(profile, 'weekly_recap', week_end.isoformat(), message):
                sent.append({'user_id': profile['id'], 'entries': count, 'week_ending': week_end.isoformat()})

        logger.info(f"Weekly recap complete. Sent {len(sent)} recaps.")
        return sent

    async def send_trial_reminders(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        sent = []
        for subscriber in self.storage.list_trial_subscribers():
            trial_end = parse_timestamp(subscriber.get('trial_end'))
            if not trial_end or not subscriber.get('user_id'):
                continue
            profile = self.storage.get_profile(subscriber['user_id'])
            if not profile or not profile.get('phone_verified') or not profile.get('phone_number'):
                continue

            trial_start = trial_end - timedelta(days=self.trial_days)
            day = (now - trial_start).days
            if not self.trial_days - TRIAL_REMINDER_LEAD_DAYS <= day <= self.trial_days:
                continue
            if local_now(reminder_timezone(profile), now).hour not in TRIAL_REMINDER_HOURS:
                continue

            if day == self.trial_days:
                message = (
                    "Hey, this is the last day of your free trial with Journal By Text. Your service will end "
                    "today unless you subscribe. Check out our monthly or yearly subscription options, and "
                    "continue to build your journaling habit! Your future self will thank you for it. "
                    f"{self.checkout_url}"
                )
            else:
                message = (
                    f"Hey! You are on day {day} of your free trial with Journal By Text. To keep things going "
                    "(and to continue to have access to all your previously written journal entries) "
                    f"subscribe to one of our paid plans today! {self.checkout_url}"
                )
            if await self._deliver(profile, 'trial', f"day-{day}", message, {'trial_day': day}):
                sent.append({'user_id': profile['id'], 'trial_day': day})

        logger.info(f"Trial reminder process completed. Sent {len(sent)} reminders.")
        return sent
