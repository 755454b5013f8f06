import logging
from datetime import date, datetime
from typing import Optional, List, Dict, Any, Iterable
from postgrest.exceptions import APIError

from lib.error_handler import AppError, ConflictError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'
NULLABLE_SUBSCRIBER_FIELDS = ('stripe_customer_id', 'subscription_tier', 'subscription_end')

def _iso(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value

class StorageService:
    """Table access for the journal. Every query against the hosted database goes through here."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client
        self.profiles_table = 'profiles'
        self.entries_table = 'journal_entries'
        self.photos_table = 'journal_photos'
        self.messages_table = 'sms_messages'
        self.verifications_table = 'phone_verifications'
        self.lockouts_table = 'account_lockouts'
        self.security_events_table = 'security_events'
        self.rate_limits_table = 'rate_limits'
        self.subscribers_table = 'subscribers'
        self.subscription_events_table = 'subscription_events'
        self.milestones_table = 'milestone_messages'
        self.prompts_table = 'journal_prompts'
        self.prompt_history_table = 'user_prompt_history'
        self.reminder_history_table = 'reminder_history'

    def _execute(self, query, action: str):
        try:
            result = query.execute()
        except APIError as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                raise ConflictError(f"Duplicate record while trying to {action}")
            logger.error(f"Supabase error while trying to {action}: {e.message}")
            raise AppError(f"Supabase error while trying to {action}: {e.message}")
        if hasattr(result, 'error') and result.error:
            raise AppError(f"Supabase error while trying to {action}: {result.error}")
        return result

    def _first(self, query, action: str) -> Optional[Dict[str, Any]]:
        result = self._execute(query.limit(1), action)
        return result.data[0] if result.data else None

    def _all(self, query, action: str) -> List[Dict[str, Any]]:
        return self._execute(query, action).data or []

    def _insert(self, table: str, data: Dict[str, Any], action: str) -> Dict[str, Any]:
        payload = {k: _iso(v) for k, v in data.items()}
        result = self._execute(self.supabase.table(table).insert(payload), action)
        return result.data[0] if result.data else payload

    # Profiles

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.profiles_table).select('*').eq('id', user_id)
        return self._first(query, 'load profile')

    def get_profile_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.profiles_table).select('*').eq('phone_number', phone_number)
        return self._first(query, 'look up profile by phone')

    def list_profiles(self, **filters) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.profiles_table).select('*')
        for column, value in filters.items():
            query = query.eq(column, value)
        return self._all(query, 'list profiles')

    def update_profile(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.profiles_table).update(payload).eq('id', user_id)
        result = self._execute(query, 'update profile')
        return result.data[0] if result.data else None

    # Journal entries

    def get_entry(self, entry_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.entries_table).select('*').eq('id', entry_id)
        if user_id:
            query = query.eq('user_id', user_id)
        return self._first(query, 'load journal entry')

    def find_entry(self, user_id: str, entry_date: date, source: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.entries_table)\
            .select('*')\
            .eq('user_id', user_id)\
            .eq('entry_date', _iso(entry_date))\
            .eq('source', source)
        return self._first(query, 'find journal entry for day')

    def insert_entry(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.entries_table, data, 'create journal entry')

    def update_entry(self, entry_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.entries_table).update(payload).eq('id', entry_id)
        result = self._execute(query, 'update journal entry')
        return result.data[0] if result.data else None

    def update_entry_if_revision(self, entry_id: str, revision: int,
                                 data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Compare-and-set update: only applies when the stored revision still matches.

        Returns the updated row, or None when another writer got there first.
        """
        payload = {k: _iso(v) for k, v in data.items()}
        payload['revision'] = revision + 1
        query = self.supabase.table(self.entries_table)\
            .update(payload)\
            .eq('id', entry_id)\
            .eq('revision', revision)
        result = self._execute(query, 'update journal entry')
        return result.data[0] if result.data else None

    def delete_entry(self, entry_id: str, user_id: str) -> None:
        query = self.supabase.table(self.entries_table)\
            .delete()\
            .eq('id', entry_id)\
            .eq('user_id', user_id)
        self._execute(query, 'delete journal entry')

    def list_entries(self, user_id: str) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.entries_table)\
            .select('*')\
            .eq('user_id', user_id)\
            .order('created_at', desc=True)
        return self._all(query, 'list journal entries')

    def list_entry_dates(self, user_id: str) -> List[str]:
        query = self.supabase.table(self.entries_table)\
            .select('entry_date')\
            .eq('user_id', user_id)\
            .order('entry_date', desc=True)
        return [row['entry_date'] for row in self._all(query, 'list entry dates')]

    def count_entries_created_since(self, user_id: str, since: datetime) -> int:
        query = self.supabase.table(self.entries_table)\
            .select('id')\
            .eq('user_id', user_id)\
            .gte('created_at', since.isoformat())
        return len(self._all(query, 'count recent entries'))

    def count_entries_between(self, user_id: str, start: date, end: date) -> int:
        query = self.supabase.table(self.entries_table)\
            .select('id')\
            .eq('user_id', user_id)\
            .gte('entry_date', start.isoformat())\
            .lte('entry_date', end.isoformat())
        return len(self._all(query, 'count entries in range'))

    # Photos

    def list_photos(self, entry_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(entry_ids)
        if not ids:
            return []
        query = self.supabase.table(self.photos_table).select('*').in_('entry_id', ids)
        return self._all(query, 'list photos')

    def insert_photo(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.photos_table, data, 'save photo record')

    def delete_photo(self, photo_id: str) -> None:
        query = self.supabase.table(self.photos_table).delete().eq('id', photo_id)
        self._execute(query, 'delete photo record')

    # SMS messages

    def get_message_by_sid(self, provider_message_id: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.messages_table)\
            .select('*')\
            .eq('provider_message_id', provider_message_id)
        return self._first(query, 'look up SMS message')

    def insert_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.messages_table, data, 'store SMS message')

    def update_message(self, message_id: str, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.messages_table).update(payload).eq('id', message_id)
        self._execute(query, 'update SMS message')

    def list_entry_messages(self, entry_id: str) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.messages_table)\
            .select('*')\
            .eq('entry_id', entry_id)\
            .eq('direction', 'inbound')
        return self._all(query, 'list SMS messages for entry')

    def list_messages_by_sids(self, provider_message_ids: Iterable[str]) -> List[Dict[str, Any]]:
        sids = list(provider_message_ids)
        if not sids:
            return []
        query = self.supabase.table(self.messages_table)\
            .select('*')\
            .in_('provider_message_id', sids)\
            .eq('direction', 'inbound')
        return self._all(query, 'list SMS messages by provider id')

    # Phone verification

    def upsert_verification(self, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.verifications_table).upsert(payload, on_conflict='phone_number')
        self._execute(query, 'store verification code')

    def find_verification(self, phone_number: str, code: str, now: datetime) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.verifications_table)\
            .select('*')\
            .eq('phone_number', phone_number)\
            .eq('verification_code', code)\
            .eq('verified', False)\
            .gt('expires_at', now.isoformat())
        return self._first(query, 'check verification code')

    def mark_verification_used(self, verification_id: str) -> None:
        query = self.supabase.table(self.verifications_table)\
            .update({'verified': True})\
            .eq('id', verification_id)
        self._execute(query, 'mark verification used')

    # Account lockouts and security events

    def get_lockout(self, email: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.lockouts_table).select('*').eq('email', email)
        return self._first(query, 'load lockout')

    def insert_lockout(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.lockouts_table, data, 'create lockout record')

    def update_lockout(self, email: str, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.lockouts_table).update(payload).eq('email', email)
        self._execute(query, 'update lockout record')

    def insert_security_event(self, event_type: str, identifier: str,
                              details: Dict[str, Any], severity: str) -> None:
        self._insert(self.security_events_table, {
            'event_type': event_type,
            'identifier': identifier,
            'details': {k: _iso(v) for k, v in details.items()},
            'severity': severity,
        }, 'log security event')

    def count_security_events(self, event_type: str, identifier: str, since: datetime) -> int:
        query = self.supabase.table(self.security_events_table)\
            .select('id')\
            .eq('event_type', event_type)\
            .eq('identifier', identifier)\
            .gte('created_at', since.isoformat())
        return len(self._all(query, 'count security events'))

    # Rate limits

    def get_rate_limit(self, identifier: str, endpoint: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.rate_limits_table)\
            .select('*')\
            .eq('identifier', identifier)\
            .eq('endpoint', endpoint)
        return self._first(query, 'load rate limit')

    def save_rate_limit(self, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.rate_limits_table).upsert(payload, on_conflict='identifier,endpoint')
        self._execute(query, 'save rate limit')

    # Subscriptions

    def get_subscriber(self, email: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.subscribers_table).select('*').eq('email', email)
        return self._first(query, 'load subscriber')

    def get_subscriber_by_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.subscribers_table).select('*').eq('user_id', user_id)
        return self._first(query, 'load subscriber')

    def list_trial_subscribers(self) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.subscribers_table)\
            .select('*')\
            .eq('is_trial', True)\
            .eq('subscribed', False)
        return self._all(query, 'list trial subscribers')

    def upsert_subscriber(self, data: Dict[str, Any]) -> None:
        # None means "leave as is" except for columns that are cleared on cancellation
        payload = {k: _iso(v) for k, v in data.items()
                   if v is not None or k in NULLABLE_SUBSCRIBER_FIELDS}
        query = self.supabase.table(self.subscribers_table).upsert(payload, on_conflict='email')
        self._execute(query, 'save subscriber')

    def update_subscriber(self, email: str, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.subscribers_table).update(payload).eq('email', email)
        self._execute(query, 'update subscriber')

    def insert_subscription_event(self, data: Dict[str, Any]) -> None:
        self._insert(self.subscription_events_table, data, 'record subscription event')

    # Milestones

    def get_milestone(self, user_id: str, milestone: int) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.milestones_table)\
            .select('*')\
            .eq('user_id', user_id)\
            .eq('milestone', milestone)
        return self._first(query, 'check milestone')

    def claim_milestone(self, user_id: str, milestone: int) -> Dict[str, Any]:
        """Insert the milestone row; raises ConflictError if it was already claimed."""
        return self._insert(self.milestones_table, {
            'user_id': user_id,
            'milestone': milestone,
            'sent': False,
        }, 'claim milestone')

    def update_milestone(self, milestone_id: str, data: Dict[str, Any]) -> None:
        payload = {k: _iso(v) for k, v in data.items()}
        query = self.supabase.table(self.milestones_table).update(payload).eq('id', milestone_id)
        self._execute(query, 'update milestone')

    # Prompts and reminders

    def list_prompts(self) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.prompts_table).select('*').eq('active', True)
        return self._all(query, 'list prompts')

    def list_prompt_history(self, user_id: str) -> List[Dict[str, Any]]:
        query = self.supabase.table(self.prompt_history_table)\
            .select('*')\
            .eq('user_id', user_id)\
            .order('sent_at', desc=True)
        return self._all(query, 'load prompt history')

    def insert_prompt_history(self, data: Dict[str, Any]) -> None:
        self._insert(self.prompt_history_table, data, 'record prompt history')

    def get_reminder(self, user_id: str, kind: str, period_key: str) -> Optional[Dict[str, Any]]:
        query = self.supabase.table(self.reminder_history_table)\
            .select('*')\
            .eq('user_id', user_id)\
            .eq('kind', kind)\
            .eq('period_key', period_key)
        return self._first(query, 'check reminder history')

    def insert_reminder(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.reminder_history_table, data, 'record reminder')
