import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from lib.dates import parse_timestamp, utcnow
from lib.error_handler import AccountLockedError, ValidationError

logger = logging.getLogger(__name__)

MAX_FAILED_LOGINS = 5
LOCKOUT_DURATION = timedelta(minutes=30)
PLACEHOLDER_USER_ID = '00000000-0000-0000-0000-000000000000'

def client_ip(headers) -> str:
    forwarded = headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return headers.get('CF-Connecting-IP') or headers.get('X-Real-IP') or 'unknown'

class LockoutService:
    def __init__(self, storage_service):
        self.storage = storage_service

    def check(self, email: str) -> Dict[str, Any]:
        """Raise AccountLockedError while the account is locked."""
        if not email:
            raise ValidationError("Email is required")
        lockout = self.storage.get_lockout(email.lower())
        locked_until = parse_timestamp(lockout.get('locked_until')) if lockout else None
        if locked_until and locked_until > utcnow():
            raise AccountLockedError(locked_until)
        return {
            'locked': False,
            'failed_attempts': (lockout or {}).get('failed_attempts', 0),
        }

    def record_failure(self, email: str, ip: str, error: Optional[str] = None) -> Dict[str, Any]:
        if not email:
            raise ValidationError("Email is required")
        email = email.lower()
        now = utcnow()
        lockout = self.storage.get_lockout(email)
        locked_until = None

        if lockout:
            previous_lock = parse_timestamp(lockout.get('locked_until'))
            if previous_lock and previous_lock <= now:
                # An expired lock starts a fresh count
                failed_attempts = 1
            else:
                failed_attempts = (lockout.get('failed_attempts') or 0) + 1
            if failed_attempts >= MAX_FAILED_LOGINS:
                locked_until = now + LOCKOUT_DURATION
            self.storage.update_lockout(email, {
                'failed_attempts': failed_attempts,
                'locked_until': locked_until,
                'last_attempt': now,
                'updated_at': now,
            })
            if locked_until:
                logger.warning(f"Account locked after {failed_attempts} failed logins")
                self.storage.insert_security_event('account_locked', email, {
                    'ip': ip,
                    'failed_attempts': failed_attempts,
                    'locked_until': locked_until,
                }, severity='high')
        else:
            failed_attempts = 1
            self.storage.insert_lockout({
                'email': email,
                'user_id': PLACEHOLDER_USER_ID,
                'failed_attempts': failed_attempts,
                'last_attempt': now,
            })

        self.storage.insert_security_event('failed_login', email, {
            'ip': ip,
            'error': error,
            'timestamp': now,
        }, severity='medium')

        return {
            'failed_attempts': failed_attempts,
            'locked': locked_until is not None,
            'locked_until': locked_until.isoformat() if locked_until else None,
        }

    def reset(self, email: str) -> None:
        email = (email or '').lower()
        if self.storage.get_lockout(email):
            self.storage.update_lockout(email, {
                'failed_attempts': 0,
                'locked_until': None,
                'updated_at': utcnow(),
            })
