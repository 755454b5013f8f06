import logging
import secrets
from datetime import timedelta
from typing import Any, Dict

from api.services.ingestion import VERIFIED_REPLY
from api.services.sms import mask_phone
from lib.dates import utcnow
from lib.error_handler import AppError, RateLimitError, ValidationError
from lib.validation import clean_phone, validate_phone_number

logger = logging.getLogger(__name__)

CODE_TTL = timedelta(minutes=10)
SEND_LIMIT = 3
SEND_WINDOW_MINUTES = 15
MAX_FAILED_CHECKS = 5
FAILED_CHECK_WINDOW = timedelta(hours=1)

def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))

class PhoneVerificationService:
    def __init__(self, storage_service, sms_service, rate_limiter):
        self.storage = storage_service
        self.sms = sms_service
        self.rate_limiter = rate_limiter

    async def send_code(self, user_id: str, phone_number: str, ip: str) -> Dict[str, Any]:
        validate_phone_number(phone_number)

        identifier = f"{ip}:phone_verification"
        decision = self.rate_limiter.check_limit(identifier, 'phone_verification',
                                                 SEND_LIMIT, SEND_WINDOW_MINUTES)
        if not decision.allowed:
            self.storage.insert_security_event('rate_limit_exceeded', identifier, {
                'endpoint': 'phone_verification',
                'ip': ip,
                'phone': mask_phone(phone_number),
                'blocked_until': decision.blocked_until,
            }, severity='medium')
            raise RateLimitError("Too many verification attempts. Please try again later.",
                                 blocked_until=decision.blocked_until)

        phone = clean_phone(phone_number)
        code = generate_code()
        self.storage.upsert_verification({
            'phone_number': phone,
            'verification_code': code,
            'expires_at': utcnow() + CODE_TTL,
            'verified': False,
            'user_id': user_id,
        })

        await self.sms.send_sms(phone_number, f"Your SMS Journal verification code is: {code}")
        logger.info(f"Verification code sent to {mask_phone(phone)}")
        return {'success': True, 'message': 'Verification code sent'}

    async def verify_code(self, user_id: str, phone_number: str, code: str) -> Dict[str, Any]:
        if not phone_number or not code:
            raise ValidationError("Phone number and verification code are required")

        phone = clean_phone(phone_number)
        now = utcnow()
        verification = self.storage.find_verification(phone, str(code).strip(), now)

        if not verification:
            failures = self.storage.count_security_events('verification_failed', phone,
                                                          now - FAILED_CHECK_WINDOW)
            if failures >= MAX_FAILED_CHECKS:
                raise RateLimitError("Too many failed verification attempts. Please request a new code.")
            self.storage.insert_security_event('verification_failed', phone, {
                'user_id': user_id,
            }, severity='low')
            raise ValidationError("Invalid or expired verification code")

        owner = self.storage.get_profile_by_phone(phone)
        if owner and owner['id'] != user_id and owner.get('phone_verified'):
            raise ValidationError("This phone number is already linked to another account")

        self.storage.mark_verification_used(verification['id'])
        self.storage.update_profile(user_id, {'phone_number': phone, 'phone_verified': True})
        logger.info(f"Phone verified successfully for user: {user_id}")

        try:
            await self.sms.send_sms(phone_number, VERIFIED_REPLY)
        except AppError as e:
            logger.error(f"Failed to send instruction message: {e.message}")

        return {'success': True, 'message': 'Phone number verified successfully'}
