import logging
from twilio.twiml.messaging_response import MessagingResponse
from typing import Optional
import asyncio

from lib.dates import utcnow
from lib.validation import format_phone_number

logger = logging.getLogger(__name__)

def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Mask all but the last four digits for logging."""
    if not phone or len(phone) < 4:
        return phone
    return '*' * (len(phone) - 4) + phone[-4:]

def twiml_response(message: Optional[str] = None) -> str:
    """Create a TwiML reply, empty when there is nothing to say"""
    resp = MessagingResponse()
    if message:
        resp.message(message)
    return str(resp)

class SMSService:
    def __init__(self, twilio_client, storage_service=None):
        self.client = twilio_client
        self.storage = storage_service
        logger.info(f"SMS service initialized with phone number: {mask_phone(twilio_client.phone_number)}")

    async def send_sms(self, to_number: str, message: str) -> str:
        """Send an SMS message and return its SID"""
        to_number = format_phone_number(to_number)
        logger.info(f"Sending SMS to {mask_phone(to_number)}: {message[:20]}...")
        # Run Twilio API call in an executor to prevent blocking
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self.client.send_message(to_number, message)
        )

    async def send_to_user(self, user_id: str, phone_number: str, message: str,
                           entry_date=None) -> str:
        """Send an SMS and keep a record of it in the user's message log"""
        sid = await self.send_sms(phone_number, message)
        if self.storage:
            self.storage.insert_message({
                'user_id': user_id,
                'provider_message_id': sid,
                'phone_number': phone_number,
                'message_content': message,
                'entry_date': entry_date or utcnow().date(),
                'direction': 'outbound',
                'processed': True,
            })
        return sid
