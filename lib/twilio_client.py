from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from typing import Mapping, Optional
import logging
from lib.config import Settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

class TwilioClient:
    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.settings = settings
        self.phone_number = settings.twilio_phone_number
        self.validator = RequestValidator(settings.twilio_auth_token)
        try:
            self.client = client or Client(
                settings.twilio_account_sid,
                settings.twilio_auth_token
            )
        except Exception as e:
            logger.error(f"Failed to initialize Twilio client: {str(e)}")
            raise AppError("Failed to initialize messaging service")

    @property
    def auth(self) -> tuple:
        return (self.settings.twilio_account_sid, self.settings.twilio_auth_token)

    def send_message(self, to_number: str, message: str) -> str:
        """Send an SMS message and return the message SID."""
        try:
            message = self.client.messages.create(
                body=message,
                from_=self.phone_number,
                to=to_number
            )
            logger.info(f"Message sent successfully: {message.sid}")
            return message.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise AppError("This phone number is not verified with our test account.")
            elif e.code == 21211:  # Invalid phone number
                raise AppError("Invalid phone number format.", status_code=400,
                               user_message="Invalid phone number format.")
            else:
                raise AppError(f"Failed to send message: {str(e)}")

    def validate_request(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
        """Check the X-Twilio-Signature header of an inbound webhook."""
        if not signature:
            return False
        return self.validator.validate(url, params, signature)
