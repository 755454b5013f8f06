from datetime import datetime
from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=400, user_message=message)

class AuthenticationError(AppError):
    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message, status_code=401, user_message=message)

class SubscriptionRequiredError(AppError):
    def __init__(self, message: str = "An active subscription or trial is required"):
        super().__init__(message, status_code=402, user_message=message)

class WebhookSignatureError(AppError):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, status_code=403, user_message=message)

class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404, user_message=message)

class ConflictError(AppError):
    def __init__(self, message: str = "Record already exists"):
        super().__init__(message, status_code=409, user_message=message)

class AccountLockedError(AppError):
    def __init__(self, locked_until: datetime):
        self.locked_until = locked_until
        message = "Account temporarily locked due to too many failed login attempts."
        super().__init__(message, status_code=423, user_message=message)

class RateLimitError(AppError):
    def __init__(self, message: str, blocked_until: Optional[datetime] = None):
        self.blocked_until = blocked_until
        super().__init__(message, status_code=429, user_message=message)

class EncryptionError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=500)

class ErrorHandler:
    @staticmethod
    def handle_media_error(error: Exception) -> str:
        logger.error(f"Media error: {str(error)}")
        return "Your entry was saved, but we couldn't attach one of your photos."

    @staticmethod
    def handle_sms_error(error: Exception) -> str:
        logger.error(f"SMS error: {str(error)}")
        return "Message couldn't be sent. Please try again later."
