import logging
from dataclasses import dataclass

from flask import current_app

from api.services.ingestion import SMSIngestionService
from api.services.journal import JournalService
from api.services.photos import PhotoService
from api.services.reminders import ReminderService
from api.services.security import LockoutService
from api.services.sms import SMSService
from api.services.storage import StorageService
from api.services.streaks import MilestoneService
from api.services.subscription import SubscriptionService
from api.services.verification import PhoneVerificationService
from lib.config import Settings
from lib.encryption import ContentCipher
from lib.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

@dataclass
class Services:
    settings: Settings
    supabase: object
    twilio: object
    storage: StorageService
    cipher: ContentCipher
    photos: PhotoService
    sms: SMSService
    milestones: MilestoneService
    ingestion: SMSIngestionService
    journal: JournalService
    verification: PhoneVerificationService
    lockouts: LockoutService
    subscriptions: SubscriptionService
    reminders: ReminderService

def build_services(settings: Settings, supabase_client, twilio_client) -> Services:
    logger.info("Initializing services...")
    storage = StorageService(supabase_client)
    cipher = ContentCipher(settings.encryption_secret, enabled=settings.encryption_enabled)
    if settings.encryption_enabled and not settings.encryption_secret:
        logger.warning("ENCRYPTION_SECRET is not set; keys are derived from user ids only")

    photos = PhotoService(supabase_client, settings.photo_bucket, media_auth=twilio_client.auth)
    sms = SMSService(twilio_client, storage)
    milestones = MilestoneService(storage, sms)

    services = Services(
        settings=settings,
        supabase=supabase_client,
        twilio=twilio_client,
        storage=storage,
        cipher=cipher,
        photos=photos,
        sms=sms,
        milestones=milestones,
        ingestion=SMSIngestionService(storage, cipher, photos, milestones,
                                      default_timezone=settings.default_timezone,
                                      signup_url=settings.public_base_url),
        journal=JournalService(storage, cipher, photos, default_timezone=settings.default_timezone),
        verification=PhoneVerificationService(storage, sms, RateLimiter(storage)),
        lockouts=LockoutService(storage),
        subscriptions=SubscriptionService(storage, settings.stripe_secret_key,
                                          settings.stripe_webhook_secret, settings.trial_days),
        reminders=ReminderService(storage, sms, public_url=settings.public_base_url,
                                  checkout_url=settings.stripe_checkout_url,
                                  trial_days=settings.trial_days),
    )
    logger.info("All services initialized successfully")
    return services

def get_services() -> Services:
    return current_app.extensions['journal_services']
