from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''
    photo_bucket: str = 'journal-photos'

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''
    validate_twilio_signature: bool = True

    # Stripe settings
    stripe_secret_key: str = ''
    stripe_webhook_secret: str = ''
    stripe_checkout_url: str = ''
    trial_days: int = 10

    # Encryption settings
    encryption_enabled: bool = True
    encryption_secret: str = ''

    # Scheduled jobs
    cron_secret: str = ''

    public_base_url: str = 'https://journalbytext.com'
    default_timezone: str = 'UTC'
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return (value or 'INFO').upper()

    @field_validator('public_base_url')
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip('/')

def get_settings() -> Settings:
    return Settings()
