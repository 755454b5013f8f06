import logging
from supabase import create_client, Client

from lib.config import Settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

def create_supabase_client(settings: Settings) -> Client:
    """Create the service-role Supabase client used for all table and storage access."""
    if not settings.supabase_url or not settings.supabase_key:
        raise AppError("Supabase is not configured (SUPABASE_URL / SUPABASE_KEY)")
    try:
        client = create_client(settings.supabase_url, settings.supabase_key)
        logger.info("Supabase client initialized successfully")
        return client
    except Exception as e:
        logger.error(f"Error initializing Supabase client: {str(e)}")
        raise AppError("Failed to initialize database client") from e
