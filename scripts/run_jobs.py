import argparse
import asyncio

from api.dependencies import build_services
from api.routes import configure_logging
from lib.config import get_settings
from lib.database import create_supabase_client
from lib.twilio_client import TwilioClient

JOBS = {
    'reminders': 'send_daily_reminders',
    'weekly-recap': 'send_weekly_recaps',
    'trial-reminders': 'send_trial_reminders',
}

async def run_job(name: str):
    """Run one scheduled reminder job outside the web process"""
    settings = get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings, create_supabase_client(settings), TwilioClient(settings))
    return await getattr(services.reminders, JOBS[name])()

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a scheduled SMS journal job")
    parser.add_argument('job', choices=sorted(JOBS))
    args = parser.parse_args()
    try:
        sent = asyncio.run(run_job(args.job))
        print(f"{args.job}: sent {len(sent)} messages")
    except Exception as e:
        print(f"Error running {args.job}: {str(e)}")
        raise
