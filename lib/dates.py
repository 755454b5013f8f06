import logging
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

def resolve_zone(name: Optional[str], default: str = 'UTC') -> ZoneInfo:
    for candidate in (name, default, 'UTC'):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {candidate!r}, falling back")
    return ZoneInfo('UTC')

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def local_now(tz_name: Optional[str], now: Optional[datetime] = None, default: str = 'UTC') -> datetime:
    return (now or utcnow()).astimezone(resolve_zone(tz_name, default))

def entry_date_for(moment: datetime, tz_name: Optional[str], default: str = 'UTC') -> date:
    """Calendar day a moment falls on for a user in the given zone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(resolve_zone(tz_name, default)).date()

def entry_title(entry_date: Union[date, str]) -> str:
    if isinstance(entry_date, str):
        entry_date = date.fromisoformat(entry_date)
    return f"Journal Entry - {entry_date.strftime('%B')} {entry_date.day}, {entry_date.year}"

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 or RFC 2822 timestamps into aware UTC datetimes."""
    if not value:
        return None
    parsed = None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

def to_date(value: Union[date, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])
