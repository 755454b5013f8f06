import re
from typing import Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lib.error_handler import ValidationError

MAX_CONTENT_LENGTH = 10_000
MAX_PHOTO_SIZE = 10 * 1024 * 1024
MAX_TOTAL_PHOTO_SIZE = 10 * 1024 * 1024
MAX_PHOTOS_PER_ENTRY = 10
MAX_TAGS = 10
ALLOWED_PHOTO_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp'}

def clean_phone(phone: Optional[str]) -> str:
    """Strip formatting characters so numbers compare equal however they were typed."""
    return re.sub(r'[\+\-\s\(\)\.]', '', phone or '')

def validate_phone_number(phone: Optional[str]) -> str:
    if not phone or not isinstance(phone, str):
        raise ValidationError("Valid phone number is required")
    if len(phone) > 20:
        raise ValidationError("Phone number too long")
    digits = re.sub(r'\D', '', phone)
    if not 10 <= len(digits) <= 15:
        raise ValidationError("Valid phone number is required")
    return phone

def format_phone_number(phone: str) -> str:
    """Format a stored number as E.164 for sending."""
    digits = re.sub(r'\D', '', phone or '')
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith('1'):
        return f"+{digits}"
    if phone.startswith('+'):
        return phone
    return f"+1{digits}"

def validate_entry_content(content: Optional[str], photo_count: int = 0) -> str:
    content = (content or '').strip()
    if not content and photo_count == 0:
        raise ValidationError("Content cannot be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError("Content too long (max 10,000 characters)")
    return content

def validate_photos(photos: Sequence[Tuple[str, int]]) -> None:
    """Check (filename, size) pairs against the per-entry photo limits."""
    total = sum(size for _, size in photos)
    if total > MAX_TOTAL_PHOTO_SIZE:
        raise ValidationError(
            f"Total photo size too large: {total / (1024 * 1024):.1f}MB (max 10MB per entry)"
        )

    for name, size in photos:
        ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ''
        if ext not in ALLOWED_PHOTO_EXTENSIONS:
            raise ValidationError(f"Invalid file type: {name}")
        if size > MAX_PHOTO_SIZE:
            raise ValidationError(f"File too large: {name} (max 10MB)")

def check_photo_limit(existing_count: int, new_count: int) -> None:
    if existing_count + new_count > MAX_PHOTOS_PER_ENTRY:
        raise ValidationError(
            f"Cannot add {new_count} photos. Maximum {MAX_PHOTOS_PER_ENTRY} photos "
            f"per entry (currently {existing_count})"
        )

def validate_tags(tags: Optional[Iterable[str]]) -> List[str]:
    return [tag.strip() for tag in (tags or []) if tag and tag.strip()][:MAX_TAGS]

def validate_timezone(name: Optional[str]) -> str:
    if not name:
        raise ValidationError("Timezone is required")
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}")
    return name

def validate_reminder_time(value: str) -> str:
    if not re.fullmatch(r'([01]\d|2[0-3]):[0-5]\d', value or ''):
        raise ValidationError("Reminder time must be HH:MM")
    return value
