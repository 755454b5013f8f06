import json
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from api.services.streaks import calculate_current_streak, calculate_longest_streak
from lib.dates import entry_date_for, entry_title, local_now, utcnow
from lib.error_handler import ConflictError, NotFoundError, ValidationError
from lib.validation import (
    check_photo_limit,
    validate_entry_content,
    validate_photos,
    validate_tags,
)

logger = logging.getLogger(__name__)

class PhotoUpload:
    """An uploaded image from the web client."""

    def __init__(self, filename: str, data: bytes, content_type: str):
        self.filename = filename
        self.data = data
        self.content_type = content_type or 'application/octet-stream'

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.filename.rsplit('.', 1)[-1].lower() if '.' in self.filename else ''

class JournalService:
    def __init__(self, storage_service, cipher, photo_service, default_timezone: str = 'UTC'):
        self.storage = storage_service
        self.cipher = cipher
        self.photos = photo_service
        self.default_timezone = default_timezone

    def _profile_timezone(self, user_id: str) -> Optional[str]:
        profile = self.storage.get_profile(user_id) or {}
        return profile.get('timezone')

    def _present(self, entry: Dict[str, Any], photos: List[Dict[str, Any]]) -> Dict[str, Any]:
        user_id = entry['user_id']
        urls = [self.photos.signed_url(photo['file_path']) for photo in photos]
        return {
            'id': entry['id'],
            'title': self.cipher.decrypt_or_raw(entry.get('title'), user_id),
            'content': self.cipher.decrypt_or_raw(entry.get('content'), user_id),
            'source': entry.get('source'),
            'entry_date': entry.get('entry_date'),
            'timestamp': entry.get('created_at'),
            'tags': entry.get('tags') or [],
            'photos': [url for url in urls if url],
            'user_id': user_id,
        }

    def list_entries(self, user_id: str, query: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries newest first, decrypted, with signed photo URLs."""
        entries = self.storage.list_entries(user_id)
        photos_by_entry: Dict[str, List[Dict[str, Any]]] = {}
        for photo in self.storage.list_photos(e['id'] for e in entries):
            photos_by_entry.setdefault(photo['entry_id'], []).append(photo)

        results = [self._present(e, photos_by_entry.get(e['id'], [])) for e in entries]
        logger.info(f"Loaded {len(results)} journal entries for user {user_id}")

        if query:
            needle = query.lower()
            results = [
                e for e in results
                if needle in e['content'].lower()
                or needle in e['title'].lower()
                or any(needle in tag.lower() for tag in e['tags'])
            ]
        return results

    def entries_by_day(self, user_id: str, query: Optional[str] = None) -> List[Dict[str, Any]]:
        days: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for entry in sorted(self.list_entries(user_id, query),
                            key=lambda e: (e['entry_date'] or '', e['timestamp'] or ''), reverse=True):
            days.setdefault(entry['entry_date'], []).append(entry)
        return [{'entry_date': day, 'entries': entries} for day, entries in days.items()]

    def _upload_photos(self, user_id: str, entry_id: str, photos: Sequence[PhotoUpload]) -> None:
        stamp = int(utcnow().timestamp() * 1000)
        for index, photo in enumerate(photos):
            path = f"{user_id}/{entry_id}/{stamp}-{index}.{photo.extension}"
            self.photos.upload(path, photo.data, photo.content_type)
            self.storage.insert_photo({
                'entry_id': entry_id,
                'file_path': path,
                'file_name': photo.filename,
                'file_size': photo.size,
                'mime_type': photo.content_type,
            })

    def create_entry(self, user_id: str, content: str, title: str = '',
                     tags: Optional[List[str]] = None,
                     photos: Sequence[PhotoUpload] = ()) -> Dict[str, Any]:
        content = validate_entry_content(content, len(photos))
        if photos:
            validate_photos([(p.filename, p.size) for p in photos])
            check_photo_limit(0, len(photos))

        entry_date = entry_date_for(utcnow(), self._profile_timezone(user_id), self.default_timezone)
        title = (title or '').strip() or entry_title(entry_date)

        entry = self.storage.insert_entry({
            'user_id': user_id,
            'content': self.cipher.encrypt(content, user_id),
            'title': self.cipher.encrypt(title, user_id),
            'source': 'web',
            'entry_date': entry_date,
            'tags': validate_tags(tags),
            'revision': 0,
        })
        if photos:
            self._upload_photos(user_id, entry['id'], photos)
        logger.info(f"Created web entry {entry['id']} for {entry_date}")
        return self.get_entry(user_id, entry['id'])

    def get_entry(self, user_id: str, entry_id: str) -> Dict[str, Any]:
        entry = self.storage.get_entry(entry_id, user_id)
        if not entry:
            raise NotFoundError("Journal entry not found")
        return self._present(entry, self.storage.list_photos([entry_id]))

    def update_entry(self, user_id: str, entry_id: str, content: str,
                     tags: Optional[List[str]] = None,
                     photos: Sequence[PhotoUpload] = (),
                     removed_photos: Sequence[str] = ()) -> Dict[str, Any]:
        entry = self.storage.get_entry(entry_id, user_id)
        if not entry:
            raise NotFoundError("Journal entry not found")

        existing_photos = self.storage.list_photos([entry_id])
        removed = []
        for reference in removed_photos:
            path = self.photos.extract_storage_path(reference) or reference
            match = next((p for p in existing_photos if p['file_path'] == path), None)
            if not match:
                logger.error(f"Could not find matching photo record for {reference}")
                continue
            if match not in removed:
                removed.append(match)
        remaining = len(existing_photos) - len(removed)

        # Nothing is written until the whole update is known to be valid
        content = validate_entry_content(content, remaining + len(photos))
        if photos:
            validate_photos([(p.filename, p.size) for p in photos])
            check_photo_limit(remaining, len(photos))

        update = {'content': self.cipher.encrypt(content, user_id)}
        if tags is not None:
            update['tags'] = validate_tags(tags)
        if not self.storage.update_entry_if_revision(entry_id, entry.get('revision') or 0, update):
            logger.warning(f"Entry {entry_id} changed while it was being edited")
            raise ConflictError("This entry was updated by a new text. Reload it and try again.")

        for photo in removed:
            self.photos.remove([photo['file_path']])
            self.storage.delete_photo(photo['id'])
        if photos:
            self._upload_photos(user_id, entry_id, photos)

        return self.get_entry(user_id, entry_id)

    def delete_entry(self, user_id: str, entry_id: str) -> None:
        entry = self.storage.get_entry(entry_id, user_id)
        if not entry:
            raise NotFoundError("Journal entry not found")
        photos = self.storage.list_photos([entry_id])
        self.photos.remove([p['file_path'] for p in photos])
        self.storage.delete_entry(entry_id, user_id)
        logger.info(f"Deleted entry {entry_id}")

    def stats(self, user_id: str) -> Dict[str, Any]:
        entries = self.storage.list_entries(user_id)
        dates = [e['entry_date'] for e in entries if e.get('entry_date')]
        today = local_now(self._profile_timezone(user_id), default=self.default_timezone).date()
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)  # Sunday
        return {
            'total_entries': len(entries),
            'sms_entries': sum(1 for e in entries if e.get('source') == 'sms'),
            'web_entries': sum(1 for e in entries if e.get('source') == 'web'),
            'days_journaled': len(set(dates)),
            'current_streak': calculate_current_streak(dates, today),
            'longest_streak': calculate_longest_streak(dates),
            'entries_this_week': sum(1 for d in dates if week_start.isoformat() <= d[:10] <= today.isoformat()),
        }

    def export(self, user_id: str, fmt: str = 'txt') -> str:
        entries = sorted(self.list_entries(user_id),
                         key=lambda e: (e['entry_date'] or '', e['timestamp'] or ''))
        if fmt == 'json':
            return json.dumps(entries, indent=2, ensure_ascii=False)
        if fmt != 'txt':
            raise ValidationError(f"Unsupported export format: {fmt}")

        blocks = []
        for entry in entries:
            header = f"{entry['entry_date']} - {entry['title']} ({entry['source']})"
            lines = [header, '=' * len(header), entry['content']]
            if entry['tags']:
                lines.append(f"Tags: {', '.join(entry['tags'])}")
            blocks.append("\n".join(lines))
        return "\n\n\n".join(blocks) + ("\n" if blocks else "")
