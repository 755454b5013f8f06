"""
Inbound SMS ingestion.

Texts from a verified number are folded into a single SMS journal entry per
calendar day (in the user's own timezone). The provider delivers webhooks at
least once and not necessarily in order, so every step here is safe to repeat:

* the provider message SID is recorded before anything else and a processed
  SID is never applied twice;
* an entry remembers which SIDs it already contains;
* entry updates are compare-and-set on a revision counter;
* photo paths are derived from the SID so a retried upload overwrites itself;
* milestone celebrations are claimed with a unique row before sending.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from api.services.photos import extension_for
from api.services.sms import mask_phone
from api.services.streaks import calculate_current_streak, calculate_longest_streak
from lib.dates import entry_date_for, entry_title, local_now, parse_timestamp, utcnow
from lib.error_handler import AppError, ConflictError, ErrorHandler
from lib.validation import MAX_PHOTO_SIZE, MAX_PHOTOS_PER_ENTRY, clean_phone

logger = logging.getLogger(__name__)

SAVED_REPLY = "✅ Your journal entry has been saved!"
VERIFIED_REPLY = (
    "Perfect! Your phone is now verified. To create a journal entry, simply send a "
    "message to this number. You can view all your entries on our website."
)
UNVERIFIED_REPLY = "Please reply YES to verify your phone number before journaling by text."
UNKNOWN_SENDER_REPLY = (
    "We couldn't find an account for this number. Sign up at {url} to start journaling by text."
)
EMPTY_REPLY = "Send a text or a photo to add to today's journal entry."

# Handled by the carrier / provider opt-out flow
PROVIDER_KEYWORDS = {'STOP', 'STOPALL', 'UNSUBSCRIBE', 'CANCEL', 'END', 'QUIT', 'START', 'UNSTOP', 'HELP', 'INFO'}
MAX_UPDATE_ATTEMPTS = 3

@dataclass
class MediaItem:
    url: str
    content_type: str

    @property
    def is_image(self) -> bool:
        return (self.content_type or '').lower().startswith('image/')

@dataclass
class InboundMessage:
    message_sid: str
    from_number: str
    body: str
    sent_at: datetime
    to_number: str = ''
    media: List[MediaItem] = field(default_factory=list)

    @classmethod
    def from_webhook(cls, form: Mapping[str, str], received_at: Optional[datetime] = None) -> 'InboundMessage':
        """Build from the Twilio webhook form fields"""
        try:
            num_media = int(form.get('NumMedia') or 0)
        except ValueError:
            num_media = 0

        media = []
        for i in range(num_media):
            url = form.get(f'MediaUrl{i}')
            if url:
                media.append(MediaItem(url=url, content_type=form.get(f'MediaContentType{i}', '')))

        sent_at = parse_timestamp(form.get('DateSent') or form.get('Timestamp'))
        return cls(
            message_sid=form.get('MessageSid') or form.get('SmsSid') or '',
            from_number=form.get('From', ''),
            to_number=form.get('To', ''),
            body=(form.get('Body') or '').strip(),
            sent_at=sent_at or received_at or utcnow(),
            media=media,
        )

    @property
    def images(self) -> List[MediaItem]:
        return [m for m in self.media if m.is_image]

@dataclass
class IngestionResult:
    status: str
    reply: Optional[str] = None
    entry_id: Optional[str] = None
    message_id: Optional[str] = None
    streak: Optional[int] = None
    milestone: Optional[int] = None
    photos_saved: int = 0

def join_paragraphs(*parts: str) -> str:
    return "\n\n".join(p for p in parts if p)

class SMSIngestionService:
    def __init__(self, storage_service, cipher, photo_service, milestone_service,
                 default_timezone: str = 'UTC', signup_url: str = ''):
        self.storage = storage_service
        self.cipher = cipher
        self.photos = photo_service
        self.milestones = milestone_service
        self.default_timezone = default_timezone
        self.signup_url = signup_url

    async def handle_inbound(self, message: InboundMessage) -> IngestionResult:
        phone = clean_phone(message.from_number)
        logger.info(f"Processing SMS {message.message_sid} from {mask_phone(phone)}")

        profile = self.storage.get_profile_by_phone(phone)
        if not profile:
            logger.warning(f"No profile found for phone {mask_phone(phone)}")
            return IngestionResult('unknown_sender', reply=UNKNOWN_SENDER_REPLY.format(url=self.signup_url))

        record = None
        if message.message_sid:
            record = self.storage.get_message_by_sid(message.message_sid)
            if record and record.get('processed'):
                logger.info(f"Duplicate delivery of {message.message_sid}, already processed")
                return IngestionResult('duplicate', reply=SAVED_REPLY,
                                       entry_id=record.get('entry_id'), message_id=record['id'])

        keyword = message.body.upper()
        entry_date = entry_date_for(message.sent_at, profile.get('timezone'), self.default_timezone)

        if not profile.get('phone_verified'):
            if keyword == 'YES':
                return self._verify_phone(profile, message, record, entry_date)
            return IngestionResult('unverified', reply=UNVERIFIED_REPLY)

        if keyword in PROVIDER_KEYWORDS:
            if record is None:
                self._store_message(profile, message, entry_date, processed=True)
            return IngestionResult('ignored')

        if not message.body and not message.images:
            return IngestionResult('empty', reply=EMPTY_REPLY)

        if record is None:
            try:
                record = self._store_message(profile, message, entry_date)
            except ConflictError:
                # Another delivery of the same SID is in flight; it will finish the work
                logger.info(f"Concurrent delivery of {message.message_sid}, skipping")
                return IngestionResult('duplicate', reply=SAVED_REPLY)

        entry = self._apply_to_entry(profile, message, record, entry_date)
        photos_saved = await self._attach_photos(profile, entry, message)

        self.storage.update_message(record['id'], {'processed': True, 'entry_id': entry['id']})

        streak, milestone = await self._update_streak(profile)
        logger.info("SMS processing complete")
        return IngestionResult('recorded', reply=SAVED_REPLY, entry_id=entry['id'],
                               message_id=record['id'], streak=streak, milestone=milestone,
                               photos_saved=photos_saved)

    def _store_message(self, profile: Dict[str, Any], message: InboundMessage, entry_date,
                       processed: bool = False) -> Dict[str, Any]:
        return self.storage.insert_message({
            'user_id': profile['id'],
            'provider_message_id': message.message_sid or None,
            'phone_number': clean_phone(message.from_number),
            'message_content': self.cipher.encrypt(message.body, profile['id']),
            'entry_date': entry_date,
            'sent_at': message.sent_at,
            'media_count': len(message.media),
            'direction': 'inbound',
            'processed': processed,
        })

    def _verify_phone(self, profile, message, record, entry_date) -> IngestionResult:
        logger.info(f"Processing YES response for phone verification for user {profile['id']}")
        self.storage.update_profile(profile['id'], {'phone_verified': True})
        if record is None:
            self._store_message(profile, message, entry_date, processed=True)
        else:
            self.storage.update_message(record['id'], {'processed': True})
        return IngestionResult('phone_verified', reply=VERIFIED_REPLY)

    def _apply_to_entry(self, profile, message: InboundMessage, record, entry_date) -> Dict[str, Any]:
        user_id = profile['id']
        sid = message.message_sid

        for _ in range(MAX_UPDATE_ATTEMPTS):
            entry = self.storage.find_entry(user_id, entry_date, 'sms')
            if entry is None:
                try:
                    return self.storage.insert_entry({
                        'user_id': user_id,
                        'title': self.cipher.encrypt(entry_title(entry_date), user_id),
                        'content': self.cipher.encrypt(message.body, user_id),
                        'source': 'sms',
                        'entry_date': entry_date,
                        'tags': [],
                        'message_ids': [sid] if sid else [],
                        'last_message_at': message.sent_at,
                        'revision': 0,
                    })
                except ConflictError:
                    # First texts of the day raced; append to the winner's entry
                    continue

            message_ids = entry.get('message_ids') or []
            if sid and sid in message_ids:
                return entry

            last_message_at = parse_timestamp(entry.get('last_message_at'))
            if last_message_at and message.sent_at < last_message_at:
                logger.info(f"Out-of-order message {sid} for {entry_date}, rebuilding entry")
                content = self._rebuild_content(user_id, entry, record, message)
                newest = last_message_at
            else:
                existing = self.cipher.decrypt_or_raw(entry.get('content'), user_id)
                content = join_paragraphs(existing, message.body)
                newest = message.sent_at

            updated = self.storage.update_entry_if_revision(entry['id'], entry.get('revision') or 0, {
                'content': self.cipher.encrypt(content, user_id),
                'message_ids': message_ids + ([sid] if sid else []),
                'last_message_at': newest,
            })
            if updated:
                return updated
            logger.info(f"Entry {entry['id']} changed concurrently, retrying")

        raise AppError(f"Could not update journal entry for {entry_date} after {MAX_UPDATE_ATTEMPTS} attempts")

    def _rebuild_content(self, user_id: str, entry, record, message: InboundMessage) -> str:
        # entry_id is only set once a message is processed; message_ids also covers
        # messages whose delivery failed after they were appended
        rows = {row['id']: row for row in self.storage.list_entry_messages(entry['id'])}
        rows.update((row['id'], row) for row in self.storage.list_messages_by_sids(entry.get('message_ids') or []))
        rows[record['id']] = dict(record, sent_at=message.sent_at.isoformat())

        def sort_key(row):
            sent = parse_timestamp(row.get('sent_at')) or parse_timestamp(row.get('created_at')) or utcnow()
            return (sent, row.get('provider_message_id') or '')

        bodies = [
            self.cipher.decrypt_or_raw(row.get('message_content'), user_id)
            for row in sorted(rows.values(), key=sort_key)
        ]
        return join_paragraphs(*bodies)

    async def _attach_photos(self, profile, entry, message: InboundMessage) -> int:
        if not message.images:
            return 0

        user_id = profile['id']
        existing = self.storage.list_photos([entry['id']])
        existing_paths = {photo['file_path'] for photo in existing}
        photo_count = len(existing)
        saved = 0

        for index, item in enumerate(message.media):
            if not item.is_image:
                continue
            ext = extension_for(item.content_type)
            path = f"{user_id}/{entry['id']}/{message.message_sid or int(utcnow().timestamp())}-{index}.{ext}"
            if path in existing_paths:
                continue
            if photo_count >= MAX_PHOTOS_PER_ENTRY:
                logger.warning(f"Photo limit reached for entry {entry['id']}, skipping remaining attachments")
                break

            try:
                data = await self.photos.download(item.url)
                if len(data) > MAX_PHOTO_SIZE:
                    logger.warning(f"Attachment {index} of {message.message_sid} exceeds 10MB, skipping")
                    continue
                self.photos.upload(path, data, item.content_type)
                self.storage.insert_photo({
                    'entry_id': entry['id'],
                    'file_path': path,
                    'file_name': f"sms_photo_{message.message_sid}_{index}.{ext}",
                    'file_size': len(data),
                    'mime_type': item.content_type,
                })
            except Exception as e:
                # One bad attachment must not fail the entry or the webhook
                ErrorHandler.handle_media_error(e)
                continue

            photo_count += 1
            saved += 1
            logger.info(f"Photo uploaded and saved: {path}")

        return saved

    async def _update_streak(self, profile):
        user_id = profile['id']
        entry_dates = self.storage.list_entry_dates(user_id)
        today = local_now(profile.get('timezone'), default=self.default_timezone).date()
        streak = calculate_current_streak(entry_dates, today)
        longest = max(calculate_longest_streak(entry_dates), profile.get('longest_streak') or 0)
        self.storage.update_profile(user_id, {'current_streak': streak, 'longest_streak': longest})

        milestone = None
        if streak > 1:
            try:
                milestone = await self.milestones.check_and_send(profile, streak)
            except Exception as e:
                # The entry is already saved; a celebration failure must not trigger a provider retry
                logger.error(f"Error checking milestone: {str(e)}", exc_info=True)
        return streak, milestone
