import json
import pytest
from datetime import timedelta
from unittest.mock import patch

from api.services.journal import JournalService, PhotoUpload
from lib.dates import utcnow
from lib.encryption import is_encrypted
from lib.error_handler import ConflictError, NotFoundError, ValidationError

@pytest.fixture
def journal(storage, cipher, photo_service):
    return JournalService(storage, cipher, photo_service)

def test_create_entry_encrypts_and_defaults_title(journal, profile, fake_supabase):
    entry = journal.create_entry('user-1', "  Wrote this on the web  ", tags=['home', ' '])

    today = utcnow().date()
    assert entry['content'] == "Wrote this on the web"
    assert entry['source'] == 'web'
    assert entry['entry_date'] == today.isoformat()
    assert entry['title'].startswith("Journal Entry - ")
    assert entry['tags'] == ['home']

    row = fake_supabase.rows('journal_entries')[0]
    assert is_encrypted(row['content'])
    assert is_encrypted(row['title'])

def test_web_entries_do_not_merge(journal, profile, fake_supabase):
    journal.create_entry('user-1', "first")
    journal.create_entry('user-1', "second")
    assert len(fake_supabase.rows('journal_entries')) == 2

def test_create_entry_with_photos(journal, profile, fake_supabase, photo_service):
    photos = [PhotoUpload('beach.jpg', b'jpeg-bytes', 'image/jpeg')]
    entry = journal.create_entry('user-1', "", photos=photos)

    assert len(entry['photos']) == 1
    assert entry['photos'][0].startswith('https://signed.example.com/user-1/')
    record = fake_supabase.rows('journal_photos')[0]
    assert record['file_name'] == 'beach.jpg'
    assert record['file_size'] == len(b'jpeg-bytes')
    photo_service.upload.assert_called_once()

def test_create_entry_rejects_bad_photos(journal, profile):
    with pytest.raises(ValidationError):
        journal.create_entry('user-1', "hi", photos=[PhotoUpload('virus.exe', b'x', 'application/octet-stream')])

def test_list_entries_decrypts_and_searches(journal, profile):
    journal.create_entry('user-1', "Hiked the ridge trail")
    journal.create_entry('user-1', "Quiet reading day", tags=['books'])

    assert len(journal.list_entries('user-1')) == 2
    assert [e['content'] for e in journal.list_entries('user-1', 'RIDGE')] == ["Hiked the ridge trail"]
    assert [e['content'] for e in journal.list_entries('user-1', 'books')] == ["Quiet reading day"]

def test_entries_are_private_to_their_owner(journal, profile):
    entry = journal.create_entry('user-1', "mine")
    with pytest.raises(NotFoundError):
        journal.get_entry('user-2', entry['id'])
    assert journal.list_entries('user-2') == []

def test_entries_by_day_groups_entries(journal, profile, fake_supabase, cipher):
    journal.create_entry('user-1', "today one")
    journal.create_entry('user-1', "today two")
    yesterday = (utcnow() - timedelta(days=1)).date().isoformat()
    fake_supabase.add('journal_entries', user_id='user-1', content=cipher.encrypt("old", 'user-1'),
                      title='Old', source='sms', entry_date=yesterday, tags=[])

    days = journal.entries_by_day('user-1')
    assert [len(day['entries']) for day in days] == [2, 1]
    assert days[1]['entry_date'] == yesterday

def test_update_entry_changes_content_and_photos(journal, profile, fake_supabase, photo_service):
    entry = journal.create_entry('user-1', "draft", photos=[PhotoUpload('a.png', b'png', 'image/png')])
    path = fake_supabase.rows('journal_photos')[0]['file_path']

    updated = journal.update_entry('user-1', entry['id'], "final", tags=['edited'], removed_photos=[path])

    assert updated['content'] == "final"
    assert updated['tags'] == ['edited']
    assert updated['photos'] == []
    assert fake_supabase.rows('journal_photos') == []
    photo_service.remove.assert_called_with([path])
    assert fake_supabase.rows('journal_entries')[0]['revision'] == 1

def test_invalid_update_leaves_entry_and_photos_untouched(journal, profile, fake_supabase, photo_service, cipher):
    entry = journal.create_entry('user-1', "draft", photos=[PhotoUpload('a.png', b'png', 'image/png')])
    path = fake_supabase.rows('journal_photos')[0]['file_path']

    with pytest.raises(ValidationError):
        journal.update_entry('user-1', entry['id'], "edited", removed_photos=[path],
                             photos=[PhotoUpload('evil.exe', b'MZ', 'application/octet-stream')])

    row = fake_supabase.rows('journal_entries')[0]
    assert cipher.decrypt(row['content'], 'user-1') == "draft"
    assert row['revision'] == 0
    assert len(fake_supabase.rows('journal_photos')) == 1
    photo_service.remove.assert_not_called()

def test_photo_limit_counts_removed_photos(journal, profile, fake_supabase):
    photos = [PhotoUpload(f'p{i}.jpg', b'jpg', 'image/jpeg') for i in range(10)]
    entry = journal.create_entry('user-1', "full", photos=photos)

    with pytest.raises(ValidationError):
        journal.update_entry('user-1', entry['id'], "full", photos=[PhotoUpload('x.jpg', b'jpg', 'image/jpeg')])

    path = fake_supabase.rows('journal_photos')[0]['file_path']
    updated = journal.update_entry('user-1', entry['id'], "full", removed_photos=[path],
                                   photos=[PhotoUpload('x.jpg', b'jpg', 'image/jpeg')])
    assert len(updated['photos']) == 10

def test_stale_edit_does_not_overwrite_sms_append(journal, profile, fake_supabase, storage, cipher):
    entry = storage.insert_entry({
        'user_id': 'user-1',
        'title': cipher.encrypt('Journal Entry', 'user-1'),
        'content': cipher.encrypt('first', 'user-1'),
        'source': 'sms',
        'entry_date': utcnow().date(),
        'message_ids': ['SM1'],
        'revision': 0,
    })
    stale = storage.get_entry(entry['id'], 'user-1')
    # A text lands between the web client's read and its save
    storage.update_entry_if_revision(entry['id'], 0, {
        'content': cipher.encrypt("first\n\nsecond", 'user-1'),
        'message_ids': ['SM1', 'SM2'],
    })

    with patch.object(storage, 'get_entry', return_value=stale):
        with pytest.raises(ConflictError):
            journal.update_entry('user-1', entry['id'], "first (edited)")

    row = fake_supabase.rows('journal_entries')[0]
    assert cipher.decrypt(row['content'], 'user-1') == "first\n\nsecond"
    assert row['revision'] == 1

def test_update_missing_entry(journal, profile):
    with pytest.raises(NotFoundError):
        journal.update_entry('user-1', 'missing', "text")

def test_delete_entry_removes_photos(journal, profile, fake_supabase, photo_service):
    entry = journal.create_entry('user-1', "bye", photos=[PhotoUpload('a.jpg', b'jpg', 'image/jpeg')])
    path = fake_supabase.rows('journal_photos')[0]['file_path']

    journal.delete_entry('user-1', entry['id'])

    assert fake_supabase.rows('journal_entries') == []
    photo_service.remove.assert_called_with([path])

def test_stats(journal, profile, fake_supabase):
    today = utcnow().date()
    for days_ago, source in [(0, 'sms'), (0, 'web'), (1, 'sms'), (2, 'web'), (5, 'sms')]:
        fake_supabase.add('journal_entries', user_id='user-1', content='x', title='t', source=source,
                          entry_date=(today - timedelta(days=days_ago)).isoformat(), tags=[])

    stats = journal.stats('user-1')
    assert stats['total_entries'] == 5
    assert stats['sms_entries'] == 3
    assert stats['web_entries'] == 2
    assert stats['days_journaled'] == 4
    assert stats['current_streak'] == 3
    assert stats['longest_streak'] == 3

def test_export_text_and_json(journal, profile):
    journal.create_entry('user-1', "exported words", tags=['x'])

    text = journal.export('user-1', 'txt')
    assert "exported words" in text
    assert "Tags: x" in text

    data = json.loads(journal.export('user-1', 'json'))
    assert data[0]['content'] == "exported words"

    with pytest.raises(ValidationError):
        journal.export('user-1', 'pdf')
