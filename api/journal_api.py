import logging
from datetime import datetime

from flask import Blueprint, Response, g, jsonify, request

from .auth import login_required, subscription_required
from .dependencies import get_services
from .services.journal import PhotoUpload
from .services.security import client_ip
from lib.error_handler import NotFoundError, ValidationError
from lib.validation import validate_reminder_time, validate_timezone

logger = logging.getLogger(__name__)

journal_api = Blueprint('journal_api', __name__, url_prefix='/api')

PROFILE_FIELDS = (
    'id', 'email', 'phone_number', 'phone_verified', 'timezone',
    'reminder_enabled', 'reminder_time', 'reminder_timezone', 'weekly_recap_enabled',
    'current_streak', 'longest_streak',
)
BOOLEAN_SETTINGS = ('reminder_enabled', 'weekly_recap_enabled')

def _entry_payload():
    """Read an entry from JSON or from a multipart form with photo files."""
    if request.is_json:
        data = request.get_json(silent=True) or {}
        return data, [], data.get('removed_photos') or []

    data = request.form.to_dict()
    tags = request.form.getlist('tags')
    data['tags'] = tags if tags else None
    photos = [
        PhotoUpload(f.filename or 'photo', f.read(), f.mimetype)
        for f in request.files.getlist('photos')
        if f and f.filename
    ]
    return data, photos, request.form.getlist('removed_photos')

@journal_api.route("/entries", methods=['GET'])
@login_required
@subscription_required
def list_entries():
    journal = get_services().journal
    query = request.args.get('q')
    if request.args.get('group') == 'day':
        return jsonify({"days": journal.entries_by_day(g.user['id'], query)})
    return jsonify({"entries": journal.list_entries(g.user['id'], query)})

@journal_api.route("/entries", methods=['POST'])
@login_required
@subscription_required
def create_entry():
    data, photos, _ = _entry_payload()
    entry = get_services().journal.create_entry(
        g.user['id'],
        data.get('content', ''),
        title=data.get('title', ''),
        tags=data.get('tags'),
        photos=photos,
    )
    return jsonify({"entry": entry}), 201

@journal_api.route("/entries/<entry_id>", methods=['GET'])
@login_required
@subscription_required
def get_entry(entry_id):
    return jsonify({"entry": get_services().journal.get_entry(g.user['id'], entry_id)})

@journal_api.route("/entries/<entry_id>", methods=['PUT'])
@login_required
@subscription_required
def update_entry(entry_id):
    data, photos, removed = _entry_payload()
    entry = get_services().journal.update_entry(
        g.user['id'],
        entry_id,
        data.get('content', ''),
        tags=data.get('tags'),
        photos=photos,
        removed_photos=removed,
    )
    return jsonify({"entry": entry})

@journal_api.route("/entries/<entry_id>", methods=['DELETE'])
@login_required
@subscription_required
def delete_entry(entry_id):
    get_services().journal.delete_entry(g.user['id'], entry_id)
    return jsonify({"success": True})

@journal_api.route("/entries/export", methods=['GET'])
@login_required
@subscription_required
def export_entries():
    fmt = request.args.get('format', 'txt')
    body = get_services().journal.export(g.user['id'], fmt)
    mimetype = 'application/json' if fmt == 'json' else 'text/plain'
    return Response(body, mimetype=mimetype, headers={
        'Content-Disposition': f'attachment; filename=journal.{fmt}'
    })

@journal_api.route("/stats", methods=['GET'])
@login_required
@subscription_required
def stats():
    return jsonify(get_services().journal.stats(g.user['id']))

@journal_api.route("/profile", methods=['GET'])
@login_required
def get_profile():
    profile = get_services().storage.get_profile(g.user['id'])
    if not profile:
        raise NotFoundError("Profile not found")
    return jsonify({"profile": {k: profile.get(k) for k in PROFILE_FIELDS}})

@journal_api.route("/profile", methods=['PATCH'])
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}
    update = {}
    if 'timezone' in data:
        update['timezone'] = validate_timezone(data['timezone'])
    if 'reminder_timezone' in data:
        update['reminder_timezone'] = validate_timezone(data['reminder_timezone'])
    if 'reminder_time' in data:
        update['reminder_time'] = validate_reminder_time(data['reminder_time'])
    for key in BOOLEAN_SETTINGS:
        if key in data:
            if not isinstance(data[key], bool):
                raise ValidationError(f"{key} must be true or false")
            update[key] = data[key]
    if not update:
        raise ValidationError("No profile settings to update")

    storage = get_services().storage
    storage.update_profile(g.user['id'], update)
    profile = storage.get_profile(g.user['id']) or {}
    return jsonify({"profile": {k: profile.get(k) for k in PROFILE_FIELDS}})

@journal_api.route("/phone/send-code", methods=['POST'])
@login_required
async def send_verification_code():
    data = request.get_json(silent=True) or {}
    result = await get_services().verification.send_code(
        g.user['id'], data.get('phone_number'), client_ip(request.headers)
    )
    return jsonify(result)

@journal_api.route("/phone/verify", methods=['POST'])
@login_required
async def verify_phone():
    data = request.get_json(silent=True) or {}
    result = await get_services().verification.verify_code(
        g.user['id'], data.get('phone_number'), data.get('code')
    )
    return jsonify(result)

@journal_api.route("/subscription", methods=['GET'])
@login_required
def subscription_status():
    return jsonify(get_services().subscriptions.status(g.user))

@journal_api.route("/subscription/trial", methods=['POST'])
@login_required
def start_trial():
    if not g.user.get('email'):
        raise ValidationError("User email not available")
    subscriber = get_services().subscriptions.start_trial(g.user)
    trial_end = subscriber.get('trial_end')
    if isinstance(trial_end, datetime):
        trial_end = trial_end.isoformat()
    return jsonify({"is_trial": bool(subscriber.get('is_trial')), "trial_end": trial_end})

@journal_api.route("/auth/lockout", methods=['GET'])
def lockout_status():
    return jsonify(get_services().lockouts.check(request.args.get('email', '')))

@journal_api.route("/auth/login-failure", methods=['POST'])
def login_failure():
    data = request.get_json(silent=True) or {}
    result = get_services().lockouts.record_failure(
        data.get('email', ''), client_ip(request.headers), data.get('error')
    )
    return jsonify(result)

@journal_api.route("/auth/login-success", methods=['POST'])
@login_required
def login_success():
    get_services().lockouts.reset(g.user.get('email') or '')
    return jsonify({"success": True})
