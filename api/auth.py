import hmac
import inspect
import logging
from functools import wraps

from flask import g, request

from api.dependencies import get_services
from lib.error_handler import AppError, AuthenticationError, SubscriptionRequiredError

logger = logging.getLogger(__name__)

def _guarded(check):
    """Turn a check function into a view decorator that works for sync and async views."""
    def decorator(f):
        if inspect.iscoroutinefunction(f):
            @wraps(f)
            async def async_decorated(*args, **kwargs):
                check()
                return await f(*args, **kwargs)
            return async_decorated

        @wraps(f)
        def decorated(*args, **kwargs):
            check()
            return f(*args, **kwargs)
        return decorated
    return decorator

def _bearer_token() -> str:
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        raise AuthenticationError("No authorization header provided")
    return header[len('Bearer '):].strip()

def current_user() -> dict:
    """Resolve the bearer token to a user through the auth provider."""
    token = _bearer_token()
    try:
        response = get_services().supabase.auth.get_user(token)
    except Exception as e:
        logger.warning(f"Token validation failed: {str(e)}")
        raise AuthenticationError("Invalid authentication token")
    user = getattr(response, 'user', None)
    if not user:
        raise AuthenticationError("Invalid authentication token")
    return {'id': user.id, 'email': getattr(user, 'email', None)}

def _load_user():
    g.user = current_user()

def _check_access():
    # Journal access needs an active subscription or a running trial
    if not get_services().subscriptions.has_access(g.user):
        raise SubscriptionRequiredError()

def _check_cron_secret():
    expected = get_services().settings.cron_secret
    provided = request.headers.get('X-Cron-Secret', '')
    if not expected:
        raise AppError("CRON_SECRET is not configured", status_code=503,
                       user_message="Scheduled jobs are not configured")
    if not hmac.compare_digest(expected, provided):
        raise AuthenticationError("Invalid cron secret")

login_required = _guarded(_load_user)
subscription_required = _guarded(_check_access)
cron_secret_required = _guarded(_check_cron_secret)
