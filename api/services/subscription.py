import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe

from lib.dates import parse_timestamp, utcnow
from lib.error_handler import AppError, ValidationError, WebhookSignatureError

logger = logging.getLogger(__name__)

YEARLY_MIN_AMOUNT = 3000

def log_step(step: str, details: Optional[Dict[str, Any]] = None) -> None:
    logger.info(f"[SUBSCRIPTION] {step}" + (f" - {details}" if details else ""))

def tier_for_price(price: Dict[str, Any]) -> str:
    recurring = price.get('recurring') or {}
    if recurring.get('interval') == 'year':
        return 'Yearly'
    if recurring.get('interval') == 'month':
        return 'Monthly'
    return 'Yearly' if (price.get('unit_amount') or 0) >= YEARLY_MIN_AMOUNT else 'Monthly'

def _period_end(subscription: Dict[str, Any]) -> Optional[str]:
    end = subscription.get('current_period_end')
    if end is None:
        items = (subscription.get('items') or {}).get('data') or []
        end = items[0].get('current_period_end') if items else None
    return datetime.fromtimestamp(end, tz=timezone.utc).isoformat() if end else None

def trial_active(subscriber: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if not subscriber or not subscriber.get('is_trial'):
        return False
    trial_end = parse_timestamp(subscriber.get('trial_end'))
    return bool(trial_end and trial_end > (now or utcnow()))

class SubscriptionService:
    def __init__(self, storage_service, secret_key: str = '', webhook_secret: str = '', trial_days: int = 10):
        self.storage = storage_service
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.trial_days = trial_days

    def start_trial(self, user: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.storage.get_subscriber(user['email'])
        if existing:
            return existing
        now = utcnow()
        subscriber = {
            'email': user['email'],
            'user_id': user['id'],
            'subscribed': False,
            'is_trial': True,
            'trial_end': now + timedelta(days=self.trial_days),
            'updated_at': now,
        }
        self.storage.upsert_subscriber(subscriber)
        log_step("Trial started", {'user_id': user['id']})
        return subscriber

    def has_access(self, user: Dict[str, Any]) -> bool:
        subscriber = self.storage.get_subscriber(user['email']) if user.get('email') else None
        if subscriber is None:
            subscriber = self.storage.get_subscriber_by_user(user['id'])
        if not subscriber:
            return False
        return bool(subscriber.get('subscribed')) or trial_active(subscriber)

    def status(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Current subscription state, refreshed from Stripe when no trial is running."""
        email = user.get('email')
        if not email:
            raise ValidationError("User email not available")

        subscriber = self.storage.get_subscriber(email)
        if trial_active(subscriber):
            log_step("Trial active", {'trial_end': subscriber.get('trial_end')})
            return {
                'subscribed': False,
                'is_trial': True,
                'trial_end': subscriber['trial_end'],
                'subscription_tier': None,
            }

        if not self.secret_key:
            raise AppError("STRIPE_SECRET_KEY is not set")

        now = utcnow()
        customers = stripe.Customer.list(email=email, limit=1, api_key=self.secret_key)
        if not customers.data:
            log_step("No customer found, updating unsubscribed state")
            self.storage.upsert_subscriber({
                'email': email,
                'user_id': user['id'],
                'stripe_customer_id': None,
                'subscribed': False,
                'subscription_tier': None,
                'subscription_end': None,
                'is_trial': False,
                'updated_at': now,
            })
            return {'subscribed': False, 'is_trial': False, 'trial_end': None}

        customer_id = customers.data[0]['id']
        subscriptions = stripe.Subscription.list(customer=customer_id, status='active', limit=1,
                                                  api_key=self.secret_key)
        has_active = bool(subscriptions.data)
        tier = None
        subscription_end = None
        if has_active:
            subscription = subscriptions.data[0]
            subscription_end = _period_end(subscription)
            price_id = subscription['items']['data'][0]['price']['id']
            tier = tier_for_price(stripe.Price.retrieve(price_id, api_key=self.secret_key))
            log_step("Active subscription found", {'subscription_id': subscription['id'], 'tier': tier})

        update = {
            'email': email,
            'user_id': user['id'],
            'stripe_customer_id': customer_id,
            'subscribed': has_active,
            'subscription_tier': tier,
            'subscription_end': subscription_end,
            'is_trial': False if has_active else None,
            'updated_at': now,
        }
        if has_active and not (subscriber or {}).get('first_subscription_date') \
                and not (subscriber or {}).get('subscribed'):
            update['first_subscription_date'] = now
        self.storage.upsert_subscriber(update)

        return {
            'subscribed': has_active,
            'subscription_tier': tier,
            'subscription_end': subscription_end,
            'is_trial': False,
            'trial_end': None,
        }

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise WebhookSignatureError("No Stripe signature found")
        if not self.webhook_secret:
            raise AppError("Missing Stripe configuration")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise ValidationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookSignatureError("Invalid Stripe signature")

        log_step("Event verified", {'type': event['type'], 'id': event['id']})
        obj = event['data']['object']

        if event['type'] in ('customer.subscription.created', 'customer.subscription.updated'):
            self._subscription_changed(obj)
        elif event['type'] == 'customer.subscription.deleted':
            self._subscription_deleted(obj)
        elif event['type'] == 'invoice.payment_failed':
            self._payment_failed(obj)
        else:
            log_step("Unhandled event type", {'type': event['type']})

        return {'received': True}

    def _customer_email(self, customer_id: str) -> str:
        customer = stripe.Customer.retrieve(customer_id, api_key=self.secret_key)
        email = customer.get('email')
        if not email:
            raise ValidationError("Customer email not found")
        return email

    def _subscription_changed(self, subscription: Dict[str, Any]) -> None:
        email = self._customer_email(subscription['customer'])
        items = (subscription.get('items') or {}).get('data') or []
        tier = tier_for_price(items[0]['price']) if items else 'Monthly'
        active = subscription.get('status') == 'active'
        now = utcnow()

        existing = self.storage.get_subscriber(email)
        resubscribed = bool(existing) and not existing.get('subscribed') \
            and bool(existing.get('first_subscription_date')) and active
        first_date = (existing or {}).get('first_subscription_date') or (now if active else None)

        self.storage.upsert_subscriber({
            'email': email,
            'stripe_customer_id': subscription['customer'],
            'subscribed': active,
            'subscription_tier': tier,
            'subscription_end': _period_end(subscription),
            'first_subscription_date': first_date,
            'is_trial': False,
            'updated_at': now,
        })

        if existing and existing.get('user_id') and active:
            self.storage.insert_subscription_event({
                'user_id': existing['user_id'],
                'event_type': 'resubscribed' if resubscribed else 'subscribed',
                'subscription_tier': tier,
                'stripe_subscription_id': subscription['id'],
                'event_date': now,
            })
        log_step("Subscription updated", {'tier': tier, 'active': active})

    def _subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        email = self._customer_email(subscription['customer'])
        existing = self.storage.get_subscriber(email)
        now = utcnow()

        # Keep the cancellation date for duration calculations
        self.storage.upsert_subscriber({
            'email': email,
            'stripe_customer_id': subscription['customer'],
            'subscribed': False,
            'subscription_tier': None,
            'subscription_end': now,
            'is_trial': False,
            'updated_at': now,
        })
        if existing and existing.get('user_id'):
            self.storage.insert_subscription_event({
                'user_id': existing['user_id'],
                'event_type': 'cancelled',
                'subscription_tier': existing.get('subscription_tier'),
                'stripe_subscription_id': subscription['id'],
                'event_date': now,
            })
        log_step("Subscription cancelled")

    def _payment_failed(self, invoice: Dict[str, Any]) -> None:
        if not invoice.get('customer') or not invoice.get('subscription'):
            return
        email = self._customer_email(invoice['customer'])
        self.storage.update_subscriber(email, {'subscribed': False, 'updated_at': utcnow()})
        log_step("Payment failed, subscription deactivated")
