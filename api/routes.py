from flask import Flask, request, Response, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix
import logging
import sys

from .auth import cron_secret_required
from .dependencies import build_services, get_services
from .journal_api import journal_api
from .services.ingestion import InboundMessage
from .services.sms import twiml_response
from lib.config import Settings, get_settings
from lib.database import create_supabase_client
from lib.dates import utcnow
from lib.error_handler import AppError
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

WEBHOOK_ERROR_REPLY = "Sorry, we couldn't save your message. Please try again."

def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
        force=True  # Ensure our config takes precedence
    )

def twiml(message=None, status: int = 200) -> Response:
    return Response(twiml_response(message), status=status, mimetype='text/xml')

def create_app(settings: Settings = None, supabase_client=None, twilio_client=None) -> Flask:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    # Twilio signs the public URL, so trust the proxy's scheme and host
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    if supabase_client is None:
        logger.info("Initializing Supabase client...")
        supabase_client = create_supabase_client(settings)
    if twilio_client is None:
        logger.info("Initializing Twilio client...")
        twilio_client = TwilioClient(settings)

    app.extensions['journal_services'] = build_services(settings, supabase_client, twilio_client)
    app.register_blueprint(journal_api)
    register_error_handlers(app)
    register_routes(app)
    return app

def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        else:
            logger.warning(f"{type(error).__name__}: {error.message}")
        body = {'error': error.user_message}
        blocked_until = getattr(error, 'blocked_until', None) or getattr(error, 'locked_until', None)
        if blocked_until:
            body['retry_after'] = blocked_until.isoformat()
        return jsonify(body), error.status_code

def register_routes(app: Flask) -> None:
    @app.route("/", methods=['GET'])
    def home():
        return jsonify({"status": "ok", "message": "SMS journal service is running"})

    @app.route("/health", methods=['GET'])
    def health():
        return jsonify({"status": "healthy", "time": utcnow().isoformat()})

    @app.route("/webhook/sms", methods=['POST'])
    async def sms_webhook():
        services = get_services()
        form = request.form.to_dict()

        if services.settings.validate_twilio_signature:
            signature = request.headers.get('X-Twilio-Signature')
            if not services.twilio.validate_request(request.url, form, signature):
                logger.warning("Rejected SMS webhook with invalid Twilio signature")
                return Response("Invalid signature", status=403)

        try:
            message = InboundMessage.from_webhook(form)
            result = await services.ingestion.handle_inbound(message)
            logger.info(f"SMS webhook handled: {result.status}")
            return twiml(result.reply)
        except Exception as e:
            # A non-2xx lets the provider deliver the message again
            logger.error(f"Webhook error: {str(e)}", exc_info=True)
            return twiml(WEBHOOK_ERROR_REPLY, status=500)

    @app.route("/webhook/stripe", methods=['POST'])
    def stripe_webhook():
        result = get_services().subscriptions.handle_webhook(
            request.get_data(),
            request.headers.get('Stripe-Signature')
        )
        return jsonify(result)

    @app.route("/cron/reminders", methods=['POST'])
    @cron_secret_required
    async def cron_reminders():
        sent = await get_services().reminders.send_daily_reminders()
        return jsonify({"success": True, "sent": len(sent), "reminders": sent})

    @app.route("/cron/weekly-recap", methods=['POST'])
    @cron_secret_required
    async def cron_weekly_recap():
        sent = await get_services().reminders.send_weekly_recaps()
        return jsonify({"success": True, "sent": len(sent), "recaps": sent})

    @app.route("/cron/trial-reminders", methods=['POST'])
    @cron_secret_required
    async def cron_trial_reminders():
        sent = await get_services().reminders.send_trial_reminders()
        return jsonify({"success": True, "sent": len(sent), "reminders": sent})
