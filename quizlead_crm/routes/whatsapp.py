from flask import Blueprint, request, current_app
from quizlead_crm.services.whatsapp_service import WhatsAppService
from quizlead_crm.errors import AuthenticationError
from quizlead_crm.utils import api_response, json_body
import hmac

whatsapp_bp = Blueprint('whatsapp', __name__)


@whatsapp_bp.route('/api/whatsapp/webhook', methods=['POST'])
def webhook():
    """Evolution API events (message acks, connection updates). Authenticated by the instance apikey."""
    config = WhatsAppService.get_config()
    received = request.headers.get('apikey') or request.args.get('apikey') or ''
    if not config or not hmac.compare_digest(received.encode(), config['api_key'].encode()):
        current_app.logger.warning("Rejected WhatsApp webhook with invalid apikey")
        raise AuthenticationError('Webhook não autorizado.')

    payload = json_body()
    handled = WhatsAppService.handle_webhook(payload)
    return api_response(data={'handled': handled})
