from quizlead_crm.models import (
    db, Integration, MessageLog, User, get_now_br,
    WHATSAPP_ONLINE, WHATSAPP_OFFLINE, WHATSAPP_CONNECTING, WHATSAPP_STATUSES,
    MESSAGE_SENT, MESSAGE_DELIVERED, MESSAGE_READ, MESSAGE_FAILED,
)
from quizlead_crm.errors import MessagingError, ValidationError
from quizlead_crm.utils import update_integration_health, retry_request, notify_admins
from quizlead_crm.services.settings_service import SettingsService
from flask import current_app
import requests
import json
import re

SERVICE_NAME = 'evolution_api'

# Evolution API connection states
CONNECTION_STATES = {
    'open': WHATSAPP_ONLINE,
    'connecting': WHATSAPP_CONNECTING,
}

# Evolution API message ack values
MESSAGE_ACKS = {
    'SERVER_ACK': MESSAGE_SENT,
    'DELIVERY_ACK': MESSAGE_DELIVERED,
    'READ': MESSAGE_READ,
    'PLAYED': MESSAGE_READ,
    'ERROR': MESSAGE_FAILED,
}


class WhatsAppService:
    @staticmethod
    def get_config():
        """Evolution API credentials: the active Integration row, falling back to the environment."""
        integration = Integration.query.filter_by(service=SERVICE_NAME, is_active=True).first()
        api_url, api_key, system_instance = None, None, None
        if integration:
            try:
                config = json.loads(integration.config_json) if integration.config_json else {}
            except ValueError as e:
                current_app.logger.error(f"Error parsing Evolution API config: {e}")
                config = {}
            api_url = config.get('api_url')
            system_instance = config.get('system_instance')
            api_key = integration.api_key

        api_url = api_url or current_app.config.get('EVOLUTION_API_URL')
        api_key = api_key or current_app.config.get('EVOLUTION_API_KEY')
        system_instance = system_instance or current_app.config.get('EVOLUTION_SYSTEM_INSTANCE')

        if not api_url or not api_key:
            return None
        return {
            'api_url': api_url.rstrip('/'),
            'api_key': api_key,
            'system_instance': system_instance,
        }

    @staticmethod
    def save_config(api_url, api_key, system_instance=None):
        api_url = (api_url or '').strip()
        api_key = (api_key or '').strip()
        if not api_url or not api_key:
            raise ValidationError('Preencha a URL e a API Key.', field='api_url' if not api_url else 'api_key')

        integration = Integration.query.filter_by(service=SERVICE_NAME).first()
        if not integration:
            integration = Integration(service=SERVICE_NAME)
            db.session.add(integration)
        integration.api_key = api_key
        integration.is_active = True
        integration.config_json = json.dumps({
            'api_url': api_url.rstrip('/'),
            'system_instance': (system_instance or '').strip() or None,
        })
        integration.last_error = None
        db.session.commit()
        current_app.logger.info("Evolution API configuration saved")
        return integration

    @staticmethod
    def normalize_phone(phone):
        """Cleans phone number: removes chars, ensures 55 prefix (BR standard)."""
        if not phone: return None

        # Remove non-digits
        clean = re.sub(r'\D', '', str(phone))

        if not clean: return None

        # Basic Brazil rule: if 10 or 11 chars, add 55
        if len(clean) in [10, 11]:
            clean = '55' + clean

        return clean

    @staticmethod
    def instance_name(user):
        return user.whatsapp_instance or f"user-{user.id}"

    @staticmethod
    def send_text(instance, phone, text):
        """Sends a plain text message through an Evolution API instance. Returns the external message id."""
        number = WhatsAppService.normalize_phone(phone)
        if not number:
            raise MessagingError('Contato sem telefone válido.')

        if current_app.config.get('WHATSAPP_DRY_RUN'):
            current_app.logger.info(f"[dry-run] WhatsApp via {instance} to {number}: {text}")
            return None

        config = WhatsAppService.get_config()
        if not config:
            raise MessagingError('WhatsApp não configurado.')

        url = f"{config['api_url']}/message/sendText/{instance}"
        headers = {'apikey': config['api_key']}

        @retry_request()
        def perform_send(payload_data):
            return requests.post(url, json=payload_data, headers=headers, timeout=15)

        try:
            res = perform_send({'number': number, 'text': text})
        except requests.exceptions.RequestException as e:
            current_app.logger.error(f"Evolution API Send Error: {e}")
            update_integration_health(SERVICE_NAME, error=str(e))
            raise MessagingError(f"Falha ao enviar mensagem: {e}")

        try:
            data = res.json()
        except ValueError:
            data = {}

        if res.status_code >= 400:
            err_text = f"Evolution API Error ({res.status_code}): {data.get('message') or data.get('error') or res.text}"
            current_app.logger.error(err_text)
            update_integration_health(SERVICE_NAME, error=err_text)
            raise MessagingError(err_text)

        update_integration_health(SERVICE_NAME)
        return (data.get('key') or {}).get('id')

    @staticmethod
    def send_to_lead(lead, content, template=None, rule=None, sender=None):
        """Sends `content` to the lead from the sender's instance and records it in MessageLog."""
        sender = sender or lead.assigned_user
        if not sender:
            raise MessagingError('Lead sem vendedor atribuído.')

        log = MessageLog(
            lead_id=lead.id,
            template_id=template.id if template else None,
            rule_id=rule.id if rule else None,
            user_id=sender.id,
            content=content
        )
        db.session.add(log)

        try:
            log.external_id = WhatsAppService.send_text(WhatsAppService.instance_name(sender), lead.phone, content)
            log.status = MESSAGE_SENT
        except MessagingError as e:
            log.status = MESSAGE_FAILED
            log.error = e.message
            db.session.commit()
            raise

        log.sent_at = get_now_br()
        db.session.commit()
        return log

    @staticmethod
    def send_system_message(phone, text):
        """Messages sent on behalf of the platform (OTP codes)."""
        config = WhatsAppService.get_config()
        instance = (config or {}).get('system_instance') or current_app.config.get('EVOLUTION_SYSTEM_INSTANCE')
        return WhatsAppService.send_text(instance, phone, text)

    @staticmethod
    def set_status(user, status):
        if status not in WHATSAPP_STATUSES:
            raise ValidationError('Status de WhatsApp inválido.', field='whatsapp_status')
        previous = user.whatsapp_status
        if previous == status:
            return user

        user.whatsapp_status = status
        current_app.logger.info(f"WhatsApp status of user {user.id}: {previous} -> {status}")

        if status == WHATSAPP_OFFLINE and previous == WHATSAPP_ONLINE:
            if SettingsService.get().notify_whatsapp_offline:
                notify_admins(
                    'whatsapp_offline',
                    'WhatsApp desconectado',
                    f"O WhatsApp de {user.name} ficou offline. Novos leads não serão distribuídos para este vendedor."
                )
        db.session.commit()
        return user

    @staticmethod
    def connection_state(user):
        """Queries the instance state and persists it on the user."""
        if current_app.config.get('WHATSAPP_DRY_RUN'):
            return user.whatsapp_status

        config = WhatsAppService.get_config()
        if not config:
            raise MessagingError('WhatsApp não configurado.')

        url = f"{config['api_url']}/instance/connectionState/{WhatsAppService.instance_name(user)}"

        @retry_request()
        def perform_fetch():
            return requests.get(url, headers={'apikey': config['api_key']}, timeout=10)

        try:
            res = perform_fetch()
            data = res.json() if res.status_code < 400 else {}
        except (requests.exceptions.RequestException, ValueError) as e:
            current_app.logger.error(f"Evolution API connectionState error: {e}")
            update_integration_health(SERVICE_NAME, error=str(e))
            data = {}

        state = (data.get('instance') or {}).get('state') or data.get('state')
        WhatsAppService.set_status(user, CONNECTION_STATES.get(state, WHATSAPP_OFFLINE))
        return user.whatsapp_status

    @staticmethod
    def handle_webhook(payload):
        """Applies Evolution API events: message acks and connection updates."""
        event = str(payload.get('event') or '').lower().replace('_', '.')
        data = payload.get('data') or {}

        if event == 'connection.update':
            instance = payload.get('instance') or data.get('instance')
            user = WhatsAppService._user_for_instance(instance)
            if not user:
                current_app.logger.warning(f"Webhook for unknown instance: {instance}")
                return False
            WhatsAppService.set_status(user, CONNECTION_STATES.get(data.get('state'), WHATSAPP_OFFLINE))
            return True

        if event == 'messages.update':
            updates = data if isinstance(data, list) else [data]
            changed = False
            for item in updates:
                key_id = item.get('keyId') or (item.get('key') or {}).get('id')
                status = MESSAGE_ACKS.get(str(item.get('status') or '').upper())
                if not key_id or not status:
                    continue
                log = MessageLog.query.filter_by(external_id=key_id).first()
                if log:
                    log.status = status
                    changed = True
            if changed:
                db.session.commit()
            return changed

        current_app.logger.debug(f"Ignoring webhook event: {event}")
        return False

    @staticmethod
    def _user_for_instance(instance):
        if not instance:
            return None
        user = User.query.filter_by(whatsapp_instance=instance).first()
        if user:
            return user
        match = re.match(r'^user-(\d+)$', str(instance))
        if match:
            return db.session.get(User, int(match.group(1)))
        return None
