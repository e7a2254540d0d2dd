from flask import Blueprint
from flask_login import login_required
from quizlead_crm.models import db
from quizlead_crm.services.settings_service import SettingsService
from quizlead_crm.services.remarketing_service import RemarketingService
from quizlead_crm.services.whatsapp_service import WhatsAppService
from quizlead_crm.session import admin_required
from quizlead_crm.utils import api_response, json_body

settings_bp = Blueprint('settings', __name__)


@settings_bp.route('/api/settings', methods=['GET'])
@login_required
@admin_required
def get_settings():
    settings = SettingsService.get()
    db.session.commit()
    return api_response(data=settings.to_dict())


@settings_bp.route('/api/settings', methods=['PUT'])
@login_required
@admin_required
def update_settings():
    settings = SettingsService.update(json_body())
    return api_response(data=settings.to_dict())


@settings_bp.route('/api/settings/whatsapp', methods=['GET'])
@login_required
@admin_required
def get_whatsapp_config():
    config = WhatsAppService.get_config()
    if not config:
        return api_response(data={'configured': False})
    key = config['api_key']
    return api_response(data={
        'configured': True,
        'api_url': config['api_url'],
        'api_key': f"{key[:4]}****" if len(key) > 4 else '****',
        'system_instance': config['system_instance'],
    })


@settings_bp.route('/api/settings/whatsapp', methods=['PUT'])
@login_required
@admin_required
def save_whatsapp_config():
    data = json_body()
    WhatsAppService.save_config(data.get('api_url'), data.get('api_key'), data.get('system_instance'))
    return api_response(data={'configured': True})


# --- Remarketing rules ---

@settings_bp.route('/api/remarketing-rules', methods=['GET'])
@login_required
@admin_required
def list_rules():
    return api_response(data=[r.to_dict() for r in RemarketingService.list_rules()])


@settings_bp.route('/api/remarketing-rules', methods=['POST'])
@login_required
@admin_required
def create_rule():
    rule = RemarketingService.create_rule(json_body())
    return api_response(data=rule.to_dict(), status=201)


@settings_bp.route('/api/remarketing-rules/<int:id>', methods=['PATCH'])
@login_required
@admin_required
def update_rule(id):
    rule = RemarketingService.update_rule(id, json_body())
    return api_response(data=rule.to_dict())


@settings_bp.route('/api/remarketing-rules/<int:id>', methods=['DELETE'])
@login_required
@admin_required
def delete_rule(id):
    RemarketingService.delete_rule(id)
    return api_response(data={'id': id})
