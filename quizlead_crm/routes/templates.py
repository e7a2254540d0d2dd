from flask import Blueprint
from flask_login import login_required, current_user
from quizlead_crm.models import Lead, User
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.session import admin_required
from quizlead_crm.errors import ValidationError
from quizlead_crm.utils import api_response, json_body

templates_bp = Blueprint('templates', __name__)


@templates_bp.route('/api/templates', methods=['GET'])
@login_required
def list_templates():
    return api_response(data=[t.to_dict() for t in TemplateService.list_templates()])


@templates_bp.route('/api/templates', methods=['POST'])
@login_required
@admin_required
def create_template():
    data = json_body()
    template = TemplateService.create_template(data.get('name'), data.get('content'), data.get('is_default', False))
    return api_response(data=template.to_dict(), status=201)


@templates_bp.route('/api/templates/<int:id>', methods=['PATCH'])
@login_required
@admin_required
def update_template(id):
    template = TemplateService.update_template(id, json_body())
    return api_response(data=template.to_dict())


@templates_bp.route('/api/templates/<int:id>', methods=['DELETE'])
@login_required
@admin_required
def delete_template(id):
    TemplateService.delete_template(id)
    return api_response(data={'id': id})


@templates_bp.route('/api/templates/preview', methods=['POST'])
@login_required
def preview_template():
    """Renders content against a sample lead so the editor can show the final message."""
    data = json_body()
    content = (data.get('content') or '').strip()
    if not content:
        raise ValidationError('Conteúdo do template é obrigatório.', field='content')

    sample_lead = Lead(name='Maria Silva', phone='5511999999999', email='maria@exemplo.com')
    sample_user = User(name=current_user.name)
    return api_response(data={'preview': TemplateService.render(content, sample_lead, sample_user)})
