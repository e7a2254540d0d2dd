from flask import Blueprint, request
from flask_login import login_required
from quizlead_crm.services.lead_service import LeadService
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.services.whatsapp_service import WhatsAppService
from quizlead_crm.session import current_actor, admin_required
from quizlead_crm.errors import ValidationError, Forbidden
from quizlead_crm.utils import api_response, json_body

leads_bp = Blueprint('leads', __name__)


def _filters():
    return {
        'status': request.args.get('status') or None,
        'assigned_user_id': request.args.get('user_id', type=int),
        'quiz_id': request.args.get('quiz_id') or None,
        'search': request.args.get('q') or None,
        'unassigned': request.args.get('unassigned') in ('1', 'true'),
    }


@leads_bp.route('/api/leads', methods=['GET'])
@login_required
def list_leads():
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 20, type=int), 100)

    pagination = LeadService.query_leads(current_actor(), **_filters())\
        .paginate(page=page, per_page=per_page, error_out=False)

    return api_response(data={
        'items': [l.to_dict() for l in pagination.items],
        'page': pagination.page,
        'pages': pagination.pages,
        'total': pagination.total,
    })


@leads_bp.route('/api/leads/kanban', methods=['GET'])
@login_required
def kanban():
    return api_response(data=LeadService.kanban(current_actor(), **_filters()))


@leads_bp.route('/api/leads/<int:id>', methods=['GET'])
@login_required
def lead_details(id):
    lead = LeadService.get_lead(id, current_actor())
    data = lead.to_dict()
    data['assigned_user'] = lead.assigned_user.to_dict() if lead.assigned_user else None
    data['quiz_title'] = lead.quiz.title if lead.quiz else None
    data['history'] = [h.to_dict() for h in lead.history]
    data['messages'] = [m.to_dict() for m in lead.messages]
    return api_response(data=data)


@leads_bp.route('/api/leads/<int:id>/status', methods=['PATCH'])
@login_required
def update_status(id):
    actor = current_actor()
    data = json_body()
    lead = LeadService.get_lead(id, actor)
    lead = LeadService.transition(lead, data.get('status'), actor, note=data.get('note'))
    return api_response(data=lead.to_dict())


@leads_bp.route('/api/leads/<int:id>/notes', methods=['PATCH'])
@login_required
def update_notes(id):
    actor = current_actor()
    data = json_body()
    lead = LeadService.get_lead(id, actor)
    lead = LeadService.update_notes(lead, data.get('notes'), actor)
    return api_response(data=lead.to_dict())


@leads_bp.route('/api/leads/<int:id>/assign', methods=['POST'])
@login_required
@admin_required
def assign_lead(id):
    actor = current_actor()
    data = json_body()
    lead = LeadService.get_lead(id, actor)
    lead = LeadService.assign_manually(lead, data.get('user_id'), actor)
    return api_response(data=lead.to_dict())


@leads_bp.route('/api/leads/<int:id>/history', methods=['GET'])
@login_required
def lead_history(id):
    lead = LeadService.get_lead(id, current_actor())
    return api_response(data=[h.to_dict() for h in lead.history])


@leads_bp.route('/api/leads/<int:id>/messages', methods=['POST'])
@login_required
def send_message(id):
    """Sends a WhatsApp message to the lead (free text or a template)."""
    actor = current_actor()
    lead = LeadService.get_lead(id, actor)
    data = json_body()

    template = None
    if data.get('template_id'):
        template = TemplateService.get_template(data['template_id'])
        content = TemplateService.render(template, lead)
    else:
        content = (data.get('content') or '').strip()
    if not content:
        raise ValidationError('Mensagem vazia.', field='content')

    if not lead.assigned_user:
        raise Forbidden('Atribua o lead a um vendedor antes de enviar mensagens.')

    log = WhatsAppService.send_to_lead(lead, content, template=template)
    return api_response(data=log.to_dict(), status=201)
