from flask import current_app
from sqlalchemy import or_, update
from quizlead_crm.models import (
    db, Lead, LeadHistory, User, get_now_br,
    ROLE_USER, LEAD_STATUSES, TERMINAL_STATUSES, KANBAN_COLUMNS, LEAD_STATUS_WON,
)
from quizlead_crm.errors import InvalidStatus, Forbidden, NotFound, ValidationError
from quizlead_crm.utils import create_notification


class LeadService:
    @staticmethod
    def ensure_access(lead, actor):
        if actor.is_admin:
            return
        if lead.assigned_user_id != actor.user_id:
            raise Forbidden('Você não tem permissão para acessar este lead.')

    @staticmethod
    def get_lead(lead_id, actor):
        lead = db.session.get(Lead, lead_id)
        if not lead:
            raise NotFound('Lead não encontrado.')
        LeadService.ensure_access(lead, actor)
        return lead

    @staticmethod
    def query_leads(actor, status=None, assigned_user_id=None, quiz_id=None, search=None, unassigned=False):
        query = Lead.query
        if not actor.is_admin:
            query = query.filter(Lead.assigned_user_id == actor.user_id)
        elif unassigned:
            query = query.filter(Lead.assigned_user_id.is_(None))
        elif assigned_user_id:
            query = query.filter(Lead.assigned_user_id == assigned_user_id)

        if status:
            if status not in LEAD_STATUSES:
                raise InvalidStatus('Status inválido.', field='status')
            query = query.filter(Lead.status == status)
        if quiz_id:
            query = query.filter(Lead.quiz_id == quiz_id)
        if search:
            term = f"%{search.strip()}%"
            query = query.filter(or_(Lead.name.ilike(term), Lead.phone.ilike(term), Lead.email.ilike(term)))
        return query.order_by(Lead.created_at.desc(), Lead.id.desc())

    @staticmethod
    def list_leads(actor, **filters):
        return LeadService.query_leads(actor, **filters).all()

    @staticmethod
    def kanban(actor, **filters):
        filters.pop('status', None)
        leads = LeadService.list_leads(actor, **filters)
        columns = []
        for status, label in KANBAN_COLUMNS:
            column_leads = [l for l in leads if l.status == status]
            columns.append({
                'id': status,
                'label': label,
                'count': len(column_leads),
                'leads': [l.to_dict() for l in column_leads],
            })
        return columns

    @staticmethod
    def transition(lead, new_status, actor, note=None):
        if new_status not in LEAD_STATUSES:
            raise InvalidStatus('Status inválido.', field='status')
        LeadService.ensure_access(lead, actor)

        old_status = lead.status
        if old_status == new_status:
            return lead

        # Terminal statuses may be reopened; the history keeps it explicit
        action = 'reopened' if old_status in TERMINAL_STATUSES else 'status_changed'
        lead.status = new_status
        lead.updated_at = get_now_br()
        lead.history.append(LeadHistory(
            user_id=actor.user_id,
            action=action,
            from_status=old_status,
            to_status=new_status,
            note=(note or '').strip() or None
        ))
        db.session.commit()
        current_app.logger.info(f"Lead {lead.id}: {old_status} -> {new_status} by user {actor.user_id}")
        return lead

    @staticmethod
    def update_notes(lead, notes, actor):
        LeadService.ensure_access(lead, actor)
        lead.notes = notes or ''
        lead.updated_at = get_now_br()
        lead.history.append(LeadHistory(user_id=actor.user_id, action='note_updated'))
        db.session.commit()
        return lead

    @staticmethod
    def assign_manually(lead, user_id, actor):
        if not actor.is_admin:
            raise Forbidden('Apenas administradores podem atribuir leads.')

        user = db.session.get(User, user_id) if user_id else None
        if not user:
            raise NotFound('Vendedor não encontrado.')
        if user.role != ROLE_USER:
            raise ValidationError('Leads só podem ser atribuídos a vendedores.', field='user_id')
        if lead.assigned_user_id == user.id:
            return lead

        previous = lead.assigned_user
        db.session.execute(
            update(User).where(User.id == user.id)
            .values(leads_received_today=User.leads_received_today + 1)
            .execution_options(synchronize_session=False)
        )
        lead.assigned_user_id = user.id
        lead.updated_at = get_now_br()
        note = f"Atribuído manualmente a {user.name}"
        if previous:
            note += f" (antes: {previous.name})"
        lead.history.append(LeadHistory(user_id=actor.user_id, action='assigned', note=note))
        create_notification(
            user.id,
            'lead_assigned',
            'Novo lead atribuído',
            f"O lead {lead.name} foi atribuído a você."
        )
        db.session.commit()
        current_app.logger.info(f"Lead {lead.id} manually assigned to user {user.id} by {actor.user_id}")
        return lead

    @staticmethod
    def unassign_all(user, actor=None):
        """Detaches the user's leads (used when the user is removed)."""
        leads = Lead.query.filter_by(assigned_user_id=user.id).all()
        for lead in leads:
            lead.assigned_user_id = None
            lead.updated_at = get_now_br()
            lead.history.append(LeadHistory(
                user_id=actor.user_id if actor else None,
                action='unassigned',
                note=f"Vendedor {user.name} removido"
            ))
        return len(leads)

    @staticmethod
    def dashboard(actor):
        leads = LeadService.list_leads(actor)
        total = len(leads)
        closed = len([l for l in leads if l.status == LEAD_STATUS_WON])

        by_status = {status: 0 for status in LEAD_STATUSES}
        for lead in leads:
            by_status[lead.status] = by_status.get(lead.status, 0) + 1

        data = {
            'total_leads': total,
            'closed_leads': closed,
            'conversion_rate': round(closed / total * 100) if total else 0,
            'leads_by_status': [
                {'status': status, 'label': label, 'count': by_status.get(status, 0)}
                for status, label in KANBAN_COLUMNS
            ],
        }

        if actor.is_admin:
            users = User.query.filter_by(role=ROLE_USER).order_by(User.name).all()
            data['leads_by_user'] = [
                {
                    'user_id': u.id,
                    'name': u.name,
                    'leads': len([l for l in leads if l.assigned_user_id == u.id]),
                    'leads_today': u.leads_received_today,
                    'daily_lead_limit': u.daily_lead_limit,
                    'whatsapp_status': u.whatsapp_status,
                }
                for u in users
            ]
            data['unassigned_leads'] = len([l for l in leads if l.assigned_user_id is None])
        return data
