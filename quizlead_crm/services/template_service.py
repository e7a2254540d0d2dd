from flask import current_app
from quizlead_crm.models import db, MessageTemplate, RemarketingRule, get_now_br
from quizlead_crm.errors import ValidationError, NotFound
from quizlead_crm.services.settings_service import SettingsService


class TemplateService:
    @staticmethod
    def list_templates():
        return MessageTemplate.query.order_by(MessageTemplate.is_default.desc(), MessageTemplate.name).all()

    @staticmethod
    def get_template(template_id):
        template = db.session.get(MessageTemplate, template_id)
        if not template:
            raise NotFound('Template não encontrado.')
        return template

    @staticmethod
    def get_default():
        return MessageTemplate.query.filter_by(is_default=True).first()

    @staticmethod
    def _clean(name, content):
        name = (name or '').strip()
        content = (content or '').strip()
        if not name:
            raise ValidationError('Nome do template é obrigatório.', field='name')
        if not content:
            raise ValidationError('Conteúdo do template é obrigatório.', field='content')
        return name, content

    @staticmethod
    def _unset_other_defaults(template):
        # Concurrent default switches serialise on the settings row, so the
        # query below sees any default committed while we waited
        SettingsService.get(for_update=True)
        others = MessageTemplate.query.filter(
            MessageTemplate.id != template.id,
            MessageTemplate.is_default.is_(True)
        ).with_for_update().all()
        for other in others:
            other.is_default = False

    @staticmethod
    def create_template(name, content, is_default=False):
        name, content = TemplateService._clean(name, content)
        template = MessageTemplate(name=name, content=content, is_default=bool(is_default))
        db.session.add(template)
        db.session.flush()
        if template.is_default:
            TemplateService._unset_other_defaults(template)
        db.session.commit()
        current_app.logger.info(f"Template created: {template.id} (default={template.is_default})")
        return template

    @staticmethod
    def update_template(template_id, data):
        template = TemplateService.get_template(template_id)
        name, content = TemplateService._clean(
            data.get('name', template.name),
            data.get('content', template.content)
        )
        template.name = name
        template.content = content
        if 'is_default' in data:
            template.is_default = bool(data['is_default'])
            if template.is_default:
                TemplateService._unset_other_defaults(template)
                current_app.logger.info(f"Template {template.id} is now the default")
        template.updated_at = get_now_br()
        db.session.commit()
        return template

    @staticmethod
    def delete_template(template_id):
        template = TemplateService.get_template(template_id)
        if RemarketingRule.query.filter_by(template_id=template.id).count():
            raise ValidationError('Template em uso por regras de remarketing.', field='template')
        db.session.delete(template)
        db.session.commit()
        current_app.logger.info(f"Template deleted: {template_id}")

    @staticmethod
    def render(content, lead, user=None):
        """Replaces the known placeholders. Unknown ones are left untouched."""
        if isinstance(content, MessageTemplate):
            content = content.content
        if user is None and lead is not None:
            user = lead.assigned_user
        replacements = {
            '{{nome}}': lead.name if lead else '',
            '{{telefone}}': lead.phone if lead else '',
            '{{email}}': (lead.email or '') if lead else '',
            '{{quiz}}': lead.quiz.title if lead is not None and lead.quiz else '',
            '{{vendedor}}': user.name if user else '',
        }
        for key, val in replacements.items():
            content = content.replace(key, val)
        return content
