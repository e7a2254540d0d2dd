from flask import current_app
from datetime import timedelta
from quizlead_crm.models import (
    db, Lead, MessageLog, MessageTemplate, RemarketingRule, get_now_br,
    LEAD_STATUSES, MESSAGE_FAILED,
)
from quizlead_crm.errors import ValidationError, NotFound, MessagingError
from quizlead_crm.services.settings_service import SettingsService
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.services.whatsapp_service import WhatsAppService


class RemarketingService:
    @staticmethod
    def list_rules():
        return RemarketingRule.query.order_by(RemarketingRule.name).all()

    @staticmethod
    def get_rule(rule_id):
        rule = db.session.get(RemarketingRule, rule_id)
        if not rule:
            raise NotFound('Regra de remarketing não encontrada.')
        return rule

    @staticmethod
    def _clean(data, rule=None):
        name = str(data.get('name', rule.name if rule else '') or '').strip()
        if not name:
            raise ValidationError('Nome da regra é obrigatório.', field='name')

        trigger_status = data.get('trigger_status', rule.trigger_status if rule else None)
        if trigger_status not in LEAD_STATUSES:
            raise ValidationError('Status de gatilho inválido.', field='trigger_status')

        if 'days_without_activity' in data:
            raw_days = data['days_without_activity']
        elif rule:
            raw_days = rule.days_without_activity
        else:
            raw_days = SettingsService.get().remarketing_days
        try:
            days = int(raw_days)
        except (TypeError, ValueError):
            raise ValidationError('Informe um número de dias válido.', field='days_without_activity')
        if days < 1:
            raise ValidationError('O número de dias deve ser pelo menos 1.', field='days_without_activity')

        template_id = data.get('template_id', rule.template_id if rule else None)
        if not template_id or not db.session.get(MessageTemplate, template_id):
            raise ValidationError('Template inválido.', field='template_id')

        return {
            'name': name,
            'trigger_status': trigger_status,
            'days_without_activity': days,
            'template_id': template_id,
            'is_active': bool(data.get('is_active', rule.is_active if rule else True)),
        }

    @staticmethod
    def create_rule(data):
        rule = RemarketingRule(**RemarketingService._clean(data))
        db.session.add(rule)
        db.session.commit()
        current_app.logger.info(f"Remarketing rule created: {rule.id} ({rule.trigger_status}, {rule.days_without_activity}d)")
        return rule

    @staticmethod
    def update_rule(rule_id, data):
        rule = RemarketingService.get_rule(rule_id)
        for key, value in RemarketingService._clean(data, rule).items():
            setattr(rule, key, value)
        db.session.commit()
        return rule

    @staticmethod
    def delete_rule(rule_id):
        rule = RemarketingService.get_rule(rule_id)
        MessageLog.query.filter_by(rule_id=rule.id).update({'rule_id': None}, synchronize_session=False)
        db.session.delete(rule)
        db.session.commit()

    @staticmethod
    def run(now=None):
        """
        Sends the rule template to leads idle in the trigger status for at least
        `days_without_activity` days. A lead gets each rule at most once per
        period of inactivity (a new status or note restarts the clock).
        """
        result = {'rules': 0, 'sent': 0, 'failed': 0, 'skipped': 0}
        if not SettingsService.get().auto_remarketing:
            current_app.logger.info("Remarketing disabled in settings, skipping run")
            return result

        now = now or get_now_br()
        rules = RemarketingRule.query.filter_by(is_active=True).all()
        for rule in rules:
            result['rules'] += 1
            limit_date = now - timedelta(days=rule.days_without_activity)
            leads = Lead.query.filter(
                Lead.status == rule.trigger_status,
                Lead.updated_at <= limit_date
            ).all()

            for lead in leads:
                if lead.assigned_user_id is None:
                    result['skipped'] += 1
                    continue

                already_sent = MessageLog.query.filter(
                    MessageLog.lead_id == lead.id,
                    MessageLog.rule_id == rule.id,
                    MessageLog.status != MESSAGE_FAILED,
                    MessageLog.sent_at >= lead.updated_at
                ).first()
                if already_sent:
                    continue

                content = TemplateService.render(rule.template, lead)
                try:
                    WhatsAppService.send_to_lead(lead, content, template=rule.template, rule=rule)
                    result['sent'] += 1
                except MessagingError as e:
                    current_app.logger.error(f"Remarketing rule {rule.id} failed for lead {lead.id}: {e.message}")
                    result['failed'] += 1

        current_app.logger.info(f"Remarketing run finished: {result}")
        return result
