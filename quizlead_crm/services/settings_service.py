from flask import current_app
from quizlead_crm.models import db, CrmSettings, DISTRIBUTION_METHODS
from quizlead_crm.errors import ValidationError

BOOLEAN_FIELDS = (
    'verify_whatsapp_active',
    'respect_daily_limit',
    'auto_fallback',
    'auto_welcome',
    'auto_remarketing',
    'notify_new_lead',
    'notify_whatsapp_offline',
)

REMARKETING_DAYS_MIN = 1
REMARKETING_DAYS_MAX = 30


class SettingsService:
    @staticmethod
    def get(for_update=False):
        """Returns the single settings row, creating it with the defaults on first use.

        With `for_update` the row is locked until the caller commits. Writers that must
        not interleave (the default template switch) serialise on it.
        """
        query = CrmSettings.query.order_by(CrmSettings.id)
        if for_update:
            query = query.with_for_update()
        settings = query.first()
        if not settings:
            settings = CrmSettings()
            db.session.add(settings)
            db.session.flush()
        return settings

    @staticmethod
    def update(data):
        settings = SettingsService.get()

        method = None
        if 'distribution_method' in data:
            method = str(data['distribution_method'] or '').replace('-', '_')
            if method not in DISTRIBUTION_METHODS:
                raise ValidationError('Método de distribuição inválido.', field='distribution_method')

        days = None
        if 'remarketing_days' in data:
            try:
                days = int(data['remarketing_days'])
            except (TypeError, ValueError):
                raise ValidationError('Informe um número de dias válido.', field='remarketing_days')
            if days < REMARKETING_DAYS_MIN or days > REMARKETING_DAYS_MAX:
                raise ValidationError(f'O tempo de remarketing deve estar entre {REMARKETING_DAYS_MIN} e {REMARKETING_DAYS_MAX} dias.',
                                      field='remarketing_days')

        if method:
            settings.distribution_method = method
        if days is not None:
            settings.remarketing_days = days
        for field in BOOLEAN_FIELDS:
            if field in data:
                setattr(settings, field, bool(data[field]))

        db.session.commit()
        current_app.logger.info(f"Settings updated: {settings.to_dict()}")
        return settings
