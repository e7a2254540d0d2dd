from flask import current_app
from werkzeug.security import generate_password_hash
from quizlead_crm.models import (
    db, User, Notification, OtpCode, LeadHistory, MessageLog,
    ROLE_USER, ROLE_ADMIN, WHATSAPP_OFFLINE,
)
from quizlead_crm.errors import ValidationError, NotFound
from quizlead_crm.services.lead_service import LeadService
from quizlead_crm.services.whatsapp_service import WhatsAppService

DEFAULT_DAILY_LIMIT = 20


def _as_non_negative_int(value, field):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError('Informe um número válido.', field=field)
    if number < 0:
        raise ValidationError('O valor não pode ser negativo.', field=field)
    return number


class UserService:
    @staticmethod
    def list_users(role=None):
        query = User.query
        if role:
            query = query.filter_by(role=role)
        return query.order_by(User.role, User.name).all()

    @staticmethod
    def get_user(user_id):
        user = db.session.get(User, user_id)
        if not user:
            raise NotFound('Usuário não encontrado.')
        return user

    @staticmethod
    def _clean_phone(phone, exclude_id=None):
        normalized = WhatsAppService.normalize_phone(phone)
        if not normalized or len(normalized) < 10:
            raise ValidationError('Telefone inválido.', field='phone')
        query = User.query.filter(User.phone == normalized)
        if exclude_id:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ValidationError('Já existe um usuário com este telefone.', field='phone')
        return normalized

    @staticmethod
    def _clean_email(email, exclude_id=None):
        email = (email or '').strip().lower() or None
        if not email:
            return None
        if '@' not in email:
            raise ValidationError('Email inválido.', field='email')
        query = User.query.filter(User.email == email)
        if exclude_id:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ValidationError('Já existe um usuário com este email.', field='email')
        return email

    @staticmethod
    def create_user(data):
        name = str(data.get('name') or '').strip()
        if not name:
            raise ValidationError('Nome é obrigatório.', field='name')

        user = User(
            name=name,
            phone=UserService._clean_phone(data.get('phone')),
            email=UserService._clean_email(data.get('email')),
            role=ROLE_USER,
            whatsapp_status=WHATSAPP_OFFLINE,
            whatsapp_instance=(data.get('whatsapp_instance') or '').strip() or None,
            daily_lead_limit=_as_non_negative_int(data.get('daily_lead_limit', DEFAULT_DAILY_LIMIT), 'daily_lead_limit'),
            priority=_as_non_negative_int(data.get('priority', 0), 'priority'),
            leads_received_today=0
        )
        db.session.add(user)
        db.session.commit()
        current_app.logger.info(f"User created: {user.id} ({user.name})")
        return user

    @staticmethod
    def create_admin(name, email, password, phone):
        email = UserService._clean_email(email)
        if not email:
            raise ValidationError('Email é obrigatório.', field='email')
        if not password or len(password) < 6:
            raise ValidationError('A senha deve ter pelo menos 6 caracteres.', field='password')
        admin = User(
            name=(name or 'Administrador').strip(),
            email=email,
            phone=UserService._clean_phone(phone),
            password_hash=generate_password_hash(password),
            role=ROLE_ADMIN
        )
        db.session.add(admin)
        db.session.commit()
        current_app.logger.info(f"Admin created: {admin.id} ({admin.email})")
        return admin

    @staticmethod
    def update_user(user_id, data):
        user = UserService.get_user(user_id)
        changes = {}

        if 'name' in data:
            name = str(data.get('name') or '').strip()
            if not name:
                raise ValidationError('Nome é obrigatório.', field='name')
            changes['name'] = name
        if 'phone' in data:
            changes['phone'] = UserService._clean_phone(data.get('phone'), exclude_id=user.id)
        if 'email' in data:
            changes['email'] = UserService._clean_email(data.get('email'), exclude_id=user.id)
        if 'daily_lead_limit' in data:
            changes['daily_lead_limit'] = _as_non_negative_int(data['daily_lead_limit'], 'daily_lead_limit')
        if 'priority' in data:
            changes['priority'] = _as_non_negative_int(data['priority'], 'priority')
        if 'whatsapp_instance' in data:
            changes['whatsapp_instance'] = (data.get('whatsapp_instance') or '').strip() or None

        for key, value in changes.items():
            setattr(user, key, value)
        db.session.commit()
        return user

    @staticmethod
    def delete_user(user_id, actor):
        user = UserService.get_user(user_id)
        if user.id == actor.user_id:
            raise ValidationError('Você não pode excluir a si mesmo.', field='user')
        detached = LeadService.unassign_all(user, actor)
        Notification.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        OtpCode.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        LeadHistory.query.filter_by(user_id=user.id).update({'user_id': None}, synchronize_session=False)
        MessageLog.query.filter_by(user_id=user.id).update({'user_id': None}, synchronize_session=False)
        db.session.delete(user)
        db.session.commit()
        current_app.logger.info(f"User {user_id} deleted ({detached} leads unassigned)")
