from datetime import datetime, timedelta
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
import uuid

def get_now_br():
    return datetime.utcnow() - timedelta(hours=3)

def new_uuid():
    return str(uuid.uuid4())

db = SQLAlchemy()

# Enums (plain strings, portable across SQLite/Postgres)
ROLE_ADMIN = 'admin'
ROLE_USER = 'user'

WHATSAPP_ONLINE = 'online'
WHATSAPP_OFFLINE = 'offline'
WHATSAPP_CONNECTING = 'connecting'
WHATSAPP_STATUSES = (WHATSAPP_ONLINE, WHATSAPP_OFFLINE, WHATSAPP_CONNECTING)

LEAD_STATUS_NEW = 'novo'
LEAD_STATUS_CONTACTED = 'em_contato'
LEAD_STATUS_QUALIFIED = 'qualificado'
LEAD_STATUS_PROPOSAL = 'proposta'
LEAD_STATUS_WON = 'fechado'
LEAD_STATUS_LOST = 'perdido'

# Pipeline order matters (kanban columns)
LEAD_STATUSES = (
    LEAD_STATUS_NEW,
    LEAD_STATUS_CONTACTED,
    LEAD_STATUS_QUALIFIED,
    LEAD_STATUS_PROPOSAL,
    LEAD_STATUS_WON,
    LEAD_STATUS_LOST,
)
TERMINAL_STATUSES = (LEAD_STATUS_WON, LEAD_STATUS_LOST)

KANBAN_COLUMNS = [
    (LEAD_STATUS_NEW, 'Novo'),
    (LEAD_STATUS_CONTACTED, 'Em Contato'),
    (LEAD_STATUS_QUALIFIED, 'Qualificado'),
    (LEAD_STATUS_PROPOSAL, 'Proposta'),
    (LEAD_STATUS_WON, 'Fechado'),
    (LEAD_STATUS_LOST, 'Perdido'),
]

QUESTION_TEXT = 'text'
QUESTION_NUMBER = 'number'
QUESTION_MULTIPLE_CHOICE = 'multiple_choice'
QUESTION_YES_NO = 'yes_no'
QUESTION_TYPES = (QUESTION_TEXT, QUESTION_NUMBER, QUESTION_MULTIPLE_CHOICE, QUESTION_YES_NO)

CONDITION_OPERATORS = ('equals', 'not_equals', 'contains')
CONDITION_SHOW = 'show'
CONDITION_SKIP_TO = 'skip_to'
CONDITION_ACTIONS = (CONDITION_SHOW, CONDITION_SKIP_TO)

YES_NO_VALUES = ('sim', 'nao')

DISTRIBUTION_ROUND_ROBIN = 'round_robin'
DISTRIBUTION_PRIORITY = 'priority'
DISTRIBUTION_AVAILABILITY = 'availability'
DISTRIBUTION_METHODS = (DISTRIBUTION_ROUND_ROBIN, DISTRIBUTION_PRIORITY, DISTRIBUTION_AVAILABILITY)

MESSAGE_SENT = 'sent'
MESSAGE_DELIVERED = 'delivered'
MESSAGE_READ = 'read'
MESSAGE_FAILED = 'failed'


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True) # Admin password login only
    phone = db.Column(db.String(20), unique=True, nullable=False) # Digits, 55 prefix (OTP login)
    password_hash = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)

    # WhatsApp / Distribution
    whatsapp_status = db.Column(db.String(20), nullable=False, default=WHATSAPP_OFFLINE)
    whatsapp_instance = db.Column(db.String(100), nullable=True) # Evolution API instance name
    daily_lead_limit = db.Column(db.Integer, nullable=False, default=20)
    leads_received_today = db.Column(db.Integer, nullable=False, default=0)
    priority = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=get_now_br)
    last_login = db.Column(db.DateTime, nullable=True)

    leads = db.relationship('Lead', backref='assigned_user', lazy=True)

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    @property
    def remaining_capacity(self):
        return self.daily_lead_limit - self.leads_received_today

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'whatsapp_status': self.whatsapp_status,
            'whatsapp_instance': self.whatsapp_instance,
            'daily_lead_limit': self.daily_lead_limit,
            'leads_received_today': self.leads_received_today,
            'priority': self.priority,
            'created_at': _iso(self.created_at),
        }


class Quiz(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    slug = db.Column(db.String(200), unique=True, nullable=False) # Public route /q/<slug>
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=get_now_br)
    updated_at = db.Column(db.DateTime, default=get_now_br, onupdate=get_now_br)

    steps = db.relationship('QuizStep', backref='quiz', lazy=True,
                            order_by='QuizStep.order', cascade='all, delete-orphan')
    leads = db.relationship('Lead', backref='quiz', lazy=True)

    def to_dict(self, include_steps=True):
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'slug': self.slug,
            'is_published': self.is_published,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_steps:
            data['steps'] = [s.to_dict() for s in sorted(self.steps, key=lambda s: s.order)]
        else:
            data['step_count'] = len(self.steps)
            data['question_count'] = sum(len(s.questions) for s in self.steps)
            data['lead_count'] = len(self.leads)
        return data


class QuizStep(db.Model):
    __tablename__ = 'quiz_step'
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    quiz_id = db.Column(db.String(36), db.ForeignKey('quiz.id'), nullable=False)
    order = db.Column(db.Integer, nullable=False) # 1-based, contiguous
    title = db.Column(db.String(200), nullable=False, default='')

    questions = db.relationship('QuizQuestion', backref='step', lazy=True,
                                order_by='QuizQuestion.order', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'order': self.order,
            'title': self.title,
            'questions': [q.to_dict() for q in sorted(self.questions, key=lambda q: q.order)],
        }


class QuizQuestion(db.Model):
    __tablename__ = 'quiz_question'
    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    step_id = db.Column(db.String(36), db.ForeignKey('quiz_step.id'), nullable=False)
    order = db.Column(db.Integer, nullable=False) # 1-based, contiguous within the step
    type = db.Column(db.String(20), nullable=False, default=QUESTION_TEXT)
    prompt = db.Column(db.String(500), nullable=False, default='')
    required = db.Column(db.Boolean, nullable=False, default=True)
    # Only set for multiple_choice (list of strings)
    options = db.Column(db.JSON, nullable=True)
    # {"question_id", "operator", "value", "action", "target_step_id"}
    conditional_logic = db.Column(db.JSON, nullable=True)

    def to_dict(self):
        data = {
            'id': self.id,
            'step_id': self.step_id,
            'order': self.order,
            'type': self.type,
            'prompt': self.prompt,
            'required': self.required,
            'conditional_logic': self.conditional_logic,
        }
        if self.type == QUESTION_MULTIPLE_CHOICE:
            data['options'] = list(self.options or [])
        return data


class Lead(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.String(36), db.ForeignKey('quiz.id'), nullable=False)
    assigned_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True) # Null = pending manual assignment

    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=LEAD_STATUS_NEW)

    answers = db.Column(db.JSON, nullable=False, default=list) # [{"question_id": ..., "value": ...}]
    utm_source = db.Column(db.String(100), nullable=True)
    utm_medium = db.Column(db.String(100), nullable=True)
    utm_campaign = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=False, default='')

    created_at = db.Column(db.DateTime, default=get_now_br)
    updated_at = db.Column(db.DateTime, default=get_now_br, onupdate=get_now_br)

    history = db.relationship('LeadHistory', backref='lead', lazy=True,
                              order_by='LeadHistory.id', cascade='all, delete-orphan')
    messages = db.relationship('MessageLog', backref='lead', lazy=True,
                               order_by='MessageLog.id', cascade='all, delete-orphan')

    @property
    def utm(self):
        return {
            'source': self.utm_source,
            'medium': self.utm_medium,
            'campaign': self.utm_campaign,
        }

    @property
    def answer_map(self):
        return {a['question_id']: a['value'] for a in (self.answers or [])}

    def to_dict(self):
        return {
            'id': self.id,
            'quiz_id': self.quiz_id,
            'assigned_user_id': self.assigned_user_id,
            'name': self.name,
            'phone': self.phone,
            'email': self.email,
            'status': self.status,
            'answers': [dict(a) for a in (self.answers or [])],
            'utm': self.utm,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data):
        """Rebuilds a (transient) Lead from the output of to_dict()."""
        utm = data.get('utm') or {}
        lead = cls(
            id=data.get('id'),
            quiz_id=data['quiz_id'],
            assigned_user_id=data.get('assigned_user_id'),
            name=data['name'],
            phone=data['phone'],
            email=data.get('email'),
            status=data.get('status', LEAD_STATUS_NEW),
            answers=[{'question_id': a['question_id'], 'value': a['value']} for a in data.get('answers', [])],
            utm_source=utm.get('source'),
            utm_medium=utm.get('medium'),
            utm_campaign=utm.get('campaign'),
            notes=data.get('notes') or '',
        )
        if data.get('created_at'):
            lead.created_at = datetime.fromisoformat(data['created_at'])
        if data.get('updated_at'):
            lead.updated_at = datetime.fromisoformat(data['updated_at'])
        return lead


class LeadHistory(db.Model):
    __tablename__ = 'lead_history'
    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey('lead.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True) # Null = system
    action = db.Column(db.String(30), nullable=False) # created, assigned, unassigned, status_changed, reopened, note_updated
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now_br)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'lead_id': self.lead_id,
            'user_id': self.user_id,
            'user_name': self.user.name if self.user else None,
            'action': self.action,
            'from_status': self.from_status,
            'to_status': self.to_status,
            'note': self.note,
            'created_at': _iso(self.created_at),
        }


class MessageTemplate(db.Model):
    __tablename__ = 'message_template'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    content = db.Column(db.Text, nullable=False) # Placeholders: {{nome}}, {{vendedor}}, ...
    is_default = db.Column(db.Boolean, nullable=False, default=False) # At most one
    created_at = db.Column(db.DateTime, default=get_now_br)
    updated_at = db.Column(db.DateTime, default=get_now_br, onupdate=get_now_br)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'content': self.content,
            'is_default': self.is_default,
            'created_at': _iso(self.created_at),
        }


class MessageLog(db.Model):
    __tablename__ = 'message_log'
    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey('lead.id'), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey('message_template.id', ondelete='SET NULL'), nullable=True)
    rule_id = db.Column(db.Integer, db.ForeignKey('remarketing_rule.id', ondelete='SET NULL'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True) # Sender instance owner
    content = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=MESSAGE_SENT) # sent, delivered, read, failed
    external_id = db.Column(db.String(100), nullable=True) # Evolution API message key
    error = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime, default=get_now_br)

    def to_dict(self):
        return {
            'id': self.id,
            'lead_id': self.lead_id,
            'template_id': self.template_id,
            'rule_id': self.rule_id,
            'content': self.content,
            'status': self.status,
            'error': self.error,
            'sent_at': _iso(self.sent_at),
        }


class RemarketingRule(db.Model):
    __tablename__ = 'remarketing_rule'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    trigger_status = db.Column(db.String(20), nullable=False)
    days_without_activity = db.Column(db.Integer, nullable=False, default=1)
    template_id = db.Column(db.Integer, db.ForeignKey('message_template.id'), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=get_now_br)

    template = db.relationship('MessageTemplate')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'trigger_status': self.trigger_status,
            'days_without_activity': self.days_without_activity,
            'template_id': self.template_id,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }


class CrmSettings(db.Model):
    __tablename__ = 'crm_settings'
    id = db.Column(db.Integer, primary_key=True)

    # Lead distribution
    distribution_method = db.Column(db.String(20), nullable=False, default=DISTRIBUTION_ROUND_ROBIN)
    verify_whatsapp_active = db.Column(db.Boolean, nullable=False, default=True)
    respect_daily_limit = db.Column(db.Boolean, nullable=False, default=True)
    auto_fallback = db.Column(db.Boolean, nullable=False, default=True)

    # Automation
    auto_welcome = db.Column(db.Boolean, nullable=False, default=True)
    auto_remarketing = db.Column(db.Boolean, nullable=False, default=True)
    remarketing_days = db.Column(db.Integer, nullable=False, default=1)

    # Notifications
    notify_new_lead = db.Column(db.Boolean, nullable=False, default=True)
    notify_whatsapp_offline = db.Column(db.Boolean, nullable=False, default=True)

    updated_at = db.Column(db.DateTime, default=get_now_br, onupdate=get_now_br)

    def to_dict(self):
        return {
            'distribution_method': self.distribution_method,
            'verify_whatsapp_active': self.verify_whatsapp_active,
            'respect_daily_limit': self.respect_daily_limit,
            'auto_fallback': self.auto_fallback,
            'auto_welcome': self.auto_welcome,
            'auto_remarketing': self.auto_remarketing,
            'remarketing_days': self.remarketing_days,
            'notify_new_lead': self.notify_new_lead,
            'notify_whatsapp_offline': self.notify_whatsapp_offline,
        }


class DistributionCursor(db.Model):
    __tablename__ = 'distribution_cursor'
    key = db.Column(db.String(50), primary_key=True) # One row per distribution method
    last_user_id = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, default=get_now_br, onupdate=get_now_br)


class Integration(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    service = db.Column(db.String(50), unique=True, nullable=False) # e.g. 'evolution_api'
    api_key = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    config_json = db.Column(db.Text, nullable=True) # api_url, system_instance
    last_error = db.Column(db.Text, nullable=True)
    last_sync_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False) # lead_assigned, lead_unassigned, whatsapp_offline
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(500), nullable=True)
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=get_now_br)

    user = db.relationship('User', backref='notifications')


class OtpCode(db.Model):
    __tablename__ = 'otp_code'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    code_hash = db.Column(db.String(200), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0) # Wrong guesses; burned at OTP_MAX_ATTEMPTS
    used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now_br)

    user = db.relationship('User')
