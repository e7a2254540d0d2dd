from flask import current_app
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from quizlead_crm.models import (
    db, Lead, LeadHistory,
    LEAD_STATUS_NEW, QUESTION_NUMBER, QUESTION_MULTIPLE_CHOICE, QUESTION_YES_NO,
    CONDITION_SHOW, CONDITION_SKIP_TO,
)
from quizlead_crm.errors import ValidationError, NoEligibleUser, MessagingError, AuthenticationError
from quizlead_crm.utils import create_notification, notify_admins
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.services.distribution_service import DistributionService
from quizlead_crm.services.settings_service import SettingsService
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.services.whatsapp_service import WhatsAppService
import math

TOKEN_SALT = 'quiz-submission'
UTM_FIELDS = ('source', 'medium', 'campaign')


def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _fold(value):
    return value.strip().lower().replace('ã', 'a')


def _as_text(value):
    if isinstance(value, bool):
        return 'sim' if value else 'nao'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class IntakeService:
    # --- Public form token ---

    @staticmethod
    def _serializer():
        return URLSafeTimedSerializer(current_app.config['SECRET_KEY'])

    @staticmethod
    def generate_token(quiz):
        return IntakeService._serializer().dumps({'quiz_id': quiz.id}, salt=TOKEN_SALT)

    @staticmethod
    def verify_token(token, quiz):
        if not token:
            raise AuthenticationError('Token do formulário ausente.')
        try:
            data = IntakeService._serializer().loads(
                token, salt=TOKEN_SALT, max_age=current_app.config['PUBLIC_TOKEN_MAX_AGE']
            )
        except SignatureExpired:
            raise AuthenticationError('Token do formulário expirado. Recarregue a página.')
        except BadSignature:
            raise AuthenticationError('Token do formulário inválido.')
        if data.get('quiz_id') != quiz.id:
            raise AuthenticationError('Token do formulário inválido.')

    # --- Answers ---

    @staticmethod
    def normalize_answers(raw):
        """Accepts [{question_id|questionId, value}] or {question_id: value}."""
        if not raw:
            return {}
        if isinstance(raw, dict):
            return dict(raw)
        if not isinstance(raw, list):
            raise ValidationError('Formato de respostas inválido.', field='answers')
        answers = {}
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError('Formato de respostas inválido.', field='answers')
            question_id = item.get('question_id') or item.get('questionId')
            if question_id:
                answers[question_id] = item.get('value')
        return answers

    @staticmethod
    def coerce_answer(question, value):
        """Returns (ok, value) with the value normalised to the question type."""
        if question.type == QUESTION_NUMBER:
            if isinstance(value, bool):
                return False, None
            if isinstance(value, (int, float)):
                number = value
            else:
                text = str(value).strip().replace(',', '.')
                try:
                    number = int(text)
                except ValueError:
                    try:
                        number = float(text)
                    except ValueError:
                        return False, None
            if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
                return False, None
            return True, number

        if question.type == QUESTION_YES_NO:
            if isinstance(value, bool):
                return True, 'sim' if value else 'nao'
            text = _fold(str(value))
            if text in ('sim', 'nao'):
                return True, text
            return False, None

        if question.type == QUESTION_MULTIPLE_CHOICE:
            text = str(value).strip()
            if text in (question.options or []):
                return True, text
            return False, None

        # QUESTION_TEXT
        if isinstance(value, (dict, list)):
            return False, None
        text = _as_text(value).strip()
        return (True, text) if text else (False, None)

    @staticmethod
    def condition_matches(logic, answers):
        current = answers.get(logic['question_id'])
        actual = '' if current is None else _fold(_as_text(current))
        expected = _fold(str(logic['value']))
        if logic['operator'] == 'equals':
            return actual == expected
        if logic['operator'] == 'not_equals':
            return actual != expected
        if logic['operator'] == 'contains':
            return expected in actual
        return False

    @staticmethod
    def is_visible(question, answers):
        logic = question.conditional_logic
        if not logic or logic.get('action') != CONDITION_SHOW:
            return True
        return IntakeService.condition_matches(logic, answers)

    @staticmethod
    def _check_step(step, raw, accepted):
        """Checks visible questions top to bottom. Valid answers are added to `accepted`."""
        failing = []
        for question in QuizService.ordered_questions(step):
            if not IntakeService.is_visible(question, accepted):
                accepted.pop(question.id, None)
                continue
            value = raw.get(question.id)
            if _is_blank(value):
                accepted.pop(question.id, None)
                if question.required:
                    failing.append(question.id)
                continue
            ok, coerced = IntakeService.coerce_answer(question, value)
            if not ok:
                accepted.pop(question.id, None)
                failing.append(question.id)
                continue
            accepted[question.id] = coerced
        return failing

    @staticmethod
    def _walk_until(steps, step_index, raw):
        """Answers accepted on the respondent's path before `step_index`. Skipped steps contribute nothing."""
        accepted = {}
        index = 0
        while index is not None and index < step_index:
            IntakeService._check_step(steps[index], raw, accepted)
            index = IntakeService._next_index(steps, index, accepted)
        return accepted

    @staticmethod
    def _step_at(quiz, step_index):
        steps = QuizService.ordered_steps(quiz)
        if not isinstance(step_index, int) or step_index < 0 or step_index >= len(steps):
            raise ValidationError('Etapa inválida.', field='step')
        return steps, steps[step_index]

    @staticmethod
    def validate_answers(quiz, step_index, answers):
        """Ids of visible questions in the step that are required-and-missing or malformed."""
        steps, step = IntakeService._step_at(quiz, step_index)
        raw = IntakeService.normalize_answers(answers)
        accepted = IntakeService._walk_until(steps, step_index, raw)
        return IntakeService._check_step(step, raw, accepted)

    @staticmethod
    def _next_index(steps, step_index, accepted):
        step = steps[step_index]
        for question in QuizService.ordered_questions(step):
            logic = question.conditional_logic
            if not logic or logic.get('action') != CONDITION_SKIP_TO:
                continue
            if not IntakeService.is_visible(question, accepted):
                continue
            if IntakeService.condition_matches(logic, accepted):
                for index, candidate in enumerate(steps):
                    if candidate.id == logic.get('target_step_id'):
                        return index
        next_index = step_index + 1
        return next_index if next_index < len(steps) else None

    @staticmethod
    def next_step_index(quiz, step_index, answers):
        """Index of the step shown after `step_index`, or None when the quiz ends."""
        steps, _ = IntakeService._step_at(quiz, step_index)
        raw = IntakeService.normalize_answers(answers)
        accepted = IntakeService._walk_until(steps, step_index, raw)
        IntakeService._check_step(steps[step_index], raw, accepted)
        return IntakeService._next_index(steps, step_index, accepted)

    @staticmethod
    def collect_path(quiz, answers):
        """Walks the quiz as the respondent would. Returns ordered (question_id, value) pairs."""
        steps = QuizService.ordered_steps(quiz)
        raw = IntakeService.normalize_answers(answers)
        accepted = {}
        collected = []
        index = 0 if steps else None
        while index is not None:
            failing = IntakeService._check_step(steps[index], raw, accepted)
            if failing:
                raise ValidationError(
                    'Existem perguntas obrigatórias sem resposta ou com resposta inválida.',
                    field='answers',
                    payload={'missing': failing, 'step': index}
                )
            for question in QuizService.ordered_questions(steps[index]):
                if question.id in accepted:
                    collected.append((question.id, accepted[question.id]))
            index = IntakeService._next_index(steps, index, accepted)
        return collected

    # --- Contact / UTM ---

    @staticmethod
    def clean_contact(contact):
        contact = contact or {}
        if not isinstance(contact, dict):
            raise ValidationError('Dados de contato inválidos.', field='contact')
        name = str(contact.get('name') or '').strip()
        if not name:
            raise ValidationError('Nome é obrigatório.', field='name')

        phone = WhatsAppService.normalize_phone(contact.get('phone'))
        if not phone or len(phone) < 10:
            raise ValidationError('Telefone inválido.', field='phone')

        email = str(contact.get('email') or '').strip().lower() or None
        if email and '@' not in email:
            raise ValidationError('Email inválido.', field='email')

        return {'name': name[:100], 'phone': phone, 'email': email}

    @staticmethod
    def clean_utm(utm):
        utm = utm or {}
        if not isinstance(utm, dict):
            raise ValidationError('Parâmetros UTM inválidos.', field='utm')
        cleaned = {}
        for key in UTM_FIELDS:
            value = utm.get(key) or utm.get(f"utm_{key}")
            value = str(value).strip()[:100] if value is not None else ''
            cleaned[key] = value or None
        return cleaned

    # --- Submission ---

    @staticmethod
    def submit(quiz, answers, contact, utm=None):
        """Validates a full submission, creates the lead and runs distribution."""
        if not quiz.is_published:
            raise ValidationError('Este quiz não está recebendo respostas.', field='quiz')

        contact = IntakeService.clean_contact(contact)
        collected = IntakeService.collect_path(quiz, answers)
        utm = IntakeService.clean_utm(utm)

        lead = Lead(
            quiz_id=quiz.id,
            name=contact['name'],
            phone=contact['phone'],
            email=contact['email'],
            status=LEAD_STATUS_NEW,
            answers=[{'question_id': qid, 'value': value} for qid, value in collected],
            utm_source=utm['source'],
            utm_medium=utm['medium'],
            utm_campaign=utm['campaign'],
            notes=''
        )
        db.session.add(lead)
        db.session.flush()
        lead.history.append(LeadHistory(action='created', to_status=LEAD_STATUS_NEW, note=f"Quiz: {quiz.title}"))

        settings = SettingsService.get()
        try:
            user = DistributionService.assign(lead, settings)
        except NoEligibleUser:
            user = None
            notify_admins(
                'lead_unassigned',
                'Lead sem vendedor',
                f"O lead {lead.name} ({quiz.title}) não pôde ser distribuído. Atribua manualmente."
            )

        if user and settings.notify_new_lead:
            create_notification(
                user.id,
                'lead_assigned',
                'Novo lead recebido',
                f"{lead.name} respondeu o quiz {quiz.title}."
            )

        db.session.commit()
        current_app.logger.info(f"Lead {lead.id} created from quiz {quiz.slug} (assigned={lead.assigned_user_id})")

        if user and settings.auto_welcome:
            IntakeService._send_welcome(lead, user)

        return lead

    @staticmethod
    def _send_welcome(lead, user):
        template = TemplateService.get_default()
        if not template:
            current_app.logger.info(f"No default template; welcome message skipped for lead {lead.id}")
            return None
        content = TemplateService.render(template, lead, user)
        try:
            return WhatsAppService.send_to_lead(lead, content, template=template, sender=user)
        except MessagingError as e:
            current_app.logger.error(f"Welcome message failed for lead {lead.id}: {e.message}")
            return None
