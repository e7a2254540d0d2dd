from flask import current_app
from werkzeug.security import generate_password_hash
from quizlead_crm.models import (
    db, User, Quiz, MessageTemplate, ROLE_ADMIN, ROLE_USER, WHATSAPP_ONLINE, WHATSAPP_OFFLINE,
    QUESTION_MULTIPLE_CHOICE, QUESTION_YES_NO, QUESTION_NUMBER,
)
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.services.settings_service import SettingsService

DEMO_ADMIN_EMAIL = 'admin@quizlead.com'
DEMO_ADMIN_PASSWORD = 'admin123'

DEMO_USERS = [
    ('Carlos Vendas', '11987654321', WHATSAPP_ONLINE, 2),
    ('Ana Comercial', '11912345678', WHATSAPP_ONLINE, 1),
    ('Bruno Atendimento', '11955554444', WHATSAPP_OFFLINE, 0),
]


def seed_demo():
    """Idempotent demo data: admin, three salespeople, a published quiz and the welcome template."""
    summary = {'admin': False, 'users': 0, 'quiz': False, 'template': False}

    if not User.query.filter_by(email=DEMO_ADMIN_EMAIL).first():
        db.session.add(User(
            name='Administrador',
            email=DEMO_ADMIN_EMAIL,
            phone='5511900000000',
            password_hash=generate_password_hash(DEMO_ADMIN_PASSWORD),
            role=ROLE_ADMIN
        ))
        summary['admin'] = True

    for name, phone, status, priority in DEMO_USERS:
        if User.query.filter_by(phone='55' + phone).first():
            continue
        db.session.add(User(
            name=name,
            phone='55' + phone,
            role=ROLE_USER,
            whatsapp_status=status,
            daily_lead_limit=20,
            priority=priority
        ))
        summary['users'] += 1

    SettingsService.get()
    db.session.commit()

    if not MessageTemplate.query.first():
        TemplateService.create_template(
            'Boas-vindas',
            'Olá {{nome}}! Aqui é {{vendedor}}. Recebi suas respostas e vou te ajudar a encontrar a melhor solução. Podemos conversar?',
            is_default=True
        )
        TemplateService.create_template(
            'Follow-up',
            'Oi {{nome}}, tudo bem? Ainda tem interesse? Fico à disposição para tirar suas dúvidas. - {{vendedor}}'
        )
        summary['template'] = True

    if not Quiz.query.filter_by(slug='avaliacao-gratuita').first():
        quiz = QuizService.create_quiz('Avaliação Gratuita', 'Descubra em 1 minuto qual plano combina com você.')
        QuizService.update_quiz(quiz.id, {'slug': 'avaliacao-gratuita'})

        profile = QuizService.add_step(quiz.id, 'Seu perfil')
        QuizService.add_question(profile.id, {
            'prompt': 'Qual é o seu objetivo?',
            'type': QUESTION_MULTIPLE_CHOICE,
            'options': ['Emagrecer', 'Ganhar massa', 'Qualidade de vida'],
        })
        trained = QuizService.add_question(profile.id, {
            'prompt': 'Você já treina atualmente?',
            'type': QUESTION_YES_NO,
        })

        details = QuizService.add_step(quiz.id, 'Sua rotina')
        QuizService.add_question(details.id, {
            'prompt': 'Quantos dias por semana você pode treinar?',
            'type': QUESTION_NUMBER,
        })
        QuizService.add_question(details.id, {
            'prompt': 'Há quanto tempo você treina?',
            'required': False,
            'conditional_logic': {
                'question_id': trained.id, 'operator': 'equals', 'value': 'sim', 'action': 'show',
            },
        })

        QuizService.set_published(quiz.id, True)
        summary['quiz'] = True

    current_app.logger.info(f"Demo seed finished: {summary}")
    return summary
