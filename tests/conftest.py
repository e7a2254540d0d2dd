"""Pytest configuration and fixtures for the test suite."""

import pytest
from werkzeug.security import generate_password_hash

from quizlead_crm.app import create_app
from quizlead_crm.models import (
    db, User, Lead, ROLE_ADMIN, ROLE_USER, WHATSAPP_ONLINE, LEAD_STATUS_NEW,
)
from quizlead_crm.services.auth_service import AuthService
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.services.template_service import TemplateService

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret-key',
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'WHATSAPP_DRY_RUN': True,
    'CRON_SECRET': 'cron-secret',
    'SEED_ADMIN_EMAIL': None,
    'SEED_ADMIN_PASSWORD': None,
    'EVOLUTION_API_URL': '',
    'EVOLUTION_API_KEY': '',
}


@pytest.fixture
def app():
    """Application over a fresh in-memory database. No context is pushed here."""
    app = create_app(dict(TEST_CONFIG))
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Service tests run inside an application context."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


class Factory:
    """Builds persisted objects. Must be called inside an application context."""

    def __init__(self):
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def user(self, name=None, status=WHATSAPP_ONLINE, limit=20, received=0, priority=0):
        n = self._next()
        user = User(
            name=name or f'Vendedor {n}',
            phone=f'55119{n:08d}',
            role=ROLE_USER,
            whatsapp_status=status,
            daily_lead_limit=limit,
            leads_received_today=received,
            priority=priority
        )
        db.session.add(user)
        db.session.commit()
        return user

    def admin(self, email='admin@quizlead.com', password='admin123', name='Admin'):
        n = self._next()
        user = User(
            name=name,
            email=email,
            phone=f'55219{n:08d}',
            password_hash=generate_password_hash(password),
            role=ROLE_ADMIN
        )
        db.session.add(user)
        db.session.commit()
        return user

    def quiz(self, steps=None, published=True, title='Quiz Teste'):
        """`steps` is a list of steps, each a list of question payloads."""
        quiz = QuizService.create_quiz(title, 'Descrição')
        for questions in steps or []:
            step = QuizService.add_step(quiz.id, '')
            for payload in questions:
                QuizService.add_question(step.id, payload)
        if published:
            QuizService.set_published(quiz.id, True)
        return quiz

    def lead(self, quiz, user=None, status=LEAD_STATUS_NEW, name=None):
        n = self._next()
        lead = Lead(
            quiz_id=quiz.id,
            assigned_user_id=user.id if user else None,
            name=name or f'Lead {n}',
            phone=f'55319{n:08d}',
            status=status,
            answers=[]
        )
        db.session.add(lead)
        db.session.commit()
        return lead

    def template(self, name='Boas-vindas', content='Olá {{nome}}, sou {{vendedor}}.', is_default=False):
        return TemplateService.create_template(name, content, is_default)


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def auth_header(app):
    """Bearer header for a user id (issued outside any request)."""
    def _header(user_id):
        with app.app_context():
            user = db.session.get(User, user_id)
            return {'Authorization': f'Bearer {AuthService.issue_token(user)}'}
    return _header


@pytest.fixture
def admin_id(app, factory):
    with app.app_context():
        return factory.admin().id


@pytest.fixture
def admin_headers(admin_id, auth_header):
    return auth_header(admin_id)
