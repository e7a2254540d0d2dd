import pytest

from quizlead_crm.models import db, Lead, User, Notification, MessageLog, WHATSAPP_OFFLINE
from quizlead_crm.services.template_service import TemplateService
from quizlead_crm.services.whatsapp_service import WhatsAppService
from quizlead_crm.utils import create_notification


@pytest.fixture
def crm(app, factory):
    """Two sellers with one lead each plus an unassigned lead. Returns plain ids."""
    with app.app_context():
        carlos = factory.user(name='Carlos')
        ana = factory.user(name='Ana')
        quiz = factory.quiz()
        return {
            'quiz_id': quiz.id,
            'carlos': carlos.id,
            'ana': ana.id,
            'carlos_lead': factory.lead(quiz, user=carlos, name='Lead do Carlos').id,
            'ana_lead': factory.lead(quiz, user=ana, name='Lead da Ana').id,
            'orphan_lead': factory.lead(quiz, name='Lead sem dono').id,
        }


# --- Generic envelope ---

def test_unknown_route_uses_envelope(client):
    res = client.get('/api/nao-existe')
    assert res.status_code == 404
    assert res.get_json() == {
        'success': False,
        'data': None,
        'error': {'code': 'not_found', 'message': 'Recurso não encontrado.'},
    }


def test_protected_routes_require_login(client):
    for url in ('/api/leads', '/api/quizzes', '/api/dashboard', '/api/settings', '/api/notifications'):
        assert client.get(url).status_code == 401


# --- Quiz builder ---

def test_quiz_builder_flow(client, admin_headers):
    res = client.post('/api/quizzes', json={'title': 'Quiz de Verão'}, headers=admin_headers)
    assert res.status_code == 201
    quiz = res.get_json()['data']
    assert quiz['slug'] == 'quiz-de-vero'
    assert quiz['is_published'] is False

    step = client.post(f"/api/quizzes/{quiz['id']}/steps", json={'title': 'Perfil'},
                       headers=admin_headers).get_json()['data']
    question = client.post(f"/api/steps/{step['id']}/questions", json={
        'prompt': 'Objetivo', 'type': 'multiple_choice', 'options': ['A', 'B']
    }, headers=admin_headers)
    assert question.status_code == 201
    assert question.get_json()['data']['order'] == 1

    published = client.post(f"/api/quizzes/{quiz['id']}/publish", json={'published': True}, headers=admin_headers)
    assert published.get_json()['data']['is_published'] is True

    detail = client.get(f"/api/quizzes/{quiz['id']}", headers=admin_headers).get_json()['data']
    assert detail['steps'][0]['questions'][0]['options'] == ['A', 'B']

    listing = client.get('/api/quizzes', headers=admin_headers).get_json()['data']
    assert listing[0]['question_count'] == 1
    assert listing[0]['lead_count'] == 0

    assert client.get(f"/q/{quiz['slug']}").status_code == 200


def test_quiz_validation_errors_use_envelope(client, admin_headers):
    res = client.post('/api/quizzes', json={'title': ''}, headers=admin_headers)
    assert res.status_code == 400
    assert res.get_json()['error'] == {
        'code': 'validation_error',
        'message': 'Título do quiz é obrigatório.',
        'field': 'title',
    }


def test_sellers_cannot_manage_quizzes(client, crm, auth_header):
    res = client.get('/api/quizzes', headers=auth_header(crm['carlos']))
    assert res.status_code == 403
    assert res.get_json()['error']['code'] == 'forbidden'


# --- Leads ---

def test_seller_sees_only_own_leads(client, crm, auth_header):
    res = client.get('/api/leads', headers=auth_header(crm['carlos']))

    data = res.get_json()['data']
    assert data['total'] == 1
    assert [l['id'] for l in data['items']] == [crm['carlos_lead']]


def test_admin_sees_all_leads_and_filters(client, crm, admin_headers):
    assert client.get('/api/leads', headers=admin_headers).get_json()['data']['total'] == 3

    unassigned = client.get('/api/leads?unassigned=1', headers=admin_headers).get_json()['data']
    assert [l['id'] for l in unassigned['items']] == [crm['orphan_lead']]

    by_user = client.get(f"/api/leads?user_id={crm['ana']}", headers=admin_headers).get_json()['data']
    assert [l['id'] for l in by_user['items']] == [crm['ana_lead']]


def test_leads_pagination(client, crm, admin_headers):
    data = client.get('/api/leads?per_page=2&page=2', headers=admin_headers).get_json()['data']
    assert data['page'] == 2
    assert data['pages'] == 2
    assert len(data['items']) == 1


def test_seller_cannot_open_other_lead(client, crm, auth_header):
    res = client.get(f"/api/leads/{crm['ana_lead']}", headers=auth_header(crm['carlos']))
    assert res.status_code == 403


def test_lead_detail_includes_history(client, crm, auth_header):
    headers = auth_header(crm['carlos'])
    client.patch(f"/api/leads/{crm['carlos_lead']}/status", json={'status': 'em_contato'}, headers=headers)

    data = client.get(f"/api/leads/{crm['carlos_lead']}", headers=headers).get_json()['data']
    assert data['status'] == 'em_contato'
    assert data['assigned_user']['name'] == 'Carlos'
    assert data['history'][-1]['to_status'] == 'em_contato'
    assert data['history'][-1]['user_name'] == 'Carlos'


def test_invalid_status_is_rejected(app, client, crm, auth_header):
    res = client.patch(f"/api/leads/{crm['carlos_lead']}/status", json={'status': 'arquivado'},
                       headers=auth_header(crm['carlos']))

    assert res.status_code == 400
    assert res.get_json()['error']['code'] == 'invalid_status'
    with app.app_context():
        assert db.session.get(Lead, crm['carlos_lead']).status == 'novo'


def test_update_notes_route(client, crm, auth_header):
    res = client.patch(f"/api/leads/{crm['carlos_lead']}/notes", json={'notes': 'Ligar amanhã'},
                       headers=auth_header(crm['carlos']))
    assert res.get_json()['data']['notes'] == 'Ligar amanhã'


def test_kanban_route(client, crm, auth_header):
    columns = client.get('/api/leads/kanban', headers=auth_header(crm['carlos'])).get_json()['data']
    assert len(columns) == 6
    assert columns[0]['id'] == 'novo'
    assert columns[0]['count'] == 1


def test_manual_assignment_is_admin_only(client, crm, auth_header, admin_headers):
    url = f"/api/leads/{crm['orphan_lead']}/assign"
    assert client.post(url, json={'user_id': crm['ana']}, headers=auth_header(crm['carlos'])).status_code == 403

    res = client.post(url, json={'user_id': crm['ana']}, headers=admin_headers)
    assert res.status_code == 200
    assert res.get_json()['data']['assigned_user_id'] == crm['ana']


def test_send_message_to_lead(app, client, crm, auth_header):
    with app.app_context():
        template_id = TemplateService.create_template('Oi', 'Olá {{nome}}!').id

    res = client.post(f"/api/leads/{crm['carlos_lead']}/messages", json={'template_id': template_id},
                      headers=auth_header(crm['carlos']))

    assert res.status_code == 201
    assert res.get_json()['data']['content'] == 'Olá Lead do Carlos!'
    with app.app_context():
        assert MessageLog.query.filter_by(lead_id=crm['carlos_lead']).count() == 1


def test_send_empty_message_rejected(client, crm, auth_header):
    res = client.post(f"/api/leads/{crm['carlos_lead']}/messages", json={'content': '  '},
                      headers=auth_header(crm['carlos']))
    assert res.status_code == 400


# --- Users ---

def test_create_user_defaults(client, admin_headers):
    res = client.post('/api/users', json={'name': 'Bruno', 'phone': '(11) 95555-4444'}, headers=admin_headers)

    assert res.status_code == 201
    user = res.get_json()['data']
    assert user['phone'] == '5511955554444'
    assert user['role'] == 'user'
    assert user['whatsapp_status'] == 'offline'
    assert user['daily_lead_limit'] == 20
    assert user['leads_received_today'] == 0


def test_create_user_duplicate_phone(client, admin_headers):
    client.post('/api/users', json={'name': 'Bruno', 'phone': '11955554444'}, headers=admin_headers)
    res = client.post('/api/users', json={'name': 'Outro', 'phone': '5511955554444'}, headers=admin_headers)
    assert res.status_code == 400
    assert res.get_json()['error']['field'] == 'phone'


def test_admin_sets_whatsapp_status(client, crm, admin_headers):
    res = client.put(f"/api/users/{crm['carlos']}/whatsapp", json={'status': 'offline'}, headers=admin_headers)
    assert res.get_json()['data']['whatsapp_status'] == 'offline'


def test_my_whatsapp_status(client, crm, auth_header):
    data = client.get('/api/users/me/whatsapp', headers=auth_header(crm['carlos'])).get_json()['data']
    assert data == {'status': 'online', 'instance': f"user-{crm['carlos']}"}


def test_delete_user_unassigns_leads(app, client, crm, admin_headers):
    res = client.delete(f"/api/users/{crm['carlos']}", headers=admin_headers)

    assert res.status_code == 200
    with app.app_context():
        assert db.session.get(User, crm['carlos']) is None
        lead = db.session.get(Lead, crm['carlos_lead'])
        assert lead.assigned_user_id is None
        assert lead.history[-1].action == 'unassigned'


def test_admin_cannot_delete_self(client, admin_id, admin_headers):
    assert client.delete(f'/api/users/{admin_id}', headers=admin_headers).status_code == 400


# --- Settings ---

def test_settings_defaults(client, admin_headers):
    data = client.get('/api/settings', headers=admin_headers).get_json()['data']
    assert data['distribution_method'] == 'round_robin'
    assert data['verify_whatsapp_active'] is True
    assert data['respect_daily_limit'] is True
    assert data['auto_fallback'] is True
    assert data['remarketing_days'] == 1


@pytest.mark.parametrize('payload, field', [
    ({'distribution_method': 'sorteio'}, 'distribution_method'),
    ({'remarketing_days': 31}, 'remarketing_days'),
    ({'remarketing_days': 0}, 'remarketing_days'),
])
def test_settings_validation(client, admin_headers, payload, field):
    res = client.put('/api/settings', json=payload, headers=admin_headers)
    assert res.status_code == 400
    assert res.get_json()['error']['field'] == field


def test_settings_update(client, admin_headers):
    res = client.put('/api/settings', json={'distribution_method': 'availability', 'auto_welcome': False},
                     headers=admin_headers)
    data = res.get_json()['data']
    assert data['distribution_method'] == 'availability'
    assert data['auto_welcome'] is False


def test_whatsapp_config_is_masked(client, admin_headers):
    client.put('/api/settings/whatsapp', json={'api_url': 'https://evo.example.com', 'api_key': 'abcdef123'},
               headers=admin_headers)
    data = client.get('/api/settings/whatsapp', headers=admin_headers).get_json()['data']
    assert data['configured'] is True
    assert data['api_key'] == 'abcd****'


def test_remarketing_rule_routes(app, client, admin_headers):
    with app.app_context():
        template_id = TemplateService.create_template('Follow-up', 'Oi {{nome}}').id

    res = client.post('/api/remarketing-rules', json={
        'name': 'Sem resposta', 'trigger_status': 'em_contato', 'days_without_activity': 3, 'template_id': template_id
    }, headers=admin_headers)
    assert res.status_code == 201
    rule_id = res.get_json()['data']['id']

    updated = client.patch(f'/api/remarketing-rules/{rule_id}', json={'is_active': False}, headers=admin_headers)
    assert updated.get_json()['data']['is_active'] is False

    assert client.delete(f'/api/remarketing-rules/{rule_id}', headers=admin_headers).status_code == 200
    assert client.get('/api/remarketing-rules', headers=admin_headers).get_json()['data'] == []


# --- Templates ---

def test_template_preview(client, crm, auth_header):
    res = client.post('/api/templates/preview', json={'content': 'Oi {{nome}}, aqui é {{vendedor}}'},
                      headers=auth_header(crm['carlos']))
    assert res.get_json()['data']['preview'] == 'Oi Maria Silva, aqui é Carlos'


def test_template_crud_is_admin_only(client, crm, auth_header, admin_headers):
    res = client.post('/api/templates', json={'name': 'X', 'content': 'Y'}, headers=auth_header(crm['carlos']))
    assert res.status_code == 403

    res = client.post('/api/templates', json={'name': 'X', 'content': 'Y', 'is_default': True}, headers=admin_headers)
    assert res.status_code == 201
    assert res.get_json()['data']['is_default'] is True


# --- Dashboard / notifications ---

def test_dashboard_route(client, crm, auth_header, admin_headers):
    seller = client.get('/api/dashboard', headers=auth_header(crm['carlos'])).get_json()['data']
    assert seller['total_leads'] == 1
    assert 'leads_by_user' not in seller

    admin = client.get('/api/dashboard', headers=admin_headers).get_json()['data']
    assert admin['total_leads'] == 3
    assert admin['unassigned_leads'] == 1


def test_notifications_routes(app, client, crm, auth_header):
    with app.app_context():
        create_notification(crm['carlos'], 'lead_assigned', 'Novo lead', 'Teste')
        create_notification(crm['ana'], 'lead_assigned', 'Novo lead', 'Outro usuário')
        db.session.commit()
        foreign_id = Notification.query.filter_by(user_id=crm['ana']).one().id

    headers = auth_header(crm['carlos'])
    data = client.get('/api/notifications', headers=headers).get_json()['data']
    assert data['unread_count'] == 1

    assert client.post(f'/api/notifications/{foreign_id}/read', headers=headers).status_code == 403
    assert client.post('/api/notifications/read-all', headers=headers).get_json()['data']['updated'] == 1
    assert client.get('/api/notifications', headers=headers).get_json()['data']['unread_count'] == 0


# --- Webhook / cron ---

def test_webhook_requires_apikey(app, client, crm):
    assert client.post('/api/whatsapp/webhook', json={}).status_code == 401

    with app.app_context():
        WhatsAppService.save_config('https://evo.example.com', 'hook-key')

    assert client.post('/api/whatsapp/webhook', json={}, headers={'apikey': 'errada'}).status_code == 401

    res = client.post('/api/whatsapp/webhook', headers={'apikey': 'hook-key'}, json={
        'event': 'connection.update', 'instance': f"user-{crm['carlos']}", 'data': {'state': 'close'}
    })
    assert res.status_code == 200
    assert res.get_json()['data']['handled'] is True
    with app.app_context():
        assert db.session.get(User, crm['carlos']).whatsapp_status == WHATSAPP_OFFLINE


def test_cron_requires_secret(client):
    assert client.post('/api/cron/reset-daily-counters').status_code == 401
    assert client.post('/api/cron/reset-daily-counters',
                       headers={'Authorization': 'Bearer errado'}).status_code == 401


def test_cron_jobs(app, client, factory):
    with app.app_context():
        factory.user(received=4)

    headers = {'Authorization': 'Bearer cron-secret'}
    res = client.post('/api/cron/reset-daily-counters', headers=headers)
    assert res.get_json()['data'] == {'reset': 1}

    res = client.get('/api/cron/remarketing', headers=headers)
    assert res.get_json()['data'] == {'rules': 0, 'sent': 0, 'failed': 0, 'skipped': 0}
