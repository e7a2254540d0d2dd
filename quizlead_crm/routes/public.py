from flask import Blueprint, request
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.services.intake_service import IntakeService
from quizlead_crm.utils import api_response, json_body

public_bp = Blueprint('public', __name__)


def _bearer_token():
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header.split(" ", 1)[1].strip()
    return None


@public_bp.route('/q/<slug>', methods=['GET'])
def view_quiz(slug):
    """Public quiz schema plus the signed token required to submit it."""
    quiz = QuizService.find_by_slug(slug)
    data = quiz.to_dict()
    data.pop('created_at', None)
    data.pop('updated_at', None)
    data['token'] = IntakeService.generate_token(quiz)
    return api_response(data=data)


@public_bp.route('/q/<slug>/steps/<int:step_index>/validate', methods=['POST'])
def validate_step(slug, step_index):
    quiz = QuizService.find_by_slug(slug)
    data = json_body()
    answers = data.get('answers')
    missing = IntakeService.validate_answers(quiz, step_index, answers)
    next_step = None if missing else IntakeService.next_step_index(quiz, step_index, answers)
    return api_response(data={
        'valid': not missing,
        'missing': missing,
        'next_step': next_step,
        'is_last': not missing and next_step is None,
    })


@public_bp.route('/q/<slug>/submit', methods=['POST'])
def submit_quiz(slug):
    quiz = QuizService.find_by_slug(slug)
    data = json_body()
    IntakeService.verify_token(_bearer_token() or data.get('token'), quiz)

    # UTM from the body, falling back to the landing page query string
    utm = data.get('utm') or {
        'source': request.args.get('utm_source'),
        'medium': request.args.get('utm_medium'),
        'campaign': request.args.get('utm_campaign'),
    }

    lead = IntakeService.submit(quiz, data.get('answers'), data.get('contact'), utm)
    return api_response(data={
        'lead_id': lead.id,
        'message': 'Obrigado! Em breve entraremos em contato.',
    }, status=201)
