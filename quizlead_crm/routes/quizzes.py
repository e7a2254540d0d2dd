from flask import Blueprint
from flask_login import login_required
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.session import admin_required
from quizlead_crm.utils import api_response, json_body

quizzes_bp = Blueprint('quizzes', __name__)


def _json():
    return json_body()


@quizzes_bp.route('/api/quizzes', methods=['GET'])
@login_required
@admin_required
def list_quizzes():
    return api_response(data=[q.to_dict(include_steps=False) for q in QuizService.list_quizzes()])


@quizzes_bp.route('/api/quizzes', methods=['POST'])
@login_required
@admin_required
def create_quiz():
    data = _json()
    quiz = QuizService.create_quiz(data.get('title'), data.get('description'))
    return api_response(data=quiz.to_dict(), status=201)


@quizzes_bp.route('/api/quizzes/<quiz_id>', methods=['GET'])
@login_required
@admin_required
def get_quiz(quiz_id):
    return api_response(data=QuizService.get_quiz(quiz_id).to_dict())


@quizzes_bp.route('/api/quizzes/<quiz_id>', methods=['PATCH'])
@login_required
@admin_required
def update_quiz(quiz_id):
    quiz = QuizService.update_quiz(quiz_id, _json())
    return api_response(data=quiz.to_dict())


@quizzes_bp.route('/api/quizzes/<quiz_id>', methods=['DELETE'])
@login_required
@admin_required
def delete_quiz(quiz_id):
    QuizService.delete_quiz(quiz_id)
    return api_response(data={'id': quiz_id})


@quizzes_bp.route('/api/quizzes/<quiz_id>/publish', methods=['POST'])
@login_required
@admin_required
def publish_quiz(quiz_id):
    quiz = QuizService.set_published(quiz_id, _json().get('published', True))
    return api_response(data=quiz.to_dict(include_steps=False))


# --- Steps ---

@quizzes_bp.route('/api/quizzes/<quiz_id>/steps', methods=['POST'])
@login_required
@admin_required
def add_step(quiz_id):
    step = QuizService.add_step(quiz_id, _json().get('title'))
    return api_response(data=step.to_dict(), status=201)


@quizzes_bp.route('/api/quizzes/<quiz_id>/steps/order', methods=['PUT'])
@login_required
@admin_required
def reorder_steps(quiz_id):
    steps = QuizService.reorder_steps(quiz_id, _json().get('step_ids'))
    return api_response(data=[s.to_dict() for s in steps])


@quizzes_bp.route('/api/quizzes/<quiz_id>/steps/<step_id>', methods=['DELETE'])
@login_required
@admin_required
def delete_step(quiz_id, step_id):
    QuizService.delete_step(quiz_id, step_id)
    return api_response(data=QuizService.get_quiz(quiz_id).to_dict())


@quizzes_bp.route('/api/steps/<step_id>', methods=['PATCH'])
@login_required
@admin_required
def update_step(step_id):
    step = QuizService.update_step(step_id, _json().get('title'))
    return api_response(data=step.to_dict())


# --- Questions ---

@quizzes_bp.route('/api/steps/<step_id>/questions', methods=['POST'])
@login_required
@admin_required
def add_question(step_id):
    question = QuizService.add_question(step_id, _json())
    return api_response(data=question.to_dict(), status=201)


@quizzes_bp.route('/api/steps/<step_id>/questions/order', methods=['PUT'])
@login_required
@admin_required
def reorder_questions(step_id):
    questions = QuizService.reorder_questions(step_id, _json().get('question_ids'))
    return api_response(data=[q.to_dict() for q in questions])


@quizzes_bp.route('/api/questions/<question_id>', methods=['PATCH'])
@login_required
@admin_required
def update_question(question_id):
    question = QuizService.update_question(question_id, _json())
    return api_response(data=question.to_dict())


@quizzes_bp.route('/api/questions/<question_id>', methods=['DELETE'])
@login_required
@admin_required
def delete_question(question_id):
    QuizService.delete_question(question_id)
    return api_response(data={'id': question_id})
