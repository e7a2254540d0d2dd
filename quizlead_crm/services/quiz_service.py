from flask import current_app
from quizlead_crm.models import (
    db, Quiz, QuizStep, QuizQuestion, Lead, get_now_br,
    QUESTION_TEXT, QUESTION_TYPES, QUESTION_MULTIPLE_CHOICE,
    CONDITION_OPERATORS, CONDITION_ACTIONS, CONDITION_SKIP_TO,
)
from quizlead_crm.errors import ValidationError, NotFound
from quizlead_crm.utils import slugify
import re
import secrets

SLUG_PATTERN = re.compile(r'^[a-z0-9-]+$')


def _pick(data, *keys):
    """First present key wins (accepts snake_case and camelCase payloads)."""
    for key in keys:
        if key in data:
            return data[key]
    return None


class QuizService:
    @staticmethod
    def get_quiz(quiz_id):
        quiz = db.session.get(Quiz, quiz_id)
        if not quiz:
            raise NotFound('Quiz não encontrado.')
        return quiz

    @staticmethod
    def get_step(step_id):
        step = db.session.get(QuizStep, step_id)
        if not step:
            raise NotFound('Etapa não encontrada.')
        return step

    @staticmethod
    def get_question(question_id):
        question = db.session.get(QuizQuestion, question_id)
        if not question:
            raise NotFound('Pergunta não encontrada.')
        return question

    @staticmethod
    def find_by_slug(slug, include_drafts=False):
        quiz = Quiz.query.filter_by(slug=slug).first()
        if not quiz or (not quiz.is_published and not include_drafts):
            raise NotFound('Quiz não encontrado.')
        return quiz

    @staticmethod
    def list_quizzes():
        return Quiz.query.order_by(Quiz.created_at.desc(), Quiz.title).all()

    @staticmethod
    def ordered_steps(quiz):
        return sorted(quiz.steps, key=lambda s: s.order)

    @staticmethod
    def ordered_questions(step):
        return sorted(step.questions, key=lambda q: q.order)

    @staticmethod
    def question_positions(quiz):
        """Maps question id -> (step order, question order)."""
        positions = {}
        for step in quiz.steps:
            for question in step.questions:
                positions[question.id] = (step.order, question.order)
        return positions

    # --- Quiz ---

    @staticmethod
    def _unique_slug(base, exclude_id=None):
        if not base:
            base = f"quiz-{secrets.token_hex(4)}"
        candidate = base
        suffix = 2
        while True:
            query = Quiz.query.filter(Quiz.slug == candidate)
            if exclude_id:
                query = query.filter(Quiz.id != exclude_id)
            if not query.first():
                return candidate
            candidate = f"{base}-{suffix}"
            suffix += 1

    @staticmethod
    def create_quiz(title, description=''):
        title = (title or '').strip()
        if not title:
            raise ValidationError('Título do quiz é obrigatório.', field='title')

        quiz = Quiz(
            title=title,
            description=(description or '').strip(),
            slug=QuizService._unique_slug(slugify(title)),
            is_published=False
        )
        db.session.add(quiz)
        db.session.commit()
        current_app.logger.info(f"Quiz created: {quiz.id} ({quiz.slug})")
        return quiz

    @staticmethod
    def update_quiz(quiz_id, data):
        quiz = QuizService.get_quiz(quiz_id)

        if 'title' in data:
            title = (data.get('title') or '').strip()
            if not title:
                raise ValidationError('Título do quiz é obrigatório.', field='title')
            quiz.title = title

        if 'description' in data:
            quiz.description = (data.get('description') or '').strip()

        if 'slug' in data:
            slug = (data.get('slug') or '').strip()
            if not SLUG_PATTERN.match(slug):
                raise ValidationError('Slug deve conter apenas letras minúsculas, números e hífens.', field='slug')
            clash = Quiz.query.filter(Quiz.slug == slug, Quiz.id != quiz.id).first()
            if clash:
                raise ValidationError('Este slug já está em uso.', field='slug')
            quiz.slug = slug

        quiz.updated_at = get_now_br()
        db.session.commit()
        return quiz

    @staticmethod
    def set_published(quiz_id, published):
        quiz = QuizService.get_quiz(quiz_id)
        quiz.is_published = bool(published)
        quiz.updated_at = get_now_br()
        db.session.commit()
        current_app.logger.info(f"Quiz {quiz.id} published={quiz.is_published}")
        return quiz

    @staticmethod
    def delete_quiz(quiz_id):
        quiz = QuizService.get_quiz(quiz_id)
        if Lead.query.filter_by(quiz_id=quiz.id).count():
            raise ValidationError('Quiz possui leads vinculados. Despublique-o em vez de excluir.', field='quiz')
        db.session.delete(quiz)
        db.session.commit()
        current_app.logger.info(f"Quiz deleted: {quiz_id}")

    # --- Steps ---

    @staticmethod
    def add_step(quiz_id, title=''):
        quiz = QuizService.get_quiz(quiz_id)
        step = QuizStep(order=len(quiz.steps) + 1, title=(title or '').strip())
        quiz.steps.append(step)
        quiz.updated_at = get_now_br()
        db.session.commit()
        return step

    @staticmethod
    def update_step(step_id, title):
        step = QuizService.get_step(step_id)
        step.title = (title or '').strip()
        step.quiz.updated_at = get_now_br()
        db.session.commit()
        return step

    @staticmethod
    def reorder_steps(quiz_id, step_ids):
        quiz = QuizService.get_quiz(quiz_id)
        current = {s.id: s for s in quiz.steps}
        step_ids = list(step_ids or [])
        if len(step_ids) != len(current) or set(step_ids) != set(current):
            raise ValidationError('A nova ordem deve conter exatamente as etapas do quiz.', field='step_ids')

        for order, step_id in enumerate(step_ids, start=1):
            current[step_id].order = order

        QuizService._commit_structure(quiz)
        return QuizService.ordered_steps(quiz)

    @staticmethod
    def delete_step(quiz_id, step_id):
        quiz = QuizService.get_quiz(quiz_id)
        step = QuizService.get_step(step_id)
        if step.quiz_id != quiz.id:
            raise NotFound('Etapa não encontrada.')

        removed_questions = {q.id for q in step.questions}
        quiz.steps.remove(step)
        for order, remaining in enumerate(QuizService.ordered_steps(quiz), start=1):
            remaining.order = order

        QuizService._clear_dangling_logic(quiz, removed_questions, removed_step_id=step.id)
        QuizService._commit_structure(quiz)

    # --- Questions ---

    @staticmethod
    def add_question(step_id, data=None):
        step = QuizService.get_step(step_id)
        question = QuizQuestion(
            order=len(step.questions) + 1,
            type=QUESTION_TEXT,
            prompt='',
            required=True
        )
        step.questions.append(question)
        db.session.flush()
        if data:
            QuizService._apply_or_rollback(question, data)
        QuizService._commit_structure(step.quiz)
        return question

    @staticmethod
    def update_question(question_id, data):
        question = QuizService.get_question(question_id)
        QuizService._apply_or_rollback(question, data or {})
        QuizService._commit_structure(question.step.quiz)
        return question

    @staticmethod
    def delete_question(question_id):
        question = QuizService.get_question(question_id)
        step = question.step
        quiz = step.quiz
        step.questions.remove(question)
        for order, remaining in enumerate(QuizService.ordered_questions(step), start=1):
            remaining.order = order

        QuizService._clear_dangling_logic(quiz, {question.id})
        QuizService._commit_structure(quiz)

    @staticmethod
    def reorder_questions(step_id, question_ids):
        step = QuizService.get_step(step_id)
        current = {q.id: q for q in step.questions}
        question_ids = list(question_ids or [])
        if len(question_ids) != len(current) or set(question_ids) != set(current):
            raise ValidationError('A nova ordem deve conter exatamente as perguntas da etapa.', field='question_ids')

        for order, question_id in enumerate(question_ids, start=1):
            current[question_id].order = order

        QuizService._commit_structure(step.quiz)
        return QuizService.ordered_questions(step)

    # --- Validation helpers ---

    @staticmethod
    def _clean_options(raw):
        if isinstance(raw, str):
            raw = raw.split('\n')
        options = [str(o).strip() for o in (raw or []) if o is not None and str(o).strip()]
        if not options:
            raise ValidationError('Perguntas de múltipla escolha precisam de ao menos uma opção.', field='options')
        if len(set(options)) != len(options):
            raise ValidationError('Opções duplicadas não são permitidas.', field='options')
        return options

    @staticmethod
    def _clean_logic(raw):
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ValidationError('Lógica condicional inválida.', field='conditional_logic')

        question_id = _pick(raw, 'question_id', 'questionId')
        operator = raw.get('operator')
        action = raw.get('action')
        value = raw.get('value')
        target_step_id = _pick(raw, 'target_step_id', 'targetStepId')

        if not question_id:
            raise ValidationError('Informe a pergunta de referência.', field='conditional_logic')
        if operator not in CONDITION_OPERATORS:
            raise ValidationError('Operador inválido.', field='conditional_logic')
        if action not in CONDITION_ACTIONS:
            raise ValidationError('Ação inválida.', field='conditional_logic')
        if value is None:
            raise ValidationError('Informe o valor da condição.', field='conditional_logic')
        if action == CONDITION_SKIP_TO and not target_step_id:
            raise ValidationError('Informe a etapa de destino.', field='conditional_logic')

        return {
            'question_id': question_id,
            'operator': operator,
            'value': str(value),
            'action': action,
            'target_step_id': target_step_id if action == CONDITION_SKIP_TO else None,
        }

    @staticmethod
    def _apply_question_data(question, data):
        prompt = _pick(data, 'prompt', 'question')
        if prompt is not None:
            question.prompt = str(prompt).strip()

        if 'required' in data:
            question.required = bool(data['required'])

        new_type = data.get('type', question.type)
        if new_type not in QUESTION_TYPES:
            raise ValidationError('Tipo de pergunta inválido.', field='type')

        if new_type == QUESTION_MULTIPLE_CHOICE:
            raw_options = data['options'] if 'options' in data else question.options
            question.options = QuizService._clean_options(raw_options)
        else:
            question.options = None
        question.type = new_type

        if 'conditional_logic' in data or 'conditionalLogic' in data:
            question.conditional_logic = QuizService._clean_logic(_pick(data, 'conditional_logic', 'conditionalLogic'))

    @staticmethod
    def _apply_or_rollback(question, data):
        try:
            QuizService._apply_question_data(question, data)
        except ValidationError:
            db.session.rollback()
            raise

    @staticmethod
    def _clear_dangling_logic(quiz, removed_question_ids, removed_step_id=None):
        for step in quiz.steps:
            for question in step.questions:
                logic = question.conditional_logic
                if not logic:
                    continue
                if logic['question_id'] in removed_question_ids or \
                        (removed_step_id and logic.get('target_step_id') == removed_step_id):
                    current_app.logger.info(f"Clearing conditional logic of question {question.id} (reference removed)")
                    question.conditional_logic = None

    @staticmethod
    def validate_logic(quiz):
        """Every reference must point to an earlier question; jumps must go forward within the quiz."""
        positions = QuizService.question_positions(quiz)
        step_orders = {s.id: s.order for s in quiz.steps}

        for step in quiz.steps:
            for question in step.questions:
                logic = question.conditional_logic
                if not logic:
                    continue
                ref = logic['question_id']
                if ref not in positions:
                    raise ValidationError('A condição referencia uma pergunta inexistente.',
                                          field='conditional_logic', payload={'question_id': question.id})
                if positions[ref] >= positions[question.id]:
                    raise ValidationError('A condição deve referenciar uma pergunta anterior.',
                                          field='conditional_logic', payload={'question_id': question.id})
                if logic['action'] == CONDITION_SKIP_TO:
                    target = logic.get('target_step_id')
                    if target not in step_orders:
                        raise ValidationError('Etapa de destino inexistente.',
                                              field='conditional_logic', payload={'question_id': question.id})
                    if step_orders[target] <= step.order:
                        raise ValidationError('O salto deve levar a uma etapa posterior.',
                                              field='conditional_logic', payload={'question_id': question.id})

    @staticmethod
    def _commit_structure(quiz):
        try:
            QuizService.validate_logic(quiz)
        except ValidationError:
            db.session.rollback()
            raise
        quiz.updated_at = get_now_br()
        db.session.commit()
