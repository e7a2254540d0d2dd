import pytest

from quizlead_crm.errors import ValidationError, NotFound
from quizlead_crm.models import db, Quiz, QuizStep, QuizQuestion
from quizlead_crm.services.quiz_service import QuizService
from quizlead_crm.utils import slugify


def _step_orders(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    return [s.order for s in QuizService.ordered_steps(quiz)]


def test_slugify_follows_title_rules():
    assert slugify('Quiz de Emagrecimento') == 'quiz-de-emagrecimento'
    assert slugify('  Avaliação   Grátis 2024! ') == 'avaliao-grtis-2024'
    assert slugify('!!!') == ''


def test_create_quiz_defaults(ctx):
    quiz = QuizService.create_quiz('  Meu Quiz ', 'desc')
    assert quiz.title == 'Meu Quiz'
    assert quiz.slug == 'meu-quiz'
    assert quiz.is_published is False
    assert quiz.steps == []


def test_create_quiz_requires_title(ctx):
    with pytest.raises(ValidationError) as exc:
        QuizService.create_quiz('   ', '')
    assert exc.value.field == 'title'


def test_slug_collisions_get_numeric_suffix(ctx):
    first = QuizService.create_quiz('Promo', '')
    second = QuizService.create_quiz('Promo', '')
    third = QuizService.create_quiz('promo', '')
    assert [first.slug, second.slug, third.slug] == ['promo', 'promo-2', 'promo-3']


def test_slug_falls_back_when_title_has_no_usable_chars(ctx):
    quiz = QuizService.create_quiz('???', '')
    assert quiz.slug.startswith('quiz-')
    assert len(quiz.slug) == len('quiz-') + 8


def test_update_slug_validation(ctx):
    a = QuizService.create_quiz('Quiz A', '')
    b = QuizService.create_quiz('Quiz B', '')

    with pytest.raises(ValidationError):
        QuizService.update_quiz(b.id, {'slug': 'Com Espaço'})
    with pytest.raises(ValidationError):
        QuizService.update_quiz(b.id, {'slug': a.slug})

    QuizService.update_quiz(b.id, {'slug': 'landing-b'})
    assert db.session.get(Quiz, b.id).slug == 'landing-b'


@pytest.mark.parametrize('delete_position', [0, 1, 2, 3])
def test_step_order_contiguous_after_insert_and_delete(ctx, delete_position):
    quiz = QuizService.create_quiz('Ordem', '')
    steps = [QuizService.add_step(quiz.id, f'Etapa {i}') for i in range(4)]
    assert _step_orders(quiz.id) == [1, 2, 3, 4]

    QuizService.delete_step(quiz.id, steps[delete_position].id)
    assert _step_orders(quiz.id) == [1, 2, 3]

    QuizService.add_step(quiz.id, 'Nova')
    assert _step_orders(quiz.id) == [1, 2, 3, 4]


@pytest.mark.parametrize('delete_position', [0, 1, 2])
def test_question_order_contiguous_after_insert_and_delete(ctx, delete_position):
    quiz = QuizService.create_quiz('Perguntas', '')
    step = QuizService.add_step(quiz.id)
    questions = [QuizService.add_question(step.id) for _ in range(3)]
    assert [q.order for q in QuizService.ordered_questions(step)] == [1, 2, 3]

    QuizService.delete_question(questions[delete_position].id)
    step = db.session.get(QuizStep, step.id)
    assert [q.order for q in QuizService.ordered_questions(step)] == [1, 2]


def test_new_question_defaults(ctx):
    quiz = QuizService.create_quiz('Defaults', '')
    step = QuizService.add_step(quiz.id)
    question = QuizService.add_question(step.id)
    assert question.type == 'text'
    assert question.prompt == ''
    assert question.required is True
    assert question.options is None


def test_reorder_steps_requires_exact_permutation(ctx):
    quiz = QuizService.create_quiz('Reordenar', '')
    s1 = QuizService.add_step(quiz.id)
    s2 = QuizService.add_step(quiz.id)

    with pytest.raises(ValidationError):
        QuizService.reorder_steps(quiz.id, [s1.id])
    with pytest.raises(ValidationError):
        QuizService.reorder_steps(quiz.id, [s1.id, s1.id])

    QuizService.reorder_steps(quiz.id, [s2.id, s1.id])
    assert db.session.get(QuizStep, s2.id).order == 1
    assert db.session.get(QuizStep, s1.id).order == 2


def test_reorder_questions(ctx):
    quiz = QuizService.create_quiz('Reordenar perguntas', '')
    step = QuizService.add_step(quiz.id)
    q1 = QuizService.add_question(step.id, {'prompt': 'Primeira'})
    q2 = QuizService.add_question(step.id, {'prompt': 'Segunda'})

    ordered = QuizService.reorder_questions(step.id, [q2.id, q1.id])
    assert [q.prompt for q in ordered] == ['Segunda', 'Primeira']


def test_multiple_choice_requires_options(ctx):
    quiz = QuizService.create_quiz('Opções', '')
    step = QuizService.add_step(quiz.id)
    question = QuizService.add_question(step.id)

    with pytest.raises(ValidationError) as exc:
        QuizService.update_question(question.id, {'type': 'multiple_choice', 'options': ['  ', '']})
    assert exc.value.field == 'options'

    with pytest.raises(ValidationError):
        QuizService.update_question(question.id, {'type': 'multiple_choice', 'options': ['A', 'A']})

    updated = QuizService.update_question(question.id, {'type': 'multiple_choice', 'options': 'A\nB\n'})
    assert updated.options == ['A', 'B']

    switched = QuizService.update_question(question.id, {'type': 'yes_no'})
    assert switched.options is None


def test_failed_question_update_leaves_question_unchanged(ctx):
    quiz = QuizService.create_quiz('Rollback', '')
    step = QuizService.add_step(quiz.id)
    question = QuizService.add_question(step.id, {'prompt': 'Original'})

    with pytest.raises(ValidationError):
        QuizService.update_question(question.id, {'prompt': 'Alterado', 'type': 'desconhecido'})

    assert QuizService.get_question(question.id).prompt == 'Original'


def test_conditional_logic_must_reference_earlier_question(ctx):
    quiz = QuizService.create_quiz('Lógica', '')
    step = QuizService.add_step(quiz.id)
    first = QuizService.add_question(step.id, {'type': 'yes_no'})
    second = QuizService.add_question(step.id)

    with pytest.raises(ValidationError):
        QuizService.update_question(first.id, {'conditional_logic': {
            'question_id': second.id, 'operator': 'equals', 'value': 'x', 'action': 'show'}})

    with pytest.raises(ValidationError):
        QuizService.update_question(first.id, {'conditional_logic': {
            'question_id': first.id, 'operator': 'equals', 'value': 'x', 'action': 'show'}})

    updated = QuizService.update_question(second.id, {'conditionalLogic': {
        'questionId': first.id, 'operator': 'equals', 'value': 'sim', 'action': 'show'}})
    assert updated.conditional_logic == {
        'question_id': first.id, 'operator': 'equals', 'value': 'sim',
        'action': 'show', 'target_step_id': None,
    }


def test_conditional_logic_rejects_unknown_operator_and_missing_target(ctx):
    quiz = QuizService.create_quiz('Lógica inválida', '')
    step = QuizService.add_step(quiz.id)
    first = QuizService.add_question(step.id)
    second = QuizService.add_question(step.id)

    with pytest.raises(ValidationError):
        QuizService.update_question(second.id, {'conditional_logic': {
            'question_id': first.id, 'operator': 'greater_than', 'value': '1', 'action': 'show'}})
    with pytest.raises(ValidationError):
        QuizService.update_question(second.id, {'conditional_logic': {
            'question_id': first.id, 'operator': 'equals', 'value': '1', 'action': 'skip_to'}})


def test_skip_to_must_jump_forward(ctx):
    quiz = QuizService.create_quiz('Saltos', '')
    s1 = QuizService.add_step(quiz.id)
    s2 = QuizService.add_step(quiz.id)
    s3 = QuizService.add_step(quiz.id)
    q1 = QuizService.add_question(s1.id, {'type': 'yes_no'})
    q2 = QuizService.add_question(s2.id)

    with pytest.raises(ValidationError):
        QuizService.update_question(q2.id, {'conditional_logic': {
            'question_id': q1.id, 'operator': 'equals', 'value': 'nao',
            'action': 'skip_to', 'target_step_id': s1.id}})

    updated = QuizService.update_question(q2.id, {'conditional_logic': {
        'question_id': q1.id, 'operator': 'equals', 'value': 'nao',
        'action': 'skip_to', 'target_step_id': s3.id}})
    assert updated.conditional_logic['target_step_id'] == s3.id


def test_reorder_that_creates_forward_reference_is_rejected(ctx):
    quiz = QuizService.create_quiz('Ciclo', '')
    s1 = QuizService.add_step(quiz.id)
    s2 = QuizService.add_step(quiz.id)
    source = QuizService.add_question(s1.id, {'type': 'yes_no'})
    QuizService.add_question(s2.id, {'conditional_logic': {
        'question_id': source.id, 'operator': 'equals', 'value': 'sim', 'action': 'show'}})

    with pytest.raises(ValidationError):
        QuizService.reorder_steps(quiz.id, [s2.id, s1.id])

    assert _step_orders(quiz.id) == [1, 2]
    assert db.session.get(QuizStep, s1.id).order == 1


def test_deleting_referenced_question_clears_dependent_logic(ctx):
    quiz = QuizService.create_quiz('Limpeza', '')
    step = QuizService.add_step(quiz.id)
    source = QuizService.add_question(step.id, {'type': 'yes_no'})
    dependent = QuizService.add_question(step.id, {'conditional_logic': {
        'question_id': source.id, 'operator': 'equals', 'value': 'sim', 'action': 'show'}})

    QuizService.delete_question(source.id)

    dependent = QuizService.get_question(dependent.id)
    assert dependent.conditional_logic is None
    assert dependent.order == 1


def test_find_by_slug_hides_drafts(ctx):
    quiz = QuizService.create_quiz('Rascunho', '')

    with pytest.raises(NotFound):
        QuizService.find_by_slug(quiz.slug)
    assert QuizService.find_by_slug(quiz.slug, include_drafts=True).id == quiz.id

    QuizService.set_published(quiz.id, True)
    assert QuizService.find_by_slug(quiz.slug).id == quiz.id

    QuizService.set_published(quiz.id, False)
    with pytest.raises(NotFound):
        QuizService.find_by_slug(quiz.slug)


def test_delete_quiz_cascades_steps(ctx):
    quiz_id = QuizService.create_quiz('Apagar', '').id
    step_id = QuizService.add_step(quiz_id).id
    question_id = QuizService.add_question(step_id).id

    QuizService.delete_quiz(quiz_id)
    assert db.session.get(Quiz, quiz_id) is None
    assert db.session.get(QuizStep, step_id) is None
    assert db.session.get(QuizQuestion, question_id) is None


def test_delete_quiz_with_leads_is_rejected(ctx, factory):
    quiz = factory.quiz(steps=[[{'prompt': 'Nome da empresa'}]])
    factory.lead(quiz)
    with pytest.raises(ValidationError):
        QuizService.delete_quiz(quiz.id)
