import pytest

from examportal import errors
from examportal.models import Exam, Question, db
from examportal.questions import CSV_HEADER, InvalidOptions, add_question, import_questions, parse_questions_csv, validate_options


def opts(n, correct=0):
    return [{'text': f'opt {i}', 'is_correct': i == correct} for i in range(n)]


def test_validate_options_bounds():
    assert len(validate_options(opts(2))) == 2
    assert len(validate_options(opts(6, correct=5))) == 6
    with pytest.raises(InvalidOptions):
        validate_options(opts(1))
    with pytest.raises(InvalidOptions):
        validate_options(opts(7))


def test_validate_options_needs_exactly_one_correct():
    both = opts(3)
    both[1]['is_correct'] = True
    with pytest.raises(InvalidOptions):
        validate_options(both)
    with pytest.raises(InvalidOptions):
        validate_options(opts(3, correct=-1))


def test_validate_options_accepts_camel_case_flag():
    cleaned = validate_options([{'text': 'a', 'isCorrect': False}, {'text': 'b', 'isCorrect': True}])
    assert cleaned == [('a', False), ('b', True)]


def test_add_question_grows_pool(make_exam):
    exam = make_exam(pool=2, display=2)

    outcome = add_question(exam.id, 'New question?', opts(4, correct=2), category='Logic')

    assert outcome.ok
    assert outcome.value.correct_index() == 2
    assert db.session.get(Exam, exam.id).total_questions == 3


def test_add_question_rejects_bad_options(make_exam):
    exam = make_exam(pool=1, display=1)

    outcome = add_question(exam.id, 'Bad', opts(1))

    assert outcome.error == errors.INVALID_QUESTION
    assert Question.query.filter_by(exam_id=exam.id).count() == 1


def test_add_question_unknown_exam(app):
    assert add_question(404, 'Q', opts(2)).error == errors.NOT_FOUND


def csv_text(*rows):
    lines = [','.join(CSV_HEADER)] + [','.join(r) for r in rows]
    return '\n'.join(lines)


def test_parse_csv_rows():
    text = csv_text(
        ['What is 1+1?', 'Math', '1', '2', '3', '', '', '', '2'],
        ['Capital of France?', '', 'Paris', 'Rome', '', '', '', '', '1'],
    )

    questions, error = parse_questions_csv(text)

    assert error is None
    assert len(questions) == 2
    assert [o['is_correct'] for o in questions[0]['options']] == [False, True, False]
    assert questions[1]['category'] == 'General'


def test_parse_csv_reports_line():
    text = csv_text(
        ['Fine', 'Math', 'a', 'b', '', '', '', '', '1'],
        ['Broken', 'Math', 'a', 'b', '', '', '', '', '5'],
    )

    questions, error = parse_questions_csv(text)

    assert questions == []
    assert 'line 3' in error


def test_parse_csv_header_must_match():
    questions, error = parse_questions_csv('question,answer\nq,a\n')

    assert questions == []
    assert error.startswith('CSV header must match exactly')


def test_import_questions(make_exam):
    exam = make_exam(pool=0, display=1)
    questions, _ = parse_questions_csv(csv_text(['Q1', 'X', 'a', 'b', 'c', '', '', '', '3']))

    outcome = import_questions(exam.id, questions)

    assert outcome.ok
    assert outcome.value[0].correct_index() == 2
    assert Question.query.filter_by(exam_id=exam.id).count() == 1
