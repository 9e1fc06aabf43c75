import csv

from .errors import INVALID_QUESTION, NOT_FOUND, Outcome
from .models import MAX_OPTIONS, MIN_OPTIONS, Exam, Question, QuestionOption, db

CSV_HEADER = ['question_text', 'category'] + [f'option_{i}' for i in range(1, MAX_OPTIONS + 1)] + ['correct_option']


class InvalidOptions(ValueError):
    pass


def validate_options(options):
    """Normalise an options payload into ``[(text, is_correct), ...]``.

    Accepts dicts ``{'text': ..., 'is_correct': ...}`` (``isCorrect`` also
    accepted) and requires 2-6 non-empty options with exactly one correct.
    """
    if not isinstance(options, (list, tuple)):
        raise InvalidOptions('Options must be a list')
    if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
        raise InvalidOptions(f'Questions must have {MIN_OPTIONS}-{MAX_OPTIONS} options')

    cleaned = []
    for idx, opt in enumerate(options, start=1):
        if not isinstance(opt, dict):
            raise InvalidOptions(f'Option {idx} must be an object')
        text = str(opt.get('text') or '').strip()
        if not text:
            raise InvalidOptions(f'Option {idx} has no text')
        is_correct = bool(opt.get('is_correct', opt.get('isCorrect', False)))
        cleaned.append((text, is_correct))

    correct = sum(1 for _, is_correct in cleaned if is_correct)
    if correct != 1:
        raise InvalidOptions('Exactly one option must be marked correct')
    return cleaned


def add_question(exam_id, text, options, category='General') -> Outcome:
    exam = db.session.get(Exam, exam_id) if exam_id is not None else None
    if exam_id is not None and not exam:
        return Outcome.failure(NOT_FOUND, 'Exam not found')

    text = (text or '').strip()
    if not text:
        return Outcome.failure(INVALID_QUESTION, 'Question text is required')
    try:
        cleaned = validate_options(options)
    except InvalidOptions as e:
        return Outcome.failure(INVALID_QUESTION, str(e))

    question = Question(exam_id=exam_id, text=text, category=(category or 'General').strip())
    for position, (opt_text, is_correct) in enumerate(cleaned):
        question.options.append(QuestionOption(position=position, text=opt_text, is_correct=is_correct))
    db.session.add(question)
    if exam is not None:
        _sync_total_questions(exam)
    db.session.commit()
    return Outcome.success(question)


def _sync_total_questions(exam):
    pool_size = Question.query.filter_by(exam_id=exam.id).count()
    if pool_size > (exam.total_questions or 0):
        exam.total_questions = pool_size


def parse_questions_csv(text_data):
    """Parse question rows from CSV text.

    Returns ``(questions, error)``; on the first bad line ``questions`` is
    empty and ``error`` names the line.
    """
    rows = list(csv.reader(text_data.splitlines()))
    if not rows:
        return [], 'CSV is empty'

    header = [c.strip() for c in rows[0]]
    if header != CSV_HEADER:
        return [], 'CSV header must match exactly: ' + ','.join(CSV_HEADER)

    questions = []
    for line_no, r in enumerate(rows[1:], start=2):
        if not r or all((c or '').strip() == '' for c in r):
            continue
        if len(r) != len(CSV_HEADER):
            return [], f'Invalid column count on line {line_no}'

        values = [x.strip() for x in r]
        q_text, category = values[0], values[1]
        option_texts = [v for v in values[2:2 + MAX_OPTIONS] if v]
        correct_raw = values[-1]

        if not q_text:
            return [], f'Empty question text on line {line_no}'
        try:
            correct = int(correct_raw)
        except ValueError:
            return [], f'Invalid correct_option on line {line_no}'
        if not 1 <= correct <= len(option_texts):
            return [], f'correct_option must be 1-{len(option_texts)} on line {line_no}'

        options = [{'text': t, 'is_correct': i == correct - 1} for i, t in enumerate(option_texts)]
        try:
            validate_options(options)
        except InvalidOptions as e:
            return [], f'{e} on line {line_no}'

        questions.append({'text': q_text, 'category': category or 'General', 'options': options})

    if not questions:
        return [], 'No valid questions found in CSV'
    return questions, None


def import_questions(exam_id, questions) -> Outcome:
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return Outcome.failure(NOT_FOUND, 'Exam not found')

    created = []
    for q in questions:
        question = Question(exam_id=exam.id, text=q['text'], category=q['category'])
        for position, (opt_text, is_correct) in enumerate(validate_options(q['options'])):
            question.options.append(QuestionOption(position=position, text=opt_text, is_correct=is_correct))
        db.session.add(question)
        created.append(question)

    _sync_total_questions(exam)
    db.session.commit()
    return Outcome.success(created)
