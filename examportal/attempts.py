import random
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from . import errors
from .certificates import schedule_certificate
from .config import resolve_security_settings
from .errors import (
    ALREADY_PASSED,
    ATTEMPT_CLOSED,
    ATTEMPTS_EXHAUSTED,
    INSUFFICIENT_QUESTIONS,
    NOT_FOUND,
    NOT_VISIBLE,
    Outcome,
)
from .models import (
    ATTEMPT_ABANDONED,
    ATTEMPT_IN_PROGRESS,
    ATTEMPT_SUBMITTED,
    ATTEMPT_SUSPENDED,
    DEFAULT_PASS_PERCENTAGE,
    PAYMENT_MAX_ATTEMPTS,
    AttemptAnswer,
    AttemptQuestion,
    Exam,
    ExamAttempt,
    Payment,
    Question,
    User,
    db,
    get_setting,
)
from .subscriptions import validate_student_subscription

_locks_guard = threading.Lock()
# key -> [lock, holders and waiters]; entries go away with their last user
_locks = {}


@contextmanager
def attempt_lock(key):
    """Serialise work on one attempt (or one student/exam pair) in this process."""
    with _locks_guard:
        entry = _locks.get(key)
        if entry is None:
            entry = _locks[key] = [threading.Lock(), 0]
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _locks[key]


def lock_attempt_row(attempt_id):
    return (
        ExamAttempt.query
        .filter_by(id=attempt_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


@dataclass
class AttemptBudget:
    max_attempts: int
    additional_attempts: int
    total_allowed: int
    used: int
    remaining: int
    has_passed: bool

    @property
    def exhausted(self):
        return self.remaining <= 0

    def to_dict(self):
        data = asdict(self)
        data['exhausted'] = self.exhausted
        return data


def attempt_budget(student, exam) -> AttemptBudget:
    """Attempts allowed for ``student`` on ``exam``: batch limit plus paid grants.

    Every attempt ever started counts as used, abandoned ones included, so
    attempt numbers never run past the allowed total.
    """
    max_attempts = student.batch.max_attempts if student.batch is not None else 0
    additional = (
        db.session.query(func.coalesce(func.sum(Payment.additional_attempts), 0))
        .filter(
            Payment.student_id == student.id,
            Payment.exam_id == exam.id,
            Payment.payment_type == PAYMENT_MAX_ATTEMPTS,
            Payment.applied_at.isnot(None),
        )
        .scalar()
    )
    attempts = ExamAttempt.query.filter_by(student_id=student.id, exam_id=exam.id).all()
    total = max_attempts + int(additional or 0)
    used = len(attempts)
    return AttemptBudget(
        max_attempts=max_attempts,
        additional_attempts=int(additional or 0),
        total_allowed=total,
        used=used,
        remaining=max(0, total - used),
        has_passed=any(a.passed for a in attempts),
    )


def current_attempt(student_id, exam_id):
    return (
        ExamAttempt.query
        .filter_by(student_id=student_id, exam_id=exam_id)
        .filter(ExamAttempt.status != ATTEMPT_ABANDONED)
        .order_by(ExamAttempt.attempt_number.desc())
        .first()
    )


def _check_visibility(student, exam):
    if not exam.is_active:
        return Outcome.failure(NOT_VISIBLE, 'This exam is not available')
    if not student.batch_id or student.batch is None:
        return Outcome.failure(NOT_VISIBLE, 'Student is not assigned to any batch')
    if not exam.is_assigned_to(student.batch_id):
        return Outcome.failure(NOT_VISIBLE, 'This exam is not assigned to your batch')
    return None


def start_attempt(student_id, exam_id, now=None, rng=None, browser_info=None, ip_address=None) -> Outcome:
    """Open a new attempt, or hand back the one already in progress.

    The question subset is drawn once, uniformly without replacement, and
    stored on the attempt; resuming never redraws it.
    """
    now = now or datetime.utcnow()

    student = db.session.get(User, student_id)
    if not student or student.role != 'student':
        return Outcome.failure(NOT_FOUND, 'Student not found')
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return Outcome.failure(NOT_FOUND, 'Exam not found')

    denied = _check_visibility(student, exam)
    if denied:
        return denied

    subscription = validate_student_subscription(student, now)
    if not subscription.ok:
        return subscription

    with attempt_lock(('start', student.id, exam.id)):
        previous = (
            ExamAttempt.query
            .filter_by(student_id=student.id, exam_id=exam.id)
            .order_by(ExamAttempt.attempt_number.asc())
            .all()
        )

        if any(a.passed for a in previous):
            return Outcome.failure(ALREADY_PASSED, 'You have passed this exam')

        for a in previous:
            if a.status == ATTEMPT_SUSPENDED:
                return Outcome.failure(
                    errors.ATTEMPT_SUSPENDED, 'Your attempt is suspended. Remove the suspension to continue.', value=a
                )
            if a.status == ATTEMPT_IN_PROGRESS:
                return Outcome.success(a, message='Resuming attempt in progress')

        budget = attempt_budget(student, exam)
        if budget.exhausted:
            return Outcome.failure(
                ATTEMPTS_EXHAUSTED,
                f'Maximum attempts ({budget.total_allowed}) reached for this exam',
                value=budget,
            )

        pool = Question.query.filter_by(exam_id=exam.id).order_by(Question.id.asc()).all()
        to_display = exam.questions_to_display
        if not pool:
            return Outcome.failure(INSUFFICIENT_QUESTIONS, 'This exam has no questions yet')
        if len(pool) < to_display:
            return Outcome.failure(
                INSUFFICIENT_QUESTIONS,
                f'This exam needs {to_display} questions but only {len(pool)} are available',
            )

        drawn = (rng or random).sample(pool, to_display)

        settings = resolve_security_settings(student.batch, current_app.config, get_setting)
        attempt = ExamAttempt(
            student_id=student.id,
            exam_id=exam.id,
            batch_id=student.batch_id,
            attempt_number=len(previous) + 1,
            status=ATTEMPT_IN_PROGRESS,
            start_time=now,
            last_active=now,
            incident_limit=settings.max_incidents,
            browser_info=browser_info,
            ip_address=ip_address,
        )
        for position, q in enumerate(drawn):
            attempt.selected_questions.append(AttemptQuestion(question_id=q.id, position=position))
        db.session.add(attempt)
        db.session.commit()

    current_app.logger.info(
        'Student %s started attempt %s/%s of exam %s',
        student.id, attempt.attempt_number, budget.total_allowed, exam.id,
    )
    return Outcome.success(attempt)


def _normalize_answers(answers):
    """Map question id -> selected option index.

    Accepts ``[{'questionId': 1, 'selectedOptionIndex': 0}, ...]`` (snake
    case keys too) or a plain ``{question_id: index}`` mapping. Later
    entries for the same question win.
    """
    if isinstance(answers, dict):
        items = list(answers.items())
    else:
        items = []
        for entry in answers or []:
            if not isinstance(entry, dict):
                continue
            qid = entry.get('questionId', entry.get('question_id'))
            selected = entry.get('selectedOptionIndex', entry.get('selected_option'))
            items.append((qid, selected))

    chosen = {}
    for qid, selected in items:
        try:
            qid = int(qid)
        except (TypeError, ValueError):
            continue
        try:
            chosen[qid] = int(selected) if selected is not None else None
        except (TypeError, ValueError):
            chosen[qid] = None
    return chosen


def submit_attempt(attempt_id, answers, now=None) -> Outcome:
    """Score an attempt against the questions drawn for it.

    Resubmitting a submitted attempt returns the stored result untouched.
    """
    now = now or datetime.utcnow()

    with attempt_lock(attempt_id):
        attempt = lock_attempt_row(attempt_id)
        if not attempt:
            return Outcome.failure(NOT_FOUND, 'Attempt not found')

        if attempt.status == ATTEMPT_SUBMITTED:
            return Outcome.success(attempt, message='This attempt was already submitted')
        if attempt.status == ATTEMPT_SUSPENDED:
            return Outcome.failure(errors.ATTEMPT_SUSPENDED, 'This attempt is suspended and cannot be submitted')
        if attempt.status != ATTEMPT_IN_PROGRESS:
            return Outcome.failure(ATTEMPT_CLOSED, 'This attempt is closed')

        chosen = _normalize_answers(answers)

        score = 0
        for aq in attempt.selected_questions:
            question = aq.question
            selected = chosen.get(aq.question_id)
            if selected is not None and not 0 <= selected < len(question.options):
                selected = None
            is_correct = selected is not None and selected == question.correct_index()
            if is_correct:
                score += 1
            attempt.answers.append(
                AttemptAnswer(question_id=aq.question_id, selected_option=selected, is_correct=is_correct)
            )

        total = len(attempt.selected_questions)
        percentage = round(score / total * 100.0, 2) if total else 0.0
        pass_percentage = DEFAULT_PASS_PERCENTAGE
        if attempt.exam is not None and attempt.exam.pass_percentage is not None:
            pass_percentage = attempt.exam.pass_percentage

        attempt.score = score
        attempt.total_questions = total
        attempt.percentage = percentage
        # compared unrounded: score/total >= pass_percentage/100
        attempt.passed = total > 0 and score * 100 >= float(pass_percentage) * total
        attempt.status = ATTEMPT_SUBMITTED
        attempt.end_time = now
        attempt.last_active = now
        db.session.commit()

    current_app.logger.info(
        'Attempt %s submitted: %s/%s (%.2f%%) %s',
        attempt.id, score, total, percentage, attempt.result_status,
    )

    if attempt.passed:
        try:
            schedule_certificate(attempt.id)
        except Exception:
            # certificate delivery is retried separately and must not undo a submit
            current_app.logger.exception('Could not schedule certificate for attempt %s', attempt.id)

    return Outcome.success(attempt)


def record_heartbeat(attempt_id, now=None) -> Outcome:
    now = now or datetime.utcnow()
    attempt = db.session.get(ExamAttempt, attempt_id)
    if not attempt:
        return Outcome.failure(NOT_FOUND, 'Attempt not found')
    if attempt.status == ATTEMPT_SUSPENDED:
        return Outcome.failure(errors.ATTEMPT_SUSPENDED, 'This attempt is suspended', value=attempt)
    if attempt.status != ATTEMPT_IN_PROGRESS:
        return Outcome.failure(ATTEMPT_CLOSED, 'This attempt is closed', value=attempt)
    attempt.last_active = now
    db.session.commit()
    return Outcome.success(attempt)


def _access_badge(budget, attempt):
    if budget.has_passed:
        return False, 'Passed'
    if attempt is not None and attempt.status == ATTEMPT_SUSPENDED:
        return False, 'Suspended'
    if attempt is not None and attempt.status == ATTEMPT_IN_PROGRESS:
        return True, 'In progress'
    if budget.exhausted:
        return False, 'All attempts used'
    return True, 'Available now'


def available_exams(student_id):
    student = db.session.get(User, student_id)
    if not student:
        return Outcome.failure(NOT_FOUND, 'Student not found')
    if student.batch is None:
        return Outcome.failure(NOT_VISIBLE, 'Student is not assigned to any batch')

    data = []
    for exam in student.batch.exams:
        if not exam.is_active:
            continue
        budget = attempt_budget(student, exam)
        allowed, badge = _access_badge(budget, current_attempt(student.id, exam.id))
        item = exam.to_dict()
        item.update({'attempts': budget.to_dict(), 'allowed': allowed, 'badge_text': badge})
        data.append(item)
    return Outcome.success(data)


def list_results(student_id=None, exam_id=None):
    """Submitted attempts, newest first; all students' when ``student_id`` is None."""
    query = ExamAttempt.query.filter_by(status=ATTEMPT_SUBMITTED)
    if student_id is not None:
        query = query.filter_by(student_id=student_id)
    if exam_id is not None:
        query = query.filter_by(exam_id=exam_id)
    attempts = query.order_by(ExamAttempt.end_time.desc(), ExamAttempt.id.desc()).all()

    results = []
    for attempt in attempts:
        item = attempt.to_dict()
        item['exam'] = {
            'id': attempt.exam.id,
            'name': attempt.exam.name,
            'pass_percentage': attempt.exam.pass_percentage,
        } if attempt.exam is not None else None
        item['student'] = {
            'id': attempt.student.id,
            'name': attempt.student.name,
            'email': attempt.student.email,
        } if attempt.student is not None else None
        results.append(item)
    return results
