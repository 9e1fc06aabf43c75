from datetime import datetime

from flask import current_app

from .attempts import attempt_budget, attempt_lock, current_attempt, lock_attempt_row
from .config import resolve_security_settings
from .errors import (
    ALREADY_PASSED,
    ATTEMPT_CLOSED,
    BUDGET_NOT_EXHAUSTED,
    NOT_FOUND,
    NOT_SUSPENDED,
    NOT_VISIBLE,
    Outcome,
)
from .models import (
    ATTEMPT_ABANDONED,
    ATTEMPT_IN_PROGRESS,
    ATTEMPT_SUSPENDED,
    PAYMENT_MAX_ATTEMPTS,
    PAYMENT_SUSPENSION,
    Exam,
    ExamSuspension,
    SecurityIncident,
    User,
    db,
    get_setting,
)
from .payments import claim_payment


def active_suspension(attempt_id):
    return (
        ExamSuspension.query
        .filter_by(attempt_id=attempt_id, removed=False, abandoned=False)
        .order_by(ExamSuspension.suspended_at.desc())
        .first()
    )


def suspend_locked(attempt, reason=None, now=None, incident_count=None) -> Outcome:
    """Suspend ``attempt`` inside the caller's transaction (no commit).

    An already suspended attempt keeps its existing suspension.
    """
    now = now or datetime.utcnow()

    if attempt.status == ATTEMPT_SUSPENDED:
        return Outcome.success(active_suspension(attempt.id), message='Exam already suspended')
    if attempt.status != ATTEMPT_IN_PROGRESS:
        return Outcome.failure(ATTEMPT_CLOSED, f'Cannot suspend an attempt that is {attempt.status}')

    if incident_count is None:
        incident_count = SecurityIncident.query.filter_by(attempt_id=attempt.id).count()

    previous = ExamSuspension.query.filter_by(attempt_id=attempt.id).count()
    if reason is None:
        reason = f'Exceeded maximum allowed security incidents ({attempt.incident_limit})'
        if previous:
            reason = (
                f'Repeatedly exceeded maximum allowed security incidents ({attempt.incident_limit}). '
                f'This is suspension #{previous + 1}.'
            )

    suspension = ExamSuspension(
        attempt_id=attempt.id,
        student_id=attempt.student_id,
        exam_id=attempt.exam_id,
        reason=reason,
        suspended_at=now,
        incident_count_at_suspension=incident_count,
    )
    db.session.add(suspension)
    attempt.status = ATTEMPT_SUSPENDED
    attempt.suspended_at = now

    current_app.logger.info(
        'Suspended attempt %s (student %s, exam %s) after %s incidents',
        attempt.id, attempt.student_id, attempt.exam_id, incident_count,
    )
    return Outcome.success(suspension)


def suspend(attempt_id, reason=None, now=None, incident_count=None) -> Outcome:
    with attempt_lock(attempt_id):
        attempt = lock_attempt_row(attempt_id)
        if not attempt:
            return Outcome.failure(NOT_FOUND, 'Attempt not found')
        outcome = suspend_locked(attempt, reason=reason, now=now, incident_count=incident_count)
        if outcome.ok:
            db.session.commit()
        return outcome


def remove_suspension(attempt_id, payment_id, now=None) -> Outcome:
    """Lift a suspension after payment and resume the attempt.

    ``payment_id`` must be a confirmed, unused suspension payment made by
    the attempt's student for the attempt's exam. The suspended interval
    stops counting against the student, and the batch's
    ``additional_security_incidents_after_removal`` further incidents are
    allowed before the next auto-suspension. Recorded incidents stay in
    the ledger.
    """
    now = now or datetime.utcnow()

    with attempt_lock(attempt_id):
        attempt = lock_attempt_row(attempt_id)
        if not attempt:
            return Outcome.failure(NOT_FOUND, 'Attempt not found')
        if attempt.status != ATTEMPT_SUSPENDED:
            return Outcome.failure(NOT_SUSPENDED, 'No active suspension found for this attempt')

        claimed = claim_payment(payment_id, attempt.student_id, attempt.exam_id, PAYMENT_SUSPENSION, now=now)
        if not claimed.ok:
            db.session.rollback()
            return claimed
        payment = claimed.value

        batch = attempt.batch or (attempt.student.batch if attempt.student else None)
        settings = resolve_security_settings(batch, current_app.config, get_setting)
        incident_count = SecurityIncident.query.filter_by(attempt_id=attempt.id).count()

        if attempt.suspended_at is not None:
            paused = int((now - attempt.suspended_at).total_seconds())
            attempt.paused_seconds = (attempt.paused_seconds or 0) + max(0, paused)
        attempt.status = ATTEMPT_IN_PROGRESS
        attempt.suspended_at = None
        attempt.last_active = now
        attempt.incident_limit = incident_count + settings.additional_incidents_after_removal

        suspension = active_suspension(attempt.id)
        if suspension is not None:
            suspension.removed = True
            suspension.removed_at = now
            suspension.additional_incidents_allowed_after_removal = settings.additional_incidents_after_removal
            suspension.payment_reference = payment.reference
        db.session.commit()

    current_app.logger.info(
        'Removed suspension on attempt %s with payment %s; next limit %s incidents',
        attempt.id, payment.reference, attempt.incident_limit,
    )
    return Outcome.success(suspension, message='Exam suspension has been removed successfully')


def abandon(attempt_id, now=None) -> Outcome:
    """Close a suspended attempt for good, without payment."""
    now = now or datetime.utcnow()

    with attempt_lock(attempt_id):
        attempt = lock_attempt_row(attempt_id)
        if not attempt:
            return Outcome.failure(NOT_FOUND, 'Attempt not found')
        if attempt.status != ATTEMPT_SUSPENDED:
            return Outcome.failure(NOT_SUSPENDED, 'Only suspended attempts can be abandoned')

        suspension = active_suspension(attempt.id)
        if suspension is not None:
            suspension.abandoned = True
        attempt.status = ATTEMPT_ABANDONED
        attempt.end_time = attempt.suspended_at or now
        db.session.commit()

    current_app.logger.info('Attempt %s abandoned while suspended', attempt.id)
    return Outcome.success(attempt)


def grant_additional_attempts(student_id, exam_id, payment_id) -> Outcome:
    """Add the batch's paid attempt allowance once every allowed attempt is used.

    Only a student with no attempt in progress or suspended can buy more
    attempts, and ``payment_id`` must be a confirmed, unused max-attempts
    payment of theirs for this exam.
    """
    student = db.session.get(User, student_id)
    if not student:
        return Outcome.failure(NOT_FOUND, 'Student not found')
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return Outcome.failure(NOT_FOUND, 'Exam not found')
    if student.batch is None:
        return Outcome.failure(NOT_VISIBLE, 'Student is not assigned to any batch')

    with attempt_lock(('start', student.id, exam.id)):
        budget = attempt_budget(student, exam)
        if budget.has_passed:
            return Outcome.failure(ALREADY_PASSED, 'You have passed this exam', value=budget)
        open_attempt = current_attempt(student.id, exam.id)
        if open_attempt is not None and open_attempt.status in (ATTEMPT_IN_PROGRESS, ATTEMPT_SUSPENDED):
            return Outcome.failure(
                BUDGET_NOT_EXHAUSTED,
                f'Attempt {open_attempt.attempt_number} is still {open_attempt.status}',
                value=budget,
            )
        if not budget.exhausted:
            return Outcome.failure(
                BUDGET_NOT_EXHAUSTED,
                f'{budget.remaining} attempt(s) still remaining for this exam',
                value=budget,
            )

        claimed = claim_payment(payment_id, student.id, exam.id, PAYMENT_MAX_ATTEMPTS)
        if not claimed.ok:
            db.session.rollback()
            return Outcome.failure(claimed.error, claimed.message, value=budget)
        payment = claimed.value

        granted = student.batch.additional_attempts_after_payment
        payment.additional_attempts = granted
        db.session.commit()
        budget = attempt_budget(student, exam)

    current_app.logger.info(
        'Granted %s additional attempts to student %s for exam %s (payment %s)',
        granted, student.id, exam.id, payment.reference,
    )
    return Outcome.success(budget, message=f'You have received {granted} additional exam attempts')


def list_suspensions(active_only=True):
    query = ExamSuspension.query
    if active_only:
        query = query.filter_by(removed=False, abandoned=False)
    return query.order_by(ExamSuspension.suspended_at.desc()).all()
