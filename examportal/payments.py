from datetime import datetime

from flask import current_app

from .errors import NOT_FOUND, PAYMENT_ALREADY_APPLIED, PAYMENT_MISMATCH, PAYMENT_NOT_CONFIRMED, Outcome
from .models import PAYMENT_STATUSES, PAYMENT_SUCCESS, PAYMENT_TYPES, Exam, Payment, User, db


def record_payment(student_id, exam_id, payment_type, reference, status=PAYMENT_SUCCESS) -> Outcome:
    """Store a payment as reported by the payment provider.

    Reporting a known reference again updates its status, so a pending
    payment can be confirmed later. A payment that was already applied is
    returned unchanged.
    """
    if payment_type not in PAYMENT_TYPES:
        return Outcome.failure(PAYMENT_MISMATCH, f'Unknown payment type: {payment_type}')
    if status not in PAYMENT_STATUSES:
        return Outcome.failure(PAYMENT_MISMATCH, f'Unknown payment status: {status}')

    student = db.session.get(User, student_id)
    if not student or student.role != 'student':
        return Outcome.failure(NOT_FOUND, 'Student not found')
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return Outcome.failure(NOT_FOUND, 'Exam not found')

    payment = Payment.query.filter_by(reference=reference).first()
    if payment is not None:
        if (payment.student_id, payment.exam_id, payment.payment_type) != (student.id, exam.id, payment_type):
            return Outcome.failure(PAYMENT_MISMATCH, 'This payment reference belongs to a different payment')
        if payment.applied:
            return Outcome.success(payment, message='This payment has already been applied')
        payment.status = status
    else:
        payment = Payment(
            student_id=student.id,
            exam_id=exam.id,
            payment_type=payment_type,
            reference=reference,
            status=status,
        )
        db.session.add(payment)
    db.session.commit()

    current_app.logger.info(
        'Payment %s (%s) for student %s, exam %s is %s',
        reference, payment_type, student.id, exam.id, status,
    )
    return Outcome.success(payment)


def claim_payment(payment_id, student_id, exam_id, payment_type, now=None) -> Outcome:
    """Mark a confirmed payment as spent, inside the caller's transaction (no commit).

    The payment must belong to ``student_id``, be for ``exam_id`` and
    ``payment_type``, have succeeded and not have been applied before.
    """
    payment = (
        Payment.query
        .filter_by(id=payment_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    # another student's payment looks the same as a missing one
    if payment is None or payment.student_id != student_id:
        return Outcome.failure(NOT_FOUND, 'Payment not found')
    if payment.exam_id != exam_id:
        return Outcome.failure(PAYMENT_MISMATCH, 'This payment is for a different exam')
    if payment.payment_type != payment_type:
        return Outcome.failure(PAYMENT_MISMATCH, 'Invalid payment type')
    if payment.status != PAYMENT_SUCCESS:
        return Outcome.failure(PAYMENT_NOT_CONFIRMED, 'Payment has not been completed')
    if payment.applied:
        return Outcome.failure(PAYMENT_ALREADY_APPLIED, 'This payment has already been applied')

    payment.applied_at = now or datetime.utcnow()
    return Outcome.success(payment)


def student_payments(student_id):
    return (
        Payment.query
        .filter_by(student_id=student_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )
