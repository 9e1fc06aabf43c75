from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from .attempts import list_results
from .auth import role_required
from .errors import INVALID_QUESTION, NOT_FOUND, PAYMENT_MISMATCH, Outcome, failure_response
from .incidents import incident_summary, list_incidents, student_incidents
from .models import (
    DEFAULT_SETTINGS,
    PAYMENT_MAX_ATTEMPTS,
    PAYMENT_SUCCESS,
    PAYMENT_SUSPENSION,
    ExamAttempt,
    Setting,
    User,
    db,
)
from .monitor import active_sessions
from .payments import record_payment
from .proctor import proctor_states
from .questions import add_question, import_questions, parse_questions_csv
from .suspensions import abandon, grant_additional_attempts, list_suspensions, remove_suspension, suspend

admin_bp = Blueprint('admin', __name__)

SETTING_DESCRIPTIONS = {key: description for key, _, description in DEFAULT_SETTINGS}


def _int_arg(name, default=None):
    raw = request.args.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@admin_bp.route('/active-sessions')
@role_required('admin')
def get_active_sessions():
    return jsonify({'success': True, **active_sessions()})


@admin_bp.route('/security-incidents')
@role_required('admin')
def get_security_incidents():
    try:
        data = list_incidents(
            page=_int_arg('page', 1),
            limit=_int_arg('limit', 20),
            exam_id=_int_arg('examId'),
            start_date=request.args.get('startDate') or None,
            end_date=request.args.get('endDate') or None,
        )
    except ValueError:
        return jsonify({'success': False, 'message': 'Invalid date filter'}), 400
    return jsonify({'success': True, **data})


@admin_bp.route('/security-incidents/summary')
@role_required('admin')
def get_security_incident_summary():
    return jsonify({'success': True, **incident_summary()})


@admin_bp.route('/security-incidents/student/<int:student_id>')
@role_required('admin')
def get_student_security_incidents(student_id: int):
    student = db.session.get(User, student_id)
    if not student:
        return failure_response(Outcome.failure(NOT_FOUND, 'Student not found'))
    return jsonify({'success': True, 'student': student.to_dict(), **student_incidents(student.id)})


@admin_bp.route('/suspensions')
@role_required('admin')
def get_suspensions():
    active_only = request.args.get('all', '').lower() not in ('1', 'true', 'yes')
    suspensions = list_suspensions(active_only=active_only)
    return jsonify({'success': True, 'suspensions': [s.to_dict() for s in suspensions]})


@admin_bp.route('/attempts/<int:attempt_id>/suspend', methods=['POST'])
@role_required('admin')
def suspend_attempt(attempt_id: int):
    data = request.get_json(silent=True) or {}
    outcome = suspend(attempt_id, reason=(data.get('reason') or '').strip() or None)
    if not outcome.ok:
        return failure_response(outcome)
    proctor_states.discard(attempt_id)
    return jsonify({
        'success': True,
        'message': outcome.message or 'Exam suspended',
        'suspension': outcome.value.to_dict() if outcome.value is not None else None,
    })


@admin_bp.route('/attempts/<int:attempt_id>/abandon', methods=['POST'])
@role_required('admin')
def abandon_attempt(attempt_id: int):
    outcome = abandon(attempt_id)
    if not outcome.ok:
        return failure_response(outcome)
    proctor_states.discard(attempt_id)
    return jsonify({'success': True, 'message': 'Attempt abandoned', 'attempt': outcome.value.to_dict()})


def _admin_payment(data, student_id, exam_id, payment_type):
    """Payment id to apply: ``paymentId`` as given, or ``paymentRef`` recorded as confirmed."""
    if data.get('paymentId', data.get('payment_id')) is not None:
        try:
            return Outcome.success(int(data.get('paymentId', data.get('payment_id'))))
        except (TypeError, ValueError):
            return Outcome.failure(PAYMENT_MISMATCH, 'paymentId must be an integer')

    payment_ref = (data.get('paymentRef') or data.get('payment_reference') or '').strip()
    if not payment_ref:
        return Outcome.failure(PAYMENT_MISMATCH, 'Payment reference is required')
    recorded = record_payment(student_id, exam_id, payment_type, payment_ref)
    if not recorded.ok:
        return recorded
    return Outcome.success(recorded.value.id)


@admin_bp.route('/attempts/<int:attempt_id>/remove-suspension', methods=['POST'])
@role_required('admin')
def lift_suspension(attempt_id: int):
    data = request.get_json(silent=True) or {}
    attempt = db.session.get(ExamAttempt, attempt_id)
    if attempt is None:
        return failure_response(Outcome.failure(NOT_FOUND, 'Attempt not found'))

    payment = _admin_payment(data, attempt.student_id, attempt.exam_id, PAYMENT_SUSPENSION)
    if not payment.ok:
        return failure_response(payment)

    outcome = remove_suspension(attempt_id, payment.value)
    if not outcome.ok:
        return failure_response(outcome)
    return jsonify({
        'success': True,
        'message': outcome.message,
        'suspension': outcome.value.to_dict() if outcome.value is not None else None,
    })


@admin_bp.route('/attempts/grant', methods=['POST'])
@role_required('admin')
def grant_attempts():
    data = request.get_json(silent=True) or {}
    try:
        student_id = int(data.get('studentId', data.get('student_id')))
        exam_id = int(data.get('examId', data.get('exam_id')))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'studentId and examId are required'}), 400

    payment = _admin_payment(data, student_id, exam_id, PAYMENT_MAX_ATTEMPTS)
    if not payment.ok:
        return failure_response(payment)

    outcome = grant_additional_attempts(student_id, exam_id, payment.value)
    if not outcome.ok:
        extra = {'attempts': outcome.value.to_dict()} if outcome.value is not None else {}
        return failure_response(outcome, **extra)
    return jsonify({'success': True, 'message': outcome.message, 'attempts': outcome.value.to_dict()})


@admin_bp.route('/payments', methods=['POST'])
@role_required('admin')
def confirm_payment():
    data = request.get_json(silent=True) or {}
    reference = (data.get('paymentRef') or data.get('payment_reference') or '').strip()
    try:
        student_id = int(data.get('studentId', data.get('student_id')))
        exam_id = int(data.get('examId', data.get('exam_id')))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'studentId and examId are required'}), 400
    if not reference:
        return jsonify({'success': False, 'message': 'Payment reference is required'}), 400

    outcome = record_payment(
        student_id,
        exam_id,
        data.get('paymentType', data.get('payment_type')),
        reference,
        status=data.get('status') or PAYMENT_SUCCESS,
    )
    if not outcome.ok:
        return failure_response(outcome)
    return jsonify({
        'success': True,
        'message': outcome.message or 'Payment recorded',
        'payment': outcome.value.to_dict(),
    }), 201


@admin_bp.route('/results')
@role_required('admin')
def get_results():
    results = list_results(student_id=_int_arg('studentId'), exam_id=_int_arg('examId'))
    return jsonify({'success': True, 'count': len(results), 'results': results})


@admin_bp.route('/settings', methods=['GET'])
@role_required('admin')
def get_settings():
    rows = Setting.query.order_by(Setting.key.asc()).all()
    return jsonify({
        'success': True,
        'settings': {r.key: r.value for r in rows},
        'descriptions': {r.key: r.description for r in rows},
    })


@admin_bp.route('/settings', methods=['PUT'])
@role_required('admin')
def update_settings():
    data = request.get_json(silent=True) or {}
    unknown = sorted(k for k in data if k not in SETTING_DESCRIPTIONS)
    if unknown:
        return jsonify({'success': False, 'message': 'Unknown setting(s): ' + ', '.join(unknown)}), 400

    if 'security.maxIncidents' in data:
        try:
            if int(data['security.maxIncidents']) < 1:
                raise ValueError
        except (TypeError, ValueError):
            return jsonify({'success': False, 'message': 'security.maxIncidents must be a positive integer'}), 400

    now = datetime.utcnow()
    for key, value in data.items():
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        row = Setting.query.filter_by(key=key).first()
        if row is None:
            row = Setting(key=key, description=SETTING_DESCRIPTIONS[key])
            db.session.add(row)
        row.value = str(value)
        row.updated_at = now
    db.session.commit()

    current_app.logger.info('Settings updated: %s', ', '.join(sorted(data)))
    rows = Setting.query.order_by(Setting.key.asc()).all()
    return jsonify({'success': True, 'message': 'Settings saved', 'settings': {r.key: r.value for r in rows}})


@admin_bp.route('/exams/<int:exam_id>/questions', methods=['POST'])
@role_required('admin')
def create_question(exam_id: int):
    data = request.get_json(silent=True) or {}
    outcome = add_question(
        exam_id,
        data.get('text', data.get('question_text')),
        data.get('options'),
        category=data.get('category') or 'General',
    )
    if not outcome.ok:
        return failure_response(outcome)
    return jsonify({'success': True, 'question': outcome.value.to_dict(reveal_answer=True)}), 201


@admin_bp.route('/exams/<int:exam_id>/questions/csv', methods=['POST'])
@role_required('admin')
def upload_questions_csv(exam_id: int):
    f = request.files.get('csv_file')
    if not f or not f.filename:
        return jsonify({'success': False, 'message': 'CSV file is required'}), 400

    raw = f.read()
    try:
        text_data = raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        return jsonify({'success': False, 'message': 'CSV must be UTF-8 encoded'}), 400

    questions, error = parse_questions_csv(text_data)
    if error:
        return failure_response(Outcome.failure(INVALID_QUESTION, error))

    outcome = import_questions(exam_id, questions)
    if not outcome.ok:
        return failure_response(outcome)
    current_app.logger.info('Imported %s questions into exam %s', len(outcome.value), exam_id)
    return jsonify({
        'success': True,
        'message': f'{len(outcome.value)} questions imported',
        'questions': [q.to_dict(reveal_answer=True) for q in outcome.value],
    }), 201
