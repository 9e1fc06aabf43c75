from flask import Blueprint, current_app, jsonify, make_response, request, session

from .attempts import attempt_budget, available_exams, list_results, record_heartbeat, start_attempt, submit_attempt
from .auth import current_user, role_required
from .certificates import render_certificate_pdf
from .errors import NOT_FOUND, Outcome, failure_response
from .incidents import record_incident
from .models import Exam, ExamAttempt, db
from .monitor import attempt_snapshot
from .payments import student_payments
from .proctor import proctor_states
from .suspensions import active_suspension, grant_additional_attempts, remove_suspension

student_bp = Blueprint('student', __name__)


def _own_attempt(attempt_id):
    attempt = db.session.get(ExamAttempt, attempt_id)
    if attempt is None or attempt.student_id != session.get('user_id'):
        return None
    return attempt


def _attempt_not_found():
    return failure_response(Outcome.failure(NOT_FOUND, 'Attempt not found'))


def _payment_id(data):
    try:
        return int(data.get('paymentId', data.get('payment_id')))
    except (TypeError, ValueError):
        return None


@student_bp.route('/exams')
@role_required('student')
def list_exams():
    outcome = available_exams(session['user_id'])
    if not outcome.ok:
        return failure_response(outcome)
    return jsonify({'success': True, 'exams': outcome.value})


@student_bp.route('/exams/<int:exam_id>/start', methods=['POST'])
@role_required('student')
def start_exam(exam_id: int):
    outcome = start_attempt(
        session['user_id'],
        exam_id,
        browser_info=(request.user_agent.string or None),
        ip_address=request.remote_addr,
    )
    if not outcome.ok:
        extra = {}
        if outcome.value is not None and hasattr(outcome.value, 'to_dict'):
            extra['attempt'] = outcome.value.to_dict()
        return failure_response(outcome, **extra)

    attempt = outcome.value
    session['attempt_id'] = attempt.id

    questions = [aq.question.to_dict() for aq in attempt.selected_questions]
    return jsonify({
        'success': True,
        'message': outcome.message or 'Exam started',
        'attempt': attempt.to_dict(),
        'exam': attempt.exam.to_dict(),
        'questions': questions,
        'metrics': attempt_snapshot(attempt)['metrics'],
    })


@student_bp.route('/exams/<int:exam_id>/attempts-remaining')
@role_required('student')
def attempts_remaining(exam_id: int):
    student = current_user()
    exam = db.session.get(Exam, exam_id)
    if not student or not exam:
        return failure_response(Outcome.failure(NOT_FOUND, 'Exam not found'))
    budget = attempt_budget(student, exam)
    return jsonify({'success': True, **budget.to_dict()})


@student_bp.route('/exams/<int:exam_id>/additional-attempts', methods=['POST'])
@role_required('student')
def buy_additional_attempts(exam_id: int):
    data = request.get_json(silent=True) or {}
    payment_id = _payment_id(data)
    if payment_id is None:
        return jsonify({'success': False, 'message': 'Payment id is required'}), 400

    outcome = grant_additional_attempts(session['user_id'], exam_id, payment_id)
    if not outcome.ok:
        extra = {'attempts': outcome.value.to_dict()} if outcome.value is not None else {}
        return failure_response(outcome, **extra)
    return jsonify({'success': True, 'message': outcome.message, 'attempts': outcome.value.to_dict()})


@student_bp.route('/attempts/<int:attempt_id>/submit', methods=['POST'])
@role_required('student')
def submit_exam(attempt_id: int):
    if _own_attempt(attempt_id) is None:
        return _attempt_not_found()

    data = request.get_json(silent=True) or {}
    outcome = submit_attempt(attempt_id, data.get('answers') or [])
    if not outcome.ok:
        return failure_response(outcome)

    attempt = outcome.value
    proctor_states.discard(attempt.id)
    if session.get('attempt_id') == attempt.id:
        session.pop('attempt_id', None)
    budget = attempt_budget(attempt.student, attempt.exam)
    return jsonify({
        'success': True,
        'message': outcome.message or 'Exam submitted',
        'result': attempt.to_dict(),
        'attempts': budget.to_dict(),
    })


@student_bp.route('/attempts/<int:attempt_id>/heartbeat', methods=['POST'])
@role_required('student')
def heartbeat(attempt_id: int):
    if _own_attempt(attempt_id) is None:
        return _attempt_not_found()
    outcome = record_heartbeat(attempt_id)
    if not outcome.ok:
        return failure_response(outcome, status=outcome.value.status if outcome.value is not None else None)
    return jsonify({'success': True, **attempt_snapshot(outcome.value)})


@student_bp.route('/attempts/<int:attempt_id>/metrics')
@role_required('student')
def attempt_metrics(attempt_id: int):
    attempt = _own_attempt(attempt_id)
    if attempt is None:
        return _attempt_not_found()
    data = attempt_snapshot(attempt)
    suspension = active_suspension(attempt.id)
    data['suspension'] = suspension.to_dict() if suspension is not None else None
    return jsonify({'success': True, **data})


@student_bp.route('/attempts/<int:attempt_id>/remove-suspension', methods=['POST'])
@role_required('student')
def pay_suspension(attempt_id: int):
    if _own_attempt(attempt_id) is None:
        return _attempt_not_found()

    data = request.get_json(silent=True) or {}
    payment_id = _payment_id(data)
    if payment_id is None:
        return jsonify({'success': False, 'message': 'Payment id is required'}), 400

    outcome = remove_suspension(attempt_id, payment_id)
    if not outcome.ok:
        return failure_response(outcome)
    session['attempt_id'] = attempt_id
    return jsonify({
        'success': True,
        'message': outcome.message,
        'suspension': outcome.value.to_dict() if outcome.value is not None else None,
    })


@student_bp.route('/security-incidents', methods=['POST'])
@role_required('student')
def report_incident():
    data = request.get_json(silent=True) or {}

    outcome = record_incident(
        session['user_id'],
        data.get('examId', data.get('exam_id')),
        data.get('attemptId', data.get('attempt_id', session.get('attempt_id'))),
        data.get('incidentType', data.get('incident_type')),
        data.get('incidentDetails', data.get('incident_details')),
        user_agent=(request.user_agent.string or None),
        ip_address=request.remote_addr,
    )
    if not outcome.ok:
        return failure_response(outcome)

    report = outcome.value
    return jsonify({
        'success': True,
        'message': 'Security incident recorded',
        **report.to_dict(),
    }), 201


@student_bp.route('/results')
@role_required('student')
def my_results():
    results = list_results(student_id=session['user_id'], exam_id=request.args.get('examId', type=int))
    return jsonify({'success': True, 'count': len(results), 'results': results})


@student_bp.route('/results/certificates')
@role_required('student')
def my_certificates():
    certificates = [
        {
            'attempt_id': r['id'],
            'exam': r['exam'],
            'percentage': r['percentage'],
            'certificate_id': r['certificate_id'],
        }
        for r in list_results(student_id=session['user_id'])
        if r['passed'] and r['certificate_id']
    ]
    return jsonify({'success': True, 'count': len(certificates), 'certificates': certificates})


@student_bp.route('/payments')
@role_required('student')
def my_payments():
    payments = student_payments(session['user_id'])
    return jsonify({'success': True, 'payments': [p.to_dict() for p in payments]})


@student_bp.route('/results/<int:attempt_id>/certificate.pdf')
def certificate_pdf(attempt_id: int):
    if 'user_id' not in session:
        return jsonify({'success': False, 'message': 'Unauthorized'}), 401

    attempt = db.session.get(ExamAttempt, attempt_id)
    if attempt is None or (session.get('role') != 'admin' and attempt.student_id != session['user_id']):
        return _attempt_not_found()
    if not attempt.passed or not attempt.certificate_id:
        return failure_response(Outcome.failure(NOT_FOUND, 'No certificate has been issued for this attempt'))

    pdf = render_certificate_pdf(attempt)
    current_app.logger.info('Certificate %s downloaded', attempt.certificate_id)

    resp = make_response(pdf)
    resp.headers['Content-Type'] = 'application/pdf'
    resp.headers['Content-Disposition'] = f'inline; filename=certificate_{attempt.certificate_id}.pdf'
    return resp
