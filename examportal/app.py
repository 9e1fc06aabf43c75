from flask import Flask, jsonify, session
from flask_cors import CORS
from flask_socketio import SocketIO, emit
from werkzeug.exceptions import InternalServerError

from .admin import admin_bp
from .auth import auth_bp
from .certificates import retry_pending_certificates
from .config import Config
from .incidents import record_incident
from .models import db, seed_default_settings
from .proctor import ProctorEngine, proctor_states
from .student import student_bp

socketio = SocketIO()

proctor_engine = ProctorEngine()


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(config or Config)

    # Enable CORS with credentials support
    CORS(app, supports_credentials=True)
    db.init_app(app)
    socketio.init_app(app, cors_allowed_origins="*", async_mode=app.config.get('SOCKETIO_ASYNC_MODE'))

    app.register_blueprint(auth_bp)
    app.register_blueprint(student_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/admin/api')

    @app.errorhandler(InternalServerError)
    def handle_server_error(e):
        db.session.rollback()
        original = getattr(e, 'original_exception', None)
        app.logger.error('Request failed: %r', original or e)
        return jsonify({'success': False, 'message': 'Internal server error'}), 500

    with app.app_context():
        db.create_all()
        seed_default_settings()

    return app


# --- Socket.IO proctoring events ---

def handle_incident(attempt_id, incident_type, details, exam_id=None):
    student_id = session.get('user_id')
    if not student_id or session.get('role') != 'student':
        return

    outcome = record_incident(student_id, exam_id, attempt_id, incident_type, details)
    if not outcome.ok:
        emit('warning_alert', {'message': outcome.message, 'error': outcome.error})
        return

    report = outcome.value
    if report.suspended:
        proctor_states.discard(report.incident.attempt_id)
        suspension = report.suspension
        emit('exam_suspended', {
            'attempt_id': report.incident.attempt_id,
            'reason': suspension.reason if suspension is not None else 'Exam suspended',
            'incident_count': report.incident_count,
            'suspension': suspension.to_dict() if suspension is not None else None,
        })
        return

    emit('warning_alert', {
        'message': report.incident.incident_details or report.incident.incident_type,
        'incident_type': report.incident.incident_type,
        'count': report.incident_count,
        'limit': report.incident_limit,
    })


@socketio.on('security_incident')
def handle_security_incident(data):
    data = data or {}
    attempt_id = data.get('attemptId', session.get('attempt_id'))
    handle_incident(
        attempt_id,
        data.get('incidentType'),
        data.get('incidentDetails'),
        exam_id=data.get('examId'),
    )


@socketio.on('process_frame')
def handle_frame(data):
    attempt_id = session.get('attempt_id')
    if not attempt_id:
        return

    data = data or {}
    state = proctor_states.get(attempt_id)
    res = proctor_engine.analyze(
        session_state=state,
        image_data_url=data.get('image'),
        audio_level=data.get('audio_level'),
        client_incident_type=data.get('incident_type'),
    )

    if res.violation:
        handle_incident(attempt_id, res.incident_type, res.message)


@socketio.on('tab_change')
def handle_tab_change(data=None):
    attempt_id = session.get('attempt_id')
    if not attempt_id:
        return

    state = proctor_states.get(attempt_id)
    res = proctor_engine.analyze_tab_event(state, 'Tab switch / window minimized detected')
    if res.violation:
        handle_incident(attempt_id, res.incident_type, res.message)


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        pending = retry_pending_certificates()
        if pending:
            app.logger.info('Retrying %s pending certificate(s)', pending)

    socketio.run(app, debug=True, port=5000)
