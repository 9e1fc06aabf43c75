import base64

import cv2
import numpy as np
import pytest
from conftest import login

from examportal import app as app_module
from examportal.app import socketio
from examportal.models import ATTEMPT_SUSPENDED, ExamAttempt, SecurityIncident, db
from examportal.proctor import ProctorEngine, proctor_states


@pytest.fixture(autouse=True)
def fresh_proctor_state():
    proctor_states.clear()
    yield
    proctor_states.clear()


@pytest.fixture
def exam_session(app, client, make_batch, make_student, make_exam):
    batch = make_batch(max_security_incidents=2)
    student = make_student(batch)
    exam = make_exam(batch)
    login(client, student)
    attempt_id = client.post(f'/api/exams/{exam.id}/start').get_json()['attempt']['id']
    sio = socketio.test_client(app, flask_test_client=client)
    assert sio.is_connected()
    yield sio, exam, attempt_id
    sio.disconnect()


def events(sio):
    return [(e['name'], e['args'][0]) for e in sio.get_received()]


def frame_url():
    ok, buf = cv2.imencode('.jpg', np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return 'data:image/jpeg;base64,' + base64.b64encode(buf.tobytes()).decode('ascii')


def test_security_incident_warns_then_suspends(exam_session):
    sio, exam, attempt_id = exam_session

    sio.emit('security_incident', {'examId': exam.id, 'incidentType': 'paste-attempt', 'incidentDetails': 'ctrl+v'})
    received = events(sio)
    assert received[0][0] == 'warning_alert'
    assert received[0][1]['count'] == 1
    assert received[0][1]['limit'] == 2

    sio.emit('security_incident', {'examId': exam.id, 'incidentType': 'paste-attempt'})
    received = events(sio)
    assert received[0][0] == 'exam_suspended'
    assert received[0][1]['attempt_id'] == attempt_id
    assert db.session.get(ExamAttempt, attempt_id).status == ATTEMPT_SUSPENDED


def test_tab_change_event(exam_session):
    sio, _, attempt_id = exam_session

    sio.emit('tab_change', {})

    name, payload = events(sio)[0]
    assert name == 'warning_alert'
    assert payload['incident_type'] == 'tab-change'
    assert SecurityIncident.query.filter_by(attempt_id=attempt_id).count() == 1


def test_process_frame_flags_multiple_faces(exam_session, monkeypatch):
    sio, _, attempt_id = exam_session
    monkeypatch.setattr(app_module, 'proctor_engine', ProctorEngine(face_counter=lambda img: 2))

    sio.emit('process_frame', {'image': frame_url(), 'audio_level': 0.0})

    name, payload = events(sio)[0]
    assert name == 'warning_alert'
    assert payload['incident_type'] == 'multiple-faces'
    assert SecurityIncident.query.filter_by(attempt_id=attempt_id).one().incident_type == 'multiple-faces'


def test_clean_frame_records_nothing(exam_session, monkeypatch):
    sio, _, _ = exam_session
    monkeypatch.setattr(app_module, 'proctor_engine', ProctorEngine(face_counter=lambda img: 1))

    sio.emit('process_frame', {'image': frame_url()})

    assert events(sio) == []
    assert SecurityIncident.query.count() == 0


def test_events_without_login_are_ignored(app):
    sio = socketio.test_client(app)

    sio.emit('tab_change', {})

    assert sio.get_received() == []
    assert SecurityIncident.query.count() == 0
    sio.disconnect()


def test_suspension_drops_proctor_state(exam_session):
    sio, exam, attempt_id = exam_session

    sio.emit('tab_change', {})
    assert attempt_id in proctor_states
    sio.emit('security_incident', {'examId': exam.id, 'incidentType': 'paste-attempt'})

    assert events(sio)[-1][0] == 'exam_suspended'
    assert attempt_id not in proctor_states


def test_submit_drops_proctor_state(exam_session, client):
    sio, _, attempt_id = exam_session
    sio.emit('tab_change', {})
    assert len(proctor_states) == 1

    resp = client.post(f'/api/attempts/{attempt_id}/submit', json={'answers': []})

    assert resp.status_code == 200
    assert len(proctor_states) == 0


def test_admin_abandon_drops_proctor_state(app, exam_session, make_admin):
    sio, _, attempt_id = exam_session
    sio.emit('tab_change', {})
    admin_client = app.test_client()
    login(admin_client, make_admin())

    admin_client.post(f'/admin/api/attempts/{attempt_id}/suspend', json={})
    assert attempt_id not in proctor_states
    proctor_states.get(attempt_id)
    admin_client.post(f'/admin/api/attempts/{attempt_id}/abandon')

    assert attempt_id not in proctor_states
