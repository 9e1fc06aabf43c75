import threading

import pytest

from examportal import attempts
from examportal.app import create_app
from examportal.attempts import start_attempt
from examportal.config import TestConfig
from examportal.incidents import record_incident
from examportal.models import ATTEMPT_SUSPENDED, ExamAttempt, ExamSuspension, SecurityIncident, db

REPORTERS = 8


@pytest.fixture
def app(tmp_path):
    # threads need their own connections to one shared database
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'exams.db'}"

    app = create_app(FileConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


def run_in_threads(app, target, count):
    barrier = threading.Barrier(count)
    results, failures = [], []

    def worker(i):
        barrier.wait()
        with app.app_context():
            try:
                results.append(target(i))
            except Exception as exc:
                failures.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert failures == []
    return results


def test_racing_incidents_suspend_once(app, make_batch, make_student, make_exam):
    batch = make_batch(max_security_incidents=3)
    student = make_student(batch)
    exam = make_exam(batch)
    attempt = start_attempt(student.id, exam.id).value
    student_id, exam_id, attempt_id = student.id, exam.id, attempt.id

    def report(i):
        outcome = record_incident(student_id, exam_id, attempt_id, 'tab-change', f'burst {i}')
        assert outcome.ok
        return outcome.value.incident.caused_suspension

    flags = run_in_threads(app, report, REPORTERS)

    db.session.expire_all()
    assert len(flags) == REPORTERS
    assert flags.count(True) == 1
    assert SecurityIncident.query.filter_by(attempt_id=attempt_id).count() == REPORTERS
    assert SecurityIncident.query.filter_by(attempt_id=attempt_id, caused_suspension=True).count() == 1
    assert ExamSuspension.query.filter_by(attempt_id=attempt_id).count() == 1
    suspension = ExamSuspension.query.filter_by(attempt_id=attempt_id).one()
    assert suspension.incident_count_at_suspension == 3
    assert db.session.get(ExamAttempt, attempt_id).status == ATTEMPT_SUSPENDED
    assert attempts._locks == {}


def test_racing_starts_open_one_attempt(app, make_batch, make_student, make_exam):
    batch = make_batch(max_attempts=3)
    student = make_student(batch)
    exam = make_exam(batch)
    student_id, exam_id = student.id, exam.id

    def start(i):
        outcome = start_attempt(student_id, exam_id)
        assert outcome.ok
        return outcome.value.id

    ids = run_in_threads(app, start, REPORTERS)

    assert len(set(ids)) == 1
    assert ExamAttempt.query.filter_by(student_id=student_id, exam_id=exam_id).count() == 1
