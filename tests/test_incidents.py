from datetime import datetime, timedelta

import pytest

from examportal.attempts import start_attempt
from examportal.incidents import (
    Orphaned,
    Resolved,
    get_incident_count,
    incident_summary,
    list_incidents,
    normalize_incident_type,
    record_incident,
    resolve_exam,
    student_incidents,
)
from examportal.models import ATTEMPT_IN_PROGRESS, ATTEMPT_SUSPENDED, ExamAttempt, ExamSuspension, SecurityIncident, db


@pytest.fixture
def running(make_batch, make_student, make_exam):
    batch = make_batch(max_security_incidents=3, enable_auto_suspend=True)
    student = make_student(batch)
    exam = make_exam(batch)
    attempt = start_attempt(student.id, exam.id).value
    return student, exam, attempt


def test_third_incident_suspends_and_fourth_does_not_retrigger(running):
    student, exam, attempt = running

    reports = [
        record_incident(student.id, exam.id, attempt.id, 'tab-change', f'switch {i}').value
        for i in range(4)
    ]

    assert [r.incident.caused_suspension for r in reports] == [False, False, True, False]
    assert [r.incident_count for r in reports] == [1, 2, 3, 4]
    assert db.session.get(ExamAttempt, attempt.id).status == ATTEMPT_SUSPENDED
    assert SecurityIncident.query.filter_by(attempt_id=attempt.id).count() == 4
    assert ExamSuspension.query.filter_by(attempt_id=attempt.id).count() == 1
    assert reports[2].suspension.incident_count_at_suspension == 3


def test_auto_suspend_disabled_only_records(make_batch, make_student, make_exam):
    batch = make_batch(max_security_incidents=1, enable_auto_suspend=False)
    student = make_student(batch)
    exam = make_exam(batch)
    attempt = start_attempt(student.id, exam.id).value

    report = record_incident(student.id, exam.id, attempt.id, 'paste-attempt', 'ctrl+v').value

    assert report.suspended is False
    assert report.incident.caused_suspension is False
    assert db.session.get(ExamAttempt, attempt.id).status == ATTEMPT_IN_PROGRESS


def test_unknown_type_is_stored_as_unknown(running):
    student, exam, attempt = running

    report = record_incident(student.id, exam.id, attempt.id, 'mouse_left_screen', 'left').value

    assert report.incident.incident_type == 'unknown'
    assert 'mouse_left_screen' in report.incident.incident_details


def test_normalize_accepts_underscores_and_case():
    assert normalize_incident_type('Tab_Change') == ('tab-change', False)
    assert normalize_incident_type(None) == ('unknown', True)


def test_incident_for_deleted_exam_is_orphaned(running):
    student, _, _ = running

    report = record_incident(student.id, 9999, None, 'window-blur', 'blur').value

    assert report.incident.exam_id is None
    assert SecurityIncident.query.count() == 1


def test_exam_id_filled_from_attempt(running):
    student, exam, attempt = running

    report = record_incident(student.id, None, attempt.id, 'window-blur', 'blur').value

    assert report.incident.exam_id == exam.id
    assert report.incident.attempt_id == attempt.id


def test_resolve_exam_variants(running):
    _, exam, _ = running

    assert resolve_exam(exam.id) == Resolved(exam)
    assert isinstance(resolve_exam(None), Orphaned)
    assert isinstance(resolve_exam(12345), Orphaned)


def test_incidents_are_append_only(running):
    student, exam, attempt = running
    incident = record_incident(student.id, exam.id, attempt.id, 'tab-change', 'x').value.incident

    incident.incident_type = 'window-blur'
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_incident_count_scopes(make_batch, make_student, make_exam):
    batch = make_batch(enable_auto_suspend=False)
    student = make_student(batch)
    exam = make_exam(batch, pass_percentage=100)
    first = start_attempt(student.id, exam.id).value
    record_incident(student.id, exam.id, first.id, 'tab-change', '')
    record_incident(student.id, exam.id, first.id, 'tab-change', '')
    first.status = 'submitted'
    db.session.commit()
    second = start_attempt(student.id, exam.id).value
    record_incident(student.id, exam.id, second.id, 'tab-change', '')

    assert get_incident_count(student.id, exam.id) == 1
    assert get_incident_count(student.id, exam.id, attempt_id=first.id) == 2
    assert get_incident_count(student.id, exam.id, all_attempts=True) == 3


def test_summary_and_listing(running):
    student, exam, attempt = running
    base = datetime(2024, 3, 1, 9, 0)
    record_incident(student.id, exam.id, attempt.id, 'tab-change', 'a', now=base)
    record_incident(student.id, exam.id, attempt.id, 'tab-change', 'b', now=base + timedelta(days=1))
    record_incident(student.id, None, None, 'window-blur', 'c', now=base + timedelta(days=2))

    summary = incident_summary()
    assert summary['total_incidents'] == 3
    assert summary['orphaned_incidents'] == 1
    assert summary['incidents_by_type'][0] == {'type': 'tab-change', 'count': 2}
    assert summary['students_with_most_incidents'][0]['count'] == 3

    page = list_incidents(page=1, limit=2)
    assert page['total'] == 3
    assert page['total_pages'] == 2
    assert len(page['incidents']) == 2

    filtered = list_incidents(exam_id=exam.id, start_date='2024-03-02', end_date='2024-03-02')
    assert filtered['total'] == 1
    assert filtered['incidents'][0]['incident_details'] == 'b'


def test_student_incidents_grouping(running):
    student, exam, attempt = running
    record_incident(student.id, exam.id, attempt.id, 'tab-change', 'a')
    record_incident(student.id, None, None, 'window-blur', 'b')

    data = student_incidents(student.id)

    assert data['total'] == 2
    assert data['by_exam'][0]['exam']['id'] == exam.id
    assert len(data['orphaned']) == 1
    assert data['per_attempt'] == [{'attempt_id': attempt.id, 'count': 1}]
