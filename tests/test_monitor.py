from datetime import datetime, timedelta
from types import SimpleNamespace

from examportal.attempts import start_attempt
from examportal.models import ATTEMPT_IN_PROGRESS, ATTEMPT_SUSPENDED
from examportal.monitor import STATUS_ACTIVE, STATUS_IDLE, STATUS_OVERTIME, active_sessions, compute_metrics, status_label
from examportal.suspensions import suspend

NOW = datetime(2024, 5, 1, 12, 0, 0)


def fake_attempt(start_ago, active_ago, status=ATTEMPT_IN_PROGRESS, suspended_at=None, paused_seconds=0):
    return SimpleNamespace(
        start_time=NOW - timedelta(minutes=start_ago),
        last_active=NOW - timedelta(minutes=active_ago),
        status=status,
        suspended_at=suspended_at,
        paused_seconds=paused_seconds,
        exam=None,
    )


def test_overtime_session():
    metrics = compute_metrics(fake_attempt(35, 1), NOW, duration=30)

    assert metrics.is_overtime is True
    assert metrics.is_idle is False
    assert metrics.remaining_minutes == 0
    assert metrics.progress_percentage == 100
    assert status_label(metrics) == STATUS_OVERTIME


def test_idle_session():
    metrics = compute_metrics(fake_attempt(10, 6), NOW, duration=60)

    assert metrics.is_idle is True
    assert metrics.is_overtime is False
    assert metrics.progress_percentage == 17
    assert metrics.remaining_minutes == 50
    assert status_label(metrics) == STATUS_IDLE


def test_idle_threshold_is_inclusive():
    assert compute_metrics(fake_attempt(10, 5), NOW, duration=60).is_idle is True
    assert compute_metrics(fake_attempt(10, 4), NOW, duration=60).is_idle is False


def test_active_session():
    metrics = compute_metrics(fake_attempt(15, 0), NOW, duration=60)

    assert metrics.elapsed_minutes == 15
    assert metrics.progress_percentage == 25
    assert status_label(metrics) == STATUS_ACTIVE


def test_zero_duration_has_no_progress():
    metrics = compute_metrics(fake_attempt(15, 0), NOW, duration=0)

    assert metrics.progress_percentage == 0
    assert metrics.is_overtime is False


def test_timer_freezes_while_suspended():
    attempt = fake_attempt(20, 12, status=ATTEMPT_SUSPENDED, suspended_at=NOW - timedelta(minutes=10))

    metrics = compute_metrics(attempt, NOW, duration=60)

    assert metrics.elapsed_minutes == 10
    assert metrics.remaining_minutes == 50
    assert metrics.idle_minutes == 2


def test_paused_time_is_excluded():
    attempt = fake_attempt(30, 0, paused_seconds=600)

    assert compute_metrics(attempt, NOW, duration=60).elapsed_minutes == 20


def test_active_sessions_grouped_by_exam(make_batch, make_student, make_exam):
    batch = make_batch()
    exam = make_exam(batch)
    other = make_exam(batch, name='Exam 2')
    first = make_student(batch)
    second = make_student(batch)
    start_attempt(first.id, exam.id)
    start_attempt(second.id, exam.id)
    suspended = start_attempt(first.id, other.id).value
    suspend(suspended.id)

    data = active_sessions()

    assert data['total_active'] == 2
    assert len(data['grouped_by_exam']) == 1
    group = data['grouped_by_exam'][0]
    assert group['exam']['id'] == exam.id
    assert {s['student']['id'] for s in group['students']} == {first.id, second.id}
    assert data['orphaned'] == []
