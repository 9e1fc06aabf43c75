from dataclasses import asdict, dataclass
from datetime import datetime

from flask import current_app

from .incidents import Orphaned, resolve_exam
from .models import ATTEMPT_IN_PROGRESS, ATTEMPT_SUSPENDED, ExamAttempt, SecurityIncident

IDLE_THRESHOLD_MINUTES = 5

STATUS_OVERTIME = 'Overtime'
STATUS_IDLE = 'Idle'
STATUS_ACTIVE = 'Active'


@dataclass
class SessionMetrics:
    elapsed_minutes: int
    idle_minutes: int
    remaining_minutes: int
    progress_percentage: int
    is_idle: bool
    is_overtime: bool

    def to_dict(self):
        return asdict(self)


def _minutes(delta_seconds: float) -> int:
    return max(0, int(delta_seconds // 60))


def compute_metrics(attempt, now, duration=None, idle_threshold=IDLE_THRESHOLD_MINUTES) -> SessionMetrics:
    """Timing snapshot of an attempt at ``now``. Has no side effects.

    While the attempt is suspended the clock stops at the suspension time;
    time spent suspended before a removal is excluded via ``paused_seconds``.
    """
    if duration is None:
        duration = attempt.exam.duration if attempt.exam is not None else 0
    duration = int(duration or 0)

    reference = now
    if attempt.status == ATTEMPT_SUSPENDED and attempt.suspended_at is not None:
        reference = min(now, attempt.suspended_at)

    elapsed_seconds = (reference - attempt.start_time).total_seconds() - (attempt.paused_seconds or 0)
    elapsed = _minutes(elapsed_seconds)
    idle = _minutes((reference - (attempt.last_active or attempt.start_time)).total_seconds())

    remaining = max(0, duration - elapsed)
    progress = min(100, round(elapsed / duration * 100)) if duration > 0 else 0

    return SessionMetrics(
        elapsed_minutes=elapsed,
        idle_minutes=idle,
        remaining_minutes=remaining,
        progress_percentage=progress,
        is_idle=idle >= idle_threshold,
        is_overtime=duration > 0 and elapsed > duration,
    )


def status_label(metrics: SessionMetrics) -> str:
    if metrics.is_overtime:
        return STATUS_OVERTIME
    if metrics.is_idle:
        return STATUS_IDLE
    return STATUS_ACTIVE


def attempt_snapshot(attempt, now=None):
    now = now or datetime.utcnow()
    metrics = compute_metrics(
        attempt, now, idle_threshold=current_app.config.get('IDLE_THRESHOLD_MINUTES', IDLE_THRESHOLD_MINUTES)
    )
    return {
        'attempt_id': attempt.id,
        'status': attempt.status,
        'metrics': metrics.to_dict(),
        'label': status_label(metrics),
    }


def active_sessions(now=None):
    """Live view of in-progress attempts for the admin dashboard.

    Sessions are grouped by exam; attempts whose exam no longer resolves are
    returned under ``orphaned`` with the reason.
    """
    now = now or datetime.utcnow()
    attempts = (
        ExamAttempt.query
        .filter(ExamAttempt.status == ATTEMPT_IN_PROGRESS)
        .order_by(ExamAttempt.start_time.desc())
        .all()
    )

    sessions = []
    groups = {}
    orphaned = []
    for attempt in attempts:
        snapshot = attempt_snapshot(attempt, now)
        student = attempt.student
        snapshot.update({
            'student': {'id': student.id, 'name': student.name, 'email': student.email} if student else None,
            'exam_id': attempt.exam_id,
            'attempt_number': attempt.attempt_number,
            'start_time': attempt.start_time.isoformat(),
            'last_active': attempt.last_active.isoformat() if attempt.last_active else None,
            'browser_info': attempt.browser_info,
            'ip_address': attempt.ip_address,
            'incident_count': SecurityIncident.query.filter_by(attempt_id=attempt.id).count(),
        })

        ref = resolve_exam(attempt.exam_id)
        if isinstance(ref, Orphaned):
            current_app.logger.warning('Active attempt %s has no resolvable exam: %s', attempt.id, ref.reason)
            snapshot['orphan_reason'] = ref.reason
            orphaned.append(snapshot)
            continue

        sessions.append(snapshot)
        group = groups.setdefault(ref.exam.id, {
            'exam': {'id': ref.exam.id, 'name': ref.exam.name, 'duration': ref.exam.duration},
            'students': [],
        })
        group['students'].append(snapshot)

    return {
        'active_sessions': sessions,
        'grouped_by_exam': list(groups.values()),
        'orphaned': orphaned,
        'total_active': len(sessions),
    }
