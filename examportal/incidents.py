import math
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Optional

from flask import current_app
from sqlalchemy import func

from .attempts import attempt_lock, current_attempt, lock_attempt_row
from .config import resolve_security_settings
from .errors import MALFORMED_INCIDENT, NOT_FOUND, Outcome
from .models import (
    ATTEMPT_IN_PROGRESS,
    ATTEMPT_SUSPENDED,
    INCIDENT_TYPES,
    UNKNOWN_INCIDENT_TYPE,
    Exam,
    ExamAttempt,
    SecurityIncident,
    User,
    db,
    get_setting,
)
from .suspensions import active_suspension, suspend_locked


@dataclass
class Resolved:
    exam: Any


@dataclass
class Orphaned:
    reason: str


def resolve_exam(exam_id):
    """Resolve an exam reference to ``Resolved(exam)`` or ``Orphaned(reason)``."""
    if exam_id is None:
        return Orphaned('no exam reference')
    exam = db.session.get(Exam, exam_id)
    if exam is None:
        return Orphaned(f'exam {exam_id} no longer exists')
    return Resolved(exam)


@dataclass
class IncidentReport:
    incident: SecurityIncident
    incident_count: int
    incident_limit: Optional[int]
    auto_suspend: bool
    suspended: bool
    suspension: Any = None

    def to_dict(self):
        return {
            'incident': self.incident.to_dict(),
            'incident_count': self.incident_count,
            'incident_limit': self.incident_limit,
            'auto_suspend': self.auto_suspend,
            'suspended': self.suspended,
            'caused_suspension': self.incident.caused_suspension,
            'suspension': self.suspension.to_dict() if self.suspension is not None else None,
        }


def normalize_incident_type(raw):
    """Map a reported type onto the known set; anything else becomes ``unknown``."""
    value = (raw or '').strip().lower().replace('_', '-')
    if value in INCIDENT_TYPES:
        return value, False
    return UNKNOWN_INCIDENT_TYPE, True


def _resolve_attempt(student, exam_id, attempt_id):
    if attempt_id is not None:
        attempt = db.session.get(ExamAttempt, attempt_id)
        if attempt is None:
            current_app.logger.warning('Incident for student %s references unknown attempt %s', student.id, attempt_id)
            return None
        if attempt.student_id != student.id:
            current_app.logger.warning(
                'Incident for student %s references attempt %s of student %s', student.id, attempt.id, attempt.student_id
            )
            return None
        return attempt
    if exam_id is None:
        return None
    return current_attempt(student.id, exam_id)


def record_incident(student_id, exam_id, attempt_id, incident_type, details,
                    user_agent=None, ip_address=None, now=None) -> Outcome:
    """Append a proctoring incident and apply the auto-suspension rule.

    The write always happens: unknown types are stored as ``unknown`` and an
    unresolvable exam is stored as a null reference. Recording, counting and
    suspending run as one transaction under the attempt's lock, so an attempt
    is suspended at most once however many reports race in.
    """
    now = now or datetime.utcnow()

    student = db.session.get(User, student_id)
    if not student:
        return Outcome.failure(NOT_FOUND, 'Student not found')

    normalized, malformed = normalize_incident_type(incident_type)
    details = (details or '').strip()
    if malformed:
        current_app.logger.warning(
            '%s: unexpected incident type %r from student %s stored as %r',
            MALFORMED_INCIDENT, incident_type, student.id, UNKNOWN_INCIDENT_TYPE,
        )
        details = f'{details} (reported type: {incident_type})'.strip()

    attempt = _resolve_attempt(student, exam_id, attempt_id)
    if exam_id is None and attempt is not None:
        exam_id = attempt.exam_id

    ref = resolve_exam(exam_id)
    if isinstance(ref, Orphaned):
        current_app.logger.warning(
            'Recording incident for student %s without exam link: %s', student.id, ref.reason
        )
        exam_id = None

    incident = SecurityIncident(
        student_id=student.id,
        exam_id=exam_id,
        attempt_id=attempt.id if attempt is not None else None,
        incident_type=normalized,
        incident_details=details,
        timestamp=now,
        user_agent=user_agent,
        ip_address=ip_address,
    )

    if attempt is None:
        db.session.add(incident)
        db.session.commit()
        count = get_incident_count(student.id, exam_id)
        settings = resolve_security_settings(student.batch, current_app.config, get_setting)
        return Outcome.success(IncidentReport(
            incident=incident,
            incident_count=count,
            incident_limit=None,
            auto_suspend=settings.enable_auto_suspend,
            suspended=False,
        ))

    with attempt_lock(attempt.id):
        attempt = lock_attempt_row(attempt.id)
        batch = attempt.batch or student.batch
        settings = resolve_security_settings(batch, current_app.config, get_setting)
        limit = attempt.incident_limit if attempt.incident_limit is not None else settings.max_incidents

        count = SecurityIncident.query.filter_by(attempt_id=attempt.id).count() + 1
        trigger = (
            settings.enable_auto_suspend
            and attempt.status == ATTEMPT_IN_PROGRESS
            and count >= limit
        )
        incident.caused_suspension = bool(trigger)
        db.session.add(incident)

        suspension = None
        if trigger:
            outcome = suspend_locked(attempt, now=now, incident_count=count)
            suspension = outcome.value
        elif attempt.status == ATTEMPT_SUSPENDED:
            suspension = active_suspension(attempt.id)

        db.session.commit()

    return Outcome.success(IncidentReport(
        incident=incident,
        incident_count=count,
        incident_limit=limit,
        auto_suspend=settings.enable_auto_suspend,
        suspended=attempt.status == ATTEMPT_SUSPENDED,
        suspension=suspension,
    ))


def get_incident_count(student_id, exam_id, attempt_id=None, all_attempts=False) -> int:
    """Incidents for a student/exam pair, scoped to the current attempt by default."""
    query = SecurityIncident.query.filter_by(student_id=student_id, exam_id=exam_id)
    if all_attempts:
        return query.count()
    if attempt_id is None:
        attempt = current_attempt(student_id, exam_id) if exam_id is not None else None
        if attempt is None:
            return query.filter(SecurityIncident.attempt_id.is_(None)).count()
        attempt_id = attempt.id
    return SecurityIncident.query.filter_by(attempt_id=attempt_id).count()


def group_by_exam(incidents):
    groups = {}
    orphaned = []
    for incident in incidents:
        ref = resolve_exam(incident.exam_id)
        if isinstance(ref, Orphaned):
            orphaned.append({'incident': incident.to_dict(), 'reason': ref.reason})
            continue
        group = groups.setdefault(ref.exam.id, {'exam': {'id': ref.exam.id, 'name': ref.exam.name}, 'incidents': []})
        group['incidents'].append(incident.to_dict())
    return {'groups': list(groups.values()), 'orphaned': orphaned}


def _incident_row(incident):
    data = incident.to_dict()
    student = incident.student
    data['student'] = {'id': student.id, 'name': student.name, 'email': student.email} if student else None
    ref = resolve_exam(incident.exam_id)
    if isinstance(ref, Resolved):
        data['exam'] = {'id': ref.exam.id, 'name': ref.exam.name}
    else:
        data['exam'] = None
        data['orphan_reason'] = ref.reason
    return data


def incident_summary(top_n=5, recent_n=10):
    total = SecurityIncident.query.count()
    if total == 0:
        return {
            'total_incidents': 0,
            'students_with_incidents': 0,
            'exams_with_incidents': 0,
            'orphaned_incidents': 0,
            'incidents_by_type': [],
            'students_with_most_incidents': [],
            'recent_incidents': [],
        }

    students_count = db.session.query(func.count(func.distinct(SecurityIncident.student_id))).scalar()
    exams_count = (
        db.session.query(func.count(func.distinct(SecurityIncident.exam_id)))
        .filter(SecurityIncident.exam_id.isnot(None))
        .scalar()
    )
    orphaned = SecurityIncident.query.filter(SecurityIncident.exam_id.is_(None)).count()

    count_col = func.count(SecurityIncident.id)
    by_type = (
        db.session.query(SecurityIncident.incident_type, count_col)
        .group_by(SecurityIncident.incident_type)
        .order_by(count_col.desc(), SecurityIncident.incident_type.asc())
        .all()
    )
    top_students = (
        db.session.query(SecurityIncident.student_id, count_col)
        .group_by(SecurityIncident.student_id)
        .order_by(count_col.desc(), SecurityIncident.student_id.asc())
        .limit(top_n)
        .all()
    )
    recent = (
        SecurityIncident.query
        .order_by(SecurityIncident.timestamp.desc(), SecurityIncident.id.desc())
        .limit(recent_n)
        .all()
    )

    students = []
    for student_id, count in top_students:
        student = db.session.get(User, student_id)
        students.append({
            'student_id': student_id,
            'name': student.name if student else None,
            'email': student.email if student else None,
            'count': count,
        })

    return {
        'total_incidents': total,
        'students_with_incidents': students_count,
        'exams_with_incidents': exams_count,
        'orphaned_incidents': orphaned,
        'incidents_by_type': [{'type': t, 'count': c} for t, c in by_type],
        'students_with_most_incidents': students,
        'recent_incidents': [_incident_row(i) for i in recent],
    }


def _as_bound(value, end_of_day=False):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min)
    parsed = datetime.fromisoformat(str(value))
    if end_of_day and len(str(value)) <= 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return parsed


def list_incidents(page=1, limit=20, exam_id=None, start_date=None, end_date=None):
    page = max(1, int(page or 1))
    limit = max(1, int(limit or 20))

    query = SecurityIncident.query
    if exam_id is not None:
        query = query.filter(SecurityIncident.exam_id == exam_id)
    start = _as_bound(start_date)
    end = _as_bound(end_date, end_of_day=True)
    if start is not None:
        query = query.filter(SecurityIncident.timestamp >= start)
    if end is not None:
        query = query.filter(SecurityIncident.timestamp <= end)

    total = query.count()
    incidents = (
        query.order_by(SecurityIncident.timestamp.desc(), SecurityIncident.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        'incidents': [_incident_row(i) for i in incidents],
        'total': total,
        'page': page,
        'limit': limit,
        'total_pages': math.ceil(total / limit) if total else 0,
    }


def student_incidents(student_id):
    incidents = (
        SecurityIncident.query
        .filter_by(student_id=student_id)
        .order_by(SecurityIncident.timestamp.desc(), SecurityIncident.id.desc())
        .all()
    )
    per_attempt = {}
    for incident in incidents:
        if incident.attempt_id is not None:
            per_attempt[incident.attempt_id] = per_attempt.get(incident.attempt_id, 0) + 1

    grouped = group_by_exam(incidents)
    return {
        'total': len(incidents),
        'incidents': [i.to_dict() for i in incidents],
        'by_exam': grouped['groups'],
        'orphaned': grouped['orphaned'],
        'per_attempt': [{'attempt_id': k, 'count': v} for k, v in sorted(per_attempt.items())],
    }
