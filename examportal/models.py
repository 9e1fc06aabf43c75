from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, inspect
from sqlalchemy.orm import validates

# Initialize SQLAlchemy
db = SQLAlchemy()

ATTEMPT_IN_PROGRESS = 'in-progress'
ATTEMPT_SUBMITTED = 'submitted'
ATTEMPT_SUSPENDED = 'suspended'
ATTEMPT_ABANDONED = 'abandoned'

INCIDENT_TYPES = (
    'window-blur',
    'tab-change',
    'full-screen-exit',
    'paste-attempt',
    'multiple-windows',
    'face-not-visible',
    'multiple-faces',
    'unauthorized-person',
    'speaking-detected',
)
UNKNOWN_INCIDENT_TYPE = 'unknown'

PAYMENT_MAX_ATTEMPTS = 'max_attempts'
PAYMENT_SUSPENSION = 'suspension'
PAYMENT_TYPES = (PAYMENT_MAX_ATTEMPTS, PAYMENT_SUSPENSION)

PAYMENT_PENDING = 'pending'
PAYMENT_SUCCESS = 'success'
PAYMENT_FAILED = 'failed'
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_SUCCESS, PAYMENT_FAILED)

DEFAULT_PASS_PERCENTAGE = 40.0

MIN_OPTIONS = 2
MAX_OPTIONS = 6


exam_batches = db.Table(
    'exam_batches',
    db.Column('exam_id', db.Integer, db.ForeignKey('exam.id'), primary_key=True),
    db.Column('batch_id', db.Integer, db.ForeignKey('batch.id'), primary_key=True),
)


# --- ORGANISATION ---
class College(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), unique=True, nullable=False)


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)


class Course(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=True)

    subject = db.relationship('Subject', backref='courses')


# --- BATCH MODEL ---
class Batch(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    year = db.Column(db.Integer, nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=True)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    max_security_incidents = db.Column(db.Integer, nullable=False, default=5)
    enable_auto_suspend = db.Column(db.Boolean, nullable=False, default=True)
    additional_security_incidents_after_removal = db.Column(db.Integer, nullable=False, default=3)
    additional_attempts_after_payment = db.Column(db.Integer, nullable=False, default=2)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    subject = db.relationship('Subject')
    college = db.relationship('College', backref='batches')

    @validates('max_attempts', 'max_security_incidents', 'additional_attempts_after_payment')
    def _validate_at_least_one(self, key, value):
        if value is None or int(value) < 1:
            raise ValueError(f'{key} must be at least 1')
        return int(value)

    @validates('additional_security_incidents_after_removal')
    def _validate_non_negative(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError(f'{key} must be at least 0')
        return int(value)

    @validates('year')
    def _validate_year(self, key, value):
        if not 2000 <= int(value) <= 2100:
            raise ValueError('year must be between 2000 and 2100')
        return int(value)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'year': self.year,
            'max_attempts': self.max_attempts,
            'max_security_incidents': self.max_security_incidents,
            'enable_auto_suspend': self.enable_auto_suspend,
            'additional_security_incidents_after_removal': self.additional_security_incidents_after_removal,
            'additional_attempts_after_payment': self.additional_attempts_after_payment,
            'is_active': self.is_active,
        }


# --- USER MODEL ---
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=True)
    email = db.Column(db.String(100), unique=True, nullable=False)
    password = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'student' or 'admin'

    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=True)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=True)

    batch = db.relationship('Batch', backref='students')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'batch_id': self.batch_id,
        }


# --- EXAM MODELS ---
class Exam(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=True)
    duration = db.Column(db.Integer, nullable=False, default=0)  # minutes
    total_marks = db.Column(db.Integer, default=0)
    pass_percentage = db.Column(db.Float, default=DEFAULT_PASS_PERCENTAGE)
    total_questions = db.Column(db.Integer, nullable=False, default=1)
    questions_to_display = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    course = db.relationship('Course', backref='exams')
    assigned_batches = db.relationship('Batch', secondary=exam_batches, backref='exams')

    @validates('pass_percentage')
    def _validate_pass_percentage(self, key, value):
        if not 0 <= float(value) <= 100:
            raise ValueError('pass_percentage must be between 0 and 100')
        return float(value)

    @validates('questions_to_display')
    def _validate_questions_to_display(self, key, value):
        value = int(value)
        if value < 1:
            raise ValueError('questions_to_display must be at least 1')
        if self.total_questions is not None and value > self.total_questions:
            raise ValueError('questions_to_display cannot be greater than total_questions')
        return value

    def is_assigned_to(self, batch_id) -> bool:
        return any(b.id == batch_id for b in self.assigned_batches)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'duration': self.duration,
            'total_marks': self.total_marks,
            'pass_percentage': self.pass_percentage,
            'total_questions': self.total_questions,
            'questions_to_display': self.questions_to_display,
        }


class Question(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    text = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), nullable=False, default='General')
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    exam = db.relationship('Exam', backref='questions')
    options = db.relationship(
        'QuestionOption',
        backref='question',
        order_by='QuestionOption.position',
        cascade='all, delete-orphan',
    )

    def correct_index(self):
        for idx, opt in enumerate(self.options):
            if opt.is_correct:
                return idx
        return None

    def to_dict(self, reveal_answer=False):
        data = {
            'id': self.id,
            'text': self.text,
            'category': self.category,
            'options': [o.text for o in self.options],
        }
        if reveal_answer:
            data['correct_option'] = self.correct_index()
        return data


class QuestionOption(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.Text, nullable=False)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)


# --- ATTEMPT MODELS ---
class ExamAttempt(db.Model):
    __table_args__ = (
        db.UniqueConstraint('student_id', 'exam_id', 'attempt_number', name='uix_attempt_number'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=True)
    attempt_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ATTEMPT_IN_PROGRESS)

    start_time = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_active = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    end_time = db.Column(db.DateTime, nullable=True)
    suspended_at = db.Column(db.DateTime, nullable=True)
    paused_seconds = db.Column(db.Integer, default=0, nullable=False)

    incident_limit = db.Column(db.Integer, nullable=True)

    score = db.Column(db.Integer, nullable=True)
    total_questions = db.Column(db.Integer, nullable=True)
    percentage = db.Column(db.Float, nullable=True)
    passed = db.Column(db.Boolean, default=False, nullable=False)

    browser_info = db.Column(db.String(300), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    certificate_id = db.Column(db.String(64), unique=True, nullable=True)
    certificate_issued_at = db.Column(db.DateTime, nullable=True)
    certificate_email_sent = db.Column(db.Boolean, default=False, nullable=False)

    student = db.relationship('User', backref='attempts')
    exam = db.relationship('Exam', backref='attempts')
    batch = db.relationship('Batch')
    selected_questions = db.relationship(
        'AttemptQuestion',
        backref='attempt',
        order_by='AttemptQuestion.position',
        cascade='all, delete-orphan',
    )
    answers = db.relationship('AttemptAnswer', backref='attempt', cascade='all, delete-orphan')

    @property
    def selected_question_ids(self):
        return [aq.question_id for aq in self.selected_questions]

    @property
    def result_status(self):
        if self.status != ATTEMPT_SUBMITTED:
            return None
        return 'Passed' if self.passed else 'Failed'

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'exam_id': self.exam_id,
            'attempt_number': self.attempt_number,
            'status': self.status,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'last_active': self.last_active.isoformat() if self.last_active else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'score': self.score,
            'total_questions': self.total_questions,
            'percentage': self.percentage,
            'passed': self.passed,
            'result_status': self.result_status,
            'selected_question_ids': self.selected_question_ids,
            'certificate_id': self.certificate_id,
        }


class AttemptQuestion(db.Model):
    __table_args__ = (
        db.UniqueConstraint('attempt_id', 'question_id', name='uix_attempt_question'),
    )

    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id'), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)

    question = db.relationship('Question')


class AttemptAnswer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id'), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    selected_option = db.Column(db.Integer, nullable=True)
    is_correct = db.Column(db.Boolean, default=False)

    question = db.relationship('Question')


# --- SECURITY INCIDENT MODEL ---
class SecurityIncident(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id'), nullable=True)
    incident_type = db.Column(db.String(50), nullable=False)
    incident_details = db.Column(db.Text, nullable=False, default='')
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    caused_suspension = db.Column(db.Boolean, default=False, nullable=False)
    user_agent = db.Column(db.String(300), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    student = db.relationship('User', backref='security_incidents')
    exam = db.relationship('Exam')
    attempt = db.relationship('ExamAttempt', backref='incidents')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'exam_id': self.exam_id,
            'attempt_id': self.attempt_id,
            'incident_type': self.incident_type,
            'incident_details': self.incident_details,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'caused_suspension': self.caused_suspension,
        }


@event.listens_for(SecurityIncident, 'before_update')
def _incidents_are_append_only(mapper, connection, target):
    state = inspect(target)
    for attr in mapper.column_attrs:
        history = state.attrs[attr.key].history
        if not history.has_changes():
            continue
        # caused_suspension may only flip to True, inside the recording transaction
        if attr.key == 'caused_suspension' and target.caused_suspension:
            continue
        raise ValueError(f'SecurityIncident.{attr.key} cannot be modified after creation')


# --- SUSPENSION MODEL ---
class ExamSuspension(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    reason = db.Column(db.String(300), nullable=False)
    suspended_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    incident_count_at_suspension = db.Column(db.Integer, default=0, nullable=False)

    removed = db.Column(db.Boolean, default=False, nullable=False)
    removed_at = db.Column(db.DateTime, nullable=True)
    additional_incidents_allowed_after_removal = db.Column(db.Integer, nullable=True)
    payment_reference = db.Column(db.String(100), nullable=True)
    abandoned = db.Column(db.Boolean, default=False, nullable=False)

    attempt = db.relationship('ExamAttempt', backref='suspensions')
    student = db.relationship('User')
    exam = db.relationship('Exam')

    @property
    def is_active(self):
        return not self.removed and not self.abandoned

    def to_dict(self):
        return {
            'id': self.id,
            'attempt_id': self.attempt_id,
            'student_id': self.student_id,
            'exam_id': self.exam_id,
            'reason': self.reason,
            'suspended_at': self.suspended_at.isoformat() if self.suspended_at else None,
            'incident_count_at_suspension': self.incident_count_at_suspension,
            'removed': self.removed,
            'removed_at': self.removed_at.isoformat() if self.removed_at else None,
            'additional_incidents_allowed_after_removal': self.additional_incidents_allowed_after_removal,
            'payment_reference': self.payment_reference,
            'abandoned': self.abandoned,
        }


# --- PAYMENT MODEL ---
class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=False)
    payment_type = db.Column(db.String(20), nullable=False)
    reference = db.Column(db.String(100), unique=True, nullable=False)
    status = db.Column(db.String(20), default=PAYMENT_PENDING, nullable=False)  # pending, success, failed
    additional_attempts = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    applied_at = db.Column(db.DateTime, nullable=True)

    @property
    def applied(self):
        return self.applied_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'exam_id': self.exam_id,
            'payment_type': self.payment_type,
            'reference': self.reference,
            'status': self.status,
            'additional_attempts': self.additional_attempts,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
        }


# --- SUBSCRIPTION MODELS ---
class SubscriptionPlan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    duration_months = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Float, nullable=False, default=0.0)
    is_active = db.Column(db.Boolean, default=True)


class BatchSubscriptionAssignment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey('subscription_plan.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    plan = db.relationship('SubscriptionPlan')
    batch = db.relationship('Batch')


class StudentSubscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey('subscription_plan.id'), nullable=False)
    start_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False)  # active, expired, suspended, cancelled
    payment_reference = db.Column(db.String(100), nullable=True)

    plan = db.relationship('SubscriptionPlan')
    student = db.relationship('User', backref='subscriptions')


# --- SETTINGS MODEL ---
class Setting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(300), nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


DEFAULT_SETTINGS = (
    ('security.maxIncidents', '5',
     'Maximum number of security incidents allowed before an exam is automatically suspended'),
    ('security.enableAutoSuspend', 'true',
     'Enable automatic suspension of exams when security incidents exceed the threshold'),
)


def get_setting(key):
    row = Setting.query.filter_by(key=key).first()
    return row.value if row else None


def seed_default_settings():
    existing = {row.key for row in Setting.query.all()}
    added = 0
    for key, value, description in DEFAULT_SETTINGS:
        if key not in existing:
            db.session.add(Setting(key=key, value=value, description=description))
            added += 1
    if added:
        db.session.commit()
    return added
