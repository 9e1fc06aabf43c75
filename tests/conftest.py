from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from examportal.app import create_app
from examportal.config import TestConfig
from examportal.models import (
    PAYMENT_SUCCESS,
    Batch,
    BatchSubscriptionAssignment,
    Exam,
    Payment,
    Question,
    QuestionOption,
    StudentSubscription,
    SubscriptionPlan,
    User,
    db,
)

PASSWORD = 'secret123'


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_batch(app):
    def _make(name='Batch A', plan=True, **kwargs):
        values = {
            'max_attempts': 3,
            'max_security_incidents': 5,
            'enable_auto_suspend': True,
            'additional_security_incidents_after_removal': 3,
            'additional_attempts_after_payment': 2,
        }
        values.update(kwargs)
        batch = Batch(name=name, year=2024, **values)
        db.session.add(batch)
        db.session.flush()
        if plan:
            plan_row = SubscriptionPlan(name=f'{name} plan', duration_months=1, price=10.0)
            db.session.add(plan_row)
            db.session.flush()
            db.session.add(BatchSubscriptionAssignment(batch_id=batch.id, plan_id=plan_row.id))
        db.session.commit()
        return batch
    return _make


@pytest.fixture
def make_student(app):
    counter = {'n': 0}

    def _make(batch=None, subscribed=True, **kwargs):
        counter['n'] += 1
        student = User(
            name=kwargs.pop('name', f'Student {counter["n"]}'),
            email=kwargs.pop('email', f'student{counter["n"]}@test.com'),
            password=generate_password_hash(PASSWORD),
            role='student',
            batch_id=batch.id if batch is not None else None,
        )
        db.session.add(student)
        db.session.flush()
        if subscribed and batch is not None:
            assignment = BatchSubscriptionAssignment.query.filter_by(batch_id=batch.id).first()
            now = datetime.utcnow()
            db.session.add(StudentSubscription(
                student_id=student.id,
                plan_id=assignment.plan_id,
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=30),
                status='active',
            ))
        db.session.commit()
        return student
    return _make


@pytest.fixture
def make_admin(app):
    def _make(email='admin@test.com'):
        admin = User(name='Admin', email=email, password=generate_password_hash(PASSWORD), role='admin')
        db.session.add(admin)
        db.session.commit()
        return admin
    return _make


@pytest.fixture
def make_exam(app):
    def _make(batch=None, pool=6, display=4, duration=60, pass_percentage=40, name='Exam 1'):
        exam = Exam(
            name=name,
            duration=duration,
            pass_percentage=pass_percentage,
            total_questions=max(pool, display),
            questions_to_display=display,
        )
        if batch is not None:
            exam.assigned_batches.append(batch)
        db.session.add(exam)
        db.session.flush()
        for i in range(pool):
            question = Question(exam_id=exam.id, text=f'Question {i + 1}', category='General')
            for pos in range(4):
                question.options.append(QuestionOption(position=pos, text=f'Option {pos + 1}', is_correct=pos == i % 4))
            db.session.add(question)
        db.session.commit()
        return exam
    return _make


@pytest.fixture
def make_payment(app):
    counter = {'n': 0}

    def _make(student, exam, payment_type, status=PAYMENT_SUCCESS, reference=None):
        counter['n'] += 1
        payment = Payment(
            student_id=student.id,
            exam_id=exam.id,
            payment_type=payment_type,
            reference=reference or f'PAY-{counter["n"]}',
            status=status,
        )
        db.session.add(payment)
        db.session.commit()
        return payment
    return _make


def answers_for(attempt, correct):
    """Answer the first ``correct`` drawn questions right and the rest wrong."""
    answers = []
    for i, aq in enumerate(attempt.selected_questions):
        right = aq.question.correct_index()
        answers.append({
            'questionId': aq.question_id,
            'selectedOptionIndex': right if i < correct else (right + 1) % 4,
        })
    return answers


def login(client, user):
    resp = client.post('/login', json={'email': user.email, 'password': PASSWORD})
    assert resp.status_code == 200
    return resp
