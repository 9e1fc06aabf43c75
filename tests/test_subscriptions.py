from datetime import datetime, timedelta

from examportal import errors
from examportal.models import BatchSubscriptionAssignment, StudentSubscription, SubscriptionPlan, db
from examportal.subscriptions import validate_student_subscription


def test_active_subscription_passes(make_batch, make_student):
    student = make_student(make_batch())

    outcome = validate_student_subscription(student)

    assert outcome.ok
    assert outcome.value.student_id == student.id


def test_batch_without_plan(make_batch, make_student):
    student = make_student(make_batch(plan=False), subscribed=False)

    outcome = validate_student_subscription(student)

    assert outcome.error == errors.SUBSCRIPTION_REQUIRED
    assert 'not assigned to any subscription plan' in outcome.message


def test_missing_subscription(make_batch, make_student):
    student = make_student(make_batch(), subscribed=False)

    assert validate_student_subscription(student).error == errors.SUBSCRIPTION_REQUIRED


def test_expired_by_date(make_batch, make_student):
    student = make_student(make_batch())

    outcome = validate_student_subscription(student, now=datetime.utcnow() + timedelta(days=31))

    assert outcome.error == errors.SUBSCRIPTION_EXPIRED


def test_inactive_status(make_batch, make_student):
    student = make_student(make_batch())
    sub = StudentSubscription.query.filter_by(student_id=student.id).one()
    sub.status = 'cancelled'
    db.session.commit()

    outcome = validate_student_subscription(student)

    assert outcome.error == errors.SUBSCRIPTION_REQUIRED
    assert 'cancelled' in outcome.message


def test_plan_mismatch(make_batch, make_student):
    batch = make_batch()
    student = make_student(batch)
    plan = SubscriptionPlan(name='Premium', duration_months=12, price=99.0)
    db.session.add(plan)
    db.session.flush()
    assignment = BatchSubscriptionAssignment.query.filter_by(batch_id=batch.id).one()
    assignment.plan_id = plan.id
    db.session.commit()

    outcome = validate_student_subscription(student)

    assert outcome.error == errors.SUBSCRIPTION_REQUIRED
    assert outcome.value == {'required_plan_id': plan.id}
