from datetime import datetime

from flask import current_app

from .errors import Outcome, SUBSCRIPTION_EXPIRED, SUBSCRIPTION_REQUIRED
from .models import BatchSubscriptionAssignment, StudentSubscription


def validate_student_subscription(student, now=None) -> Outcome:
    """Check that ``student`` holds an active subscription to their batch's plan.

    The batch must have an active plan assignment, the student must hold a
    subscription to that very plan, and the subscription must be active and
    not past its end date.
    """
    now = now or datetime.utcnow()

    assignment = (
        BatchSubscriptionAssignment.query
        .filter_by(batch_id=student.batch_id, is_active=True)
        .order_by(BatchSubscriptionAssignment.assigned_at.desc())
        .first()
    )
    if not assignment:
        return Outcome.failure(
            SUBSCRIPTION_REQUIRED,
            'This batch is not assigned to any subscription plan',
        )

    subscription = (
        StudentSubscription.query
        .filter_by(student_id=student.id)
        .order_by(StudentSubscription.end_date.desc())
        .first()
    )
    if not subscription:
        return Outcome.failure(
            SUBSCRIPTION_REQUIRED,
            'No subscription found. Please subscribe to access exams.',
            value={'required_plan_id': assignment.plan_id},
        )

    if subscription.end_date < now or subscription.status == 'expired':
        current_app.logger.info(
            'Subscription %s of student %s expired on %s', subscription.id, student.id, subscription.end_date
        )
        return Outcome.failure(
            SUBSCRIPTION_EXPIRED,
            'Your subscription has expired. Please renew to access exams.',
            value={'required_plan_id': assignment.plan_id},
        )

    if subscription.status != 'active':
        return Outcome.failure(
            SUBSCRIPTION_REQUIRED,
            f'Your subscription is {subscription.status}. Please contact support.',
        )

    if subscription.plan_id != assignment.plan_id:
        return Outcome.failure(
            SUBSCRIPTION_REQUIRED,
            'Your current subscription plan does not match the required plan for this batch.',
            value={'required_plan_id': assignment.plan_id},
        )

    return Outcome.success(subscription)
