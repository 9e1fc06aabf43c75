from dataclasses import dataclass
from typing import Any, Optional

from flask import jsonify

# Business error codes returned to callers. None of these are raised.
NOT_FOUND = 'NotFound'
NOT_VISIBLE = 'NotVisible'
SUBSCRIPTION_REQUIRED = 'SubscriptionRequired'
SUBSCRIPTION_EXPIRED = 'SubscriptionExpired'
ALREADY_PASSED = 'AlreadyPassed'
ATTEMPTS_EXHAUSTED = 'AttemptsExhausted'
ATTEMPT_SUSPENDED = 'AttemptSuspended'
ATTEMPT_CLOSED = 'AttemptClosed'
NOT_SUSPENDED = 'NotSuspended'
BUDGET_NOT_EXHAUSTED = 'BudgetNotExhausted'
PAYMENT_ALREADY_APPLIED = 'PaymentAlreadyApplied'
PAYMENT_NOT_CONFIRMED = 'PaymentNotConfirmed'
PAYMENT_MISMATCH = 'PaymentMismatch'
INSUFFICIENT_QUESTIONS = 'InsufficientQuestions'
INVALID_QUESTION = 'InvalidQuestion'
MALFORMED_INCIDENT = 'MalformedIncident'

HTTP_STATUS = {
    NOT_FOUND: 404,
    NOT_VISIBLE: 403,
    SUBSCRIPTION_REQUIRED: 402,
    SUBSCRIPTION_EXPIRED: 402,
    ALREADY_PASSED: 409,
    ATTEMPTS_EXHAUSTED: 409,
    ATTEMPT_SUSPENDED: 409,
    ATTEMPT_CLOSED: 409,
    NOT_SUSPENDED: 409,
    BUDGET_NOT_EXHAUSTED: 409,
    PAYMENT_ALREADY_APPLIED: 409,
    PAYMENT_NOT_CONFIRMED: 402,
    PAYMENT_MISMATCH: 400,
    INSUFFICIENT_QUESTIONS: 400,
    INVALID_QUESTION: 400,
}


@dataclass
class Outcome:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, value=None, message: Optional[str] = None) -> 'Outcome':
        return cls(True, value=value, message=message)

    @classmethod
    def failure(cls, error: str, message: str, value=None) -> 'Outcome':
        return cls(False, value=value, error=error, message=message)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS.get(self.error, 400)


def failure_response(outcome: Outcome, **extra):
    body = {'success': False, 'error': outcome.error, 'message': outcome.message}
    body.update(extra)
    return jsonify(body), outcome.http_status
