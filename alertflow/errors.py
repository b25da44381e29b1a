"""
Pipeline error taxonomy.
"""


class PipelineError(Exception):
    """Base class for alert pipeline errors."""

    pass


class UpstreamDataUnavailable(PipelineError):
    """Raised when the value fetcher has no data for a rule subject."""

    def __init__(self, rule_type: str, subject: str, reason: str = "no data"):
        self.rule_type = rule_type
        self.subject = subject
        self.reason = reason
        super().__init__(f"No {rule_type} data for {subject!r}: {reason}")


class EvaluationSkipped(PipelineError):
    """Raised when a rule is not eligible to fire on this tick."""

    def __init__(self, rule_id, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Rule {rule_id} skipped: {reason}")


class DeliveryFailed(PipelineError):
    """Raised by a transport when a single delivery attempt fails."""

    def __init__(self, message: str, retryable: bool = True, status_code=None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class DeliveryExhausted(PipelineError):
    """A notification used up all of its retries."""

    def __init__(self, notification_id: str, attempts: int, last_error: str):
        self.notification_id = notification_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Delivery exhausted after {attempts} attempts: {last_error}"
        )


class SignatureInvalid(PipelineError):
    """Raised when an inbound webhook fails signature verification."""

    pass


class PersistenceFailure(PipelineError):
    """Raised when the store is unavailable or a write cannot be committed."""

    pass


class InvalidTransition(PipelineError, ValueError):
    """Raised on a disallowed alert status transition."""

    pass


class RuleValidationError(PipelineError, ValueError):
    """Raised when an alert rule definition is invalid."""

    pass
