"""
Error taxonomy for the retention engine.

NotFound / InvalidInput are raised before any write and surfaced to the
caller. InvalidSignature rejects webhooks that fail verification.
BillingMutationFailed never reaches the widget: the decision is recorded
as pending confirmation instead. DuplicateEvent is expected webhook
traffic and is swallowed by the consumer.
"""


class RetentionError(Exception):
    """Base class for engine errors that map onto an HTTP response."""

    code = "retention_error"
    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFound(RetentionError):
    code = "not_found"
    status_code = 404


class InvalidInput(RetentionError):
    code = "invalid_input"
    status_code = 400


class NoFlowAvailable(RetentionError):
    code = "no_flow_available"
    status_code = 404


class BillingMutationFailed(RetentionError):
    code = "billing_mutation_failed"
    status_code = 502

    def __init__(self, message: str, *, timed_out: bool = False, **context):
        super().__init__(message, **context)
        self.timed_out = timed_out


class DuplicateEvent(RetentionError):
    code = "duplicate_event"
    status_code = 200


class InvalidSignature(RetentionError):
    code = "invalid_signature"
    status_code = 401
