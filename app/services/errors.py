"""Exceptions raised by the delivery engine services."""


class DeliveryEngineError(Exception):
    """Base class for delivery engine errors."""


# -----------------------------------------------------------------------------
# Validation errors: rejected synchronously, never enqueued
# -----------------------------------------------------------------------------


class DeliveryValidationError(DeliveryEngineError):
    """Input rejected before anything was enqueued."""


class InvalidLane(DeliveryValidationError):
    """Lane name is not registered."""

    def __init__(self, lane: str) -> None:
        super().__init__(f"Queue {lane} not found")
        self.lane = lane


class InvalidPayload(DeliveryValidationError):
    """Payload failed shape or size checks."""


class InvalidEndpoint(DeliveryValidationError):
    """Webhook endpoint is not a valid http(s) URL."""


class InvalidCleanStatus(DeliveryValidationError):
    """Retention cleanup asked for a non-terminal status."""


class TemplateValidationError(DeliveryValidationError):
    """Template uses variables it does not declare."""


# -----------------------------------------------------------------------------
# Lookup and state errors
# -----------------------------------------------------------------------------


class NotFoundError(DeliveryEngineError):
    """Referenced record does not exist."""


class JobNotFound(NotFoundError):
    pass


class RegistrationNotFound(NotFoundError):
    pass


class TemplateNotFound(NotFoundError):
    pass


class RecipientNotFound(NotFoundError):
    pass


class NotificationNotFound(NotFoundError):
    pass


class JobStateError(DeliveryEngineError):
    """Operation conflicts with the job's current status."""


class JobNotRetryable(JobStateError):
    """Only terminally failed jobs can be retried manually."""


# -----------------------------------------------------------------------------
# Delivery-time failures raised by handlers and transports
# -----------------------------------------------------------------------------


class DeliveryError(DeliveryEngineError):
    """Delivery failed; eligible for retry."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentDeliveryError(DeliveryError):
    """Delivery failed in a way retrying cannot fix."""

    retryable = False


class JobTimeoutError(DeliveryError):
    """Handler exceeded the job's timeout."""
