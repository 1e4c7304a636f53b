"""
Courier Exceptions

Error taxonomy for publishing, subscribing and dispatching events.
"""

from typing import Any


class CourierError(Exception):
    """Base exception for all event bus errors."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ConfigurationError(CourierError):
    """Raised when bus options are invalid."""


class TypeConstraintViolation(CourierError):
    """Raised when an event is not an instance of the bus base event type."""

    def __init__(self, event_type: type, base_type: type):
        super().__init__(
            f"{event_type.__qualname__} is not a subtype of {base_type.__qualname__}"
        )
        self.event_type = event_type
        self.base_type = base_type


class SerializationFailure(CourierError):
    """Raised when an event cannot be encoded or a payload cannot be decoded."""

    def __init__(
        self,
        message: str,
        event_type: type | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause)
        self.event_type = event_type


class TransientBrokerFailure(CourierError):
    """Connection drop, closed channel or broker timeout. Retryable."""


class PermanentBrokerFailure(CourierError):
    """Broker refused the operation in a way retrying cannot fix."""


class RetriesExhausted(CourierError):
    """Raised when every attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_error}", last_error
        )
        self.attempts = attempts
        self.last_error = last_error


class SubscriptionConflict(CourierError):
    """Raised when a queue/routing key pair is already subscribed."""

    def __init__(self, queue: str, routing_key: str):
        super().__init__(
            f"Queue '{queue}' is already subscribed with routing key '{routing_key}'"
        )
        self.queue = queue
        self.routing_key = routing_key


class HandlerResolutionFailure(CourierError):
    """Raised when an event type resolves to zero or several handlers."""

    def __init__(self, event_type: type, candidates: list[Any] | None = None):
        candidates = candidates or []
        if candidates:
            names = ", ".join(getattr(c, "__qualname__", repr(c)) for c in candidates)
            detail = f"{len(candidates)} handlers registered ({names})"
        else:
            detail = "no handler registered"
        super().__init__(f"Cannot resolve handler for {event_type.__qualname__}: {detail}")
        self.event_type = event_type
        self.candidates = candidates


class InvalidPipelineUsage(CourierError):
    """Raised when a pipeline stage calls its continuation more than once."""

    def __init__(self, stage: Any):
        name = getattr(stage, "name", None) or stage.__class__.__name__
        super().__init__(f"Pipeline stage {name} invoked its continuation more than once")
        self.stage = stage


class PipelineFrozen(CourierError):
    """Raised when a stage is added after the pipeline started serving messages."""
