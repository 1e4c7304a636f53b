"""
Failure Handlers

A failure handler turns a handler or pipeline error into the acknowledgment
action applied to the delivery. Handlers may be sync or async callables
taking ``(error, envelope)``.
"""

from collections.abc import Awaitable, Callable
from typing import Union

from .core import AckAction, Envelope

FailureHandler = Callable[[Exception, Envelope], Union[AckAction, Awaitable[AckAction]]]


def reject_without_requeue(error: Exception, envelope: Envelope) -> AckAction:
    """Drop the message (or dead-letter it, if the broker is set up to)."""
    return AckAction.reject(requeue=False)


def requeue_on_failure(error: Exception, envelope: Envelope) -> AckAction:
    """Return the message to the queue for another attempt."""
    return AckAction.reject(requeue=True)


def requeue_once(error: Exception, envelope: Envelope) -> AckAction:
    """Requeue a first delivery; drop a message that already came back once."""
    return AckAction.reject(requeue=not envelope.redelivered)


def requeue_for(*exception_types: type[Exception]) -> FailureHandler:
    """Requeue only on the given error types, drop on anything else."""

    def handler(error: Exception, envelope: Envelope) -> AckAction:
        return AckAction.reject(requeue=isinstance(error, exception_types))

    handler.__qualname__ = f"requeue_for({', '.join(t.__name__ for t in exception_types)})"
    return handler


DEFAULT_FAILURE_HANDLER: FailureHandler = reject_without_requeue
