"""
Handler Registry

Maps event types to the handler type that processes them and builds one
handler instance per delivery. Handlers are registered manually or
discovered from an explicit manifest of ``EventHandler`` subclasses.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar, get_args, get_origin

from .core import MessageContext
from .exceptions import ConfigurationError, HandlerResolutionFailure

E = TypeVar("E")
logger = logging.getLogger(__name__)

HandlerFactory = Callable[[], Any]


class EventHandler(ABC, Generic[E]):
    """
    Base class for typed event handlers.

    The handled event type is taken from the ``event_type`` class attribute
    or, when that is unset, from the generic parameter::

        class OrderCreatedHandler(EventHandler[OrderCreated]):
            async def handle(self, event, context):
                ...
    """

    event_type: ClassVar[type | None] = None

    @abstractmethod
    async def handle(self, event: E, context: MessageContext) -> None:
        """Handle the event."""

    async def dispose(self) -> None:
        """Release per-delivery resources."""


def handled_event_type(handler_type: type) -> type | None:
    """Event type a handler class declares, or ``None``."""
    explicit = getattr(handler_type, "event_type", None)
    if isinstance(explicit, type):
        return explicit

    for klass in handler_type.__mro__:
        for base in getattr(klass, "__orig_bases__", ()):
            origin = get_origin(base)
            if not (isinstance(origin, type) and issubclass(origin, EventHandler)):
                continue
            args = get_args(base)
            if args and isinstance(args[0], type):
                return args[0]
    return None


@dataclass(frozen=True)
class HandlerRegistration:
    """One event type to handler type mapping."""

    event_type: type
    handler_type: type
    factory: HandlerFactory | None = None

    def create(self) -> Any:
        if self.factory is not None:
            return self.factory()
        return self.handler_type()


class HandlerRegistry:
    """Event type to handler registrations."""

    def __init__(self):
        self._registrations: dict[type, list[HandlerRegistration]] = {}

    def register(
        self,
        event_type: type,
        handler_type: type,
        factory: HandlerFactory | None = None,
        *,
        override: bool = False,
    ) -> HandlerRegistration:
        """
        Register ``handler_type`` for ``event_type``.

        Registering a second, different handler type for the same event type
        makes that event type ambiguous unless ``override`` is set, in which
        case the new handler replaces the previous ones.
        """
        if not callable(getattr(handler_type, "handle", None)):
            raise ConfigurationError(f"{handler_type!r} does not define a handle() method")

        registration = HandlerRegistration(event_type, handler_type, factory)
        existing = self._registrations.setdefault(event_type, [])

        if override:
            existing[:] = [registration]
        else:
            for index, current in enumerate(existing):
                if current.handler_type is handler_type:
                    existing[index] = registration
                    break
            else:
                existing.append(registration)
                if len(existing) > 1:
                    logger.warning(
                        "Event type %s now has %d handlers registered",
                        event_type.__qualname__,
                        len(existing),
                    )

        logger.debug(
            "Registered handler %s for %s", handler_type.__qualname__, event_type.__qualname__
        )
        return registration

    def unregister(self, event_type: type, handler_type: type | None = None) -> bool:
        """Remove one handler (or all handlers) for ``event_type``."""
        existing = self._registrations.get(event_type)
        if not existing:
            return False

        if handler_type is None:
            del self._registrations[event_type]
            return True

        remaining = [r for r in existing if r.handler_type is not handler_type]
        if len(remaining) == len(existing):
            return False
        if remaining:
            self._registrations[event_type] = remaining
        else:
            del self._registrations[event_type]
        return True

    def discover(self, handler_types: Iterable[type]) -> list[HandlerRegistration]:
        """Register every handler class of a manifest under its declared event type."""
        registrations = []
        for handler_type in handler_types:
            event_type = handled_event_type(handler_type)
            if event_type is None:
                raise ConfigurationError(
                    f"Cannot determine the event type handled by {handler_type.__qualname__}"
                )
            registrations.append(self.register(event_type, handler_type))

        logger.info("Discovered %d event handlers", len(registrations))
        return registrations

    def resolve(self, event_type: type) -> HandlerRegistration:
        """
        Return the single registration for ``event_type``.

        Raises:
            HandlerResolutionFailure: If zero or several handlers are registered
        """
        registrations = self._registrations.get(event_type) or []
        if len(registrations) != 1:
            raise HandlerResolutionFailure(
                event_type, [r.handler_type for r in registrations]
            )
        return registrations[0]

    def registrations(self, event_type: type) -> list[HandlerRegistration]:
        return list(self._registrations.get(event_type) or [])

    def __contains__(self, event_type: type) -> bool:
        return bool(self._registrations.get(event_type))

    @asynccontextmanager
    async def acquire(self, registration: HandlerRegistration) -> AsyncIterator[Any]:
        """Build a handler instance for one delivery and dispose of it afterwards."""
        handler = registration.create()
        if inspect.isawaitable(handler):
            handler = await handler

        try:
            yield handler
        finally:
            dispose = getattr(handler, "dispose", None)
            if callable(dispose):
                try:
                    result = dispose()
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "Failed to dispose handler %s: %s",
                        registration.handler_type.__qualname__,
                        e,
                        exc_info=True,
                    )
