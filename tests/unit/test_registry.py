"""
Handler Registry Tests

Tests registration, manifest discovery, unique resolution and per-delivery
handler lifetime.
"""

import pytest

from courier.exceptions import ConfigurationError, HandlerResolutionFailure
from courier.registry import EventHandler, HandlerRegistry, handled_event_type
from tests.conftest import CustomEvent, OrderCreated, OrderShipped, RecordingHandler


class ExplicitHandler(EventHandler):
    event_type = OrderShipped

    async def handle(self, event, context):
        pass


class AnotherOrderHandler(EventHandler[OrderCreated]):
    async def handle(self, event, context):
        pass


class UntypedHandler(EventHandler):
    async def handle(self, event, context):
        pass


class TrackingHandler(EventHandler[CustomEvent]):
    instances = []

    def __init__(self):
        self.disposed = False
        TrackingHandler.instances.append(self)

    async def handle(self, event, context):
        pass

    async def dispose(self):
        self.disposed = True


@pytest.mark.unit
class TestHandledEventType:
    def test_generic_parameter(self):
        assert handled_event_type(RecordingHandler) is OrderCreated

    def test_class_attribute(self):
        assert handled_event_type(ExplicitHandler) is OrderShipped

    def test_inherited_generic_parameter(self):
        class Derived(AnotherOrderHandler):
            pass

        assert handled_event_type(Derived) is OrderCreated

    def test_undeclared(self):
        assert handled_event_type(UntypedHandler) is None


@pytest.mark.unit
class TestHandlerRegistry:
    def test_resolve_single_registration(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)

        registration = registry.resolve(OrderCreated)

        assert registration.handler_type is RecordingHandler
        assert OrderCreated in registry

    def test_resolve_unregistered_type_fails(self):
        with pytest.raises(HandlerResolutionFailure) as exc_info:
            HandlerRegistry().resolve(OrderCreated)

        assert exc_info.value.event_type is OrderCreated
        assert exc_info.value.candidates == []

    def test_two_handlers_make_resolution_ambiguous(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)
        registry.register(OrderCreated, AnotherOrderHandler)

        with pytest.raises(HandlerResolutionFailure) as exc_info:
            registry.resolve(OrderCreated)

        assert exc_info.value.candidates == [RecordingHandler, AnotherOrderHandler]

    def test_override_replaces_handler(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)
        registry.register(OrderCreated, AnotherOrderHandler, override=True)

        assert registry.resolve(OrderCreated).handler_type is AnotherOrderHandler

    def test_registering_same_handler_twice_is_idempotent(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)
        registry.register(OrderCreated, RecordingHandler)

        assert len(registry.registrations(OrderCreated)) == 1

    def test_resolution_is_exact_type(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)

        class SpecialOrder(OrderCreated):
            pass

        with pytest.raises(HandlerResolutionFailure):
            registry.resolve(SpecialOrder)

    def test_register_requires_handle_method(self):
        with pytest.raises(ConfigurationError):
            HandlerRegistry().register(OrderCreated, object)

    def test_unregister(self):
        registry = HandlerRegistry()
        registry.register(OrderCreated, RecordingHandler)
        registry.register(OrderCreated, AnotherOrderHandler)

        assert registry.unregister(OrderCreated, AnotherOrderHandler)
        assert registry.resolve(OrderCreated).handler_type is RecordingHandler
        assert registry.unregister(OrderCreated)
        assert not registry.unregister(OrderCreated)

    def test_discover_manifest(self):
        registry = HandlerRegistry()

        registrations = registry.discover([RecordingHandler, ExplicitHandler])

        assert [r.event_type for r in registrations] == [OrderCreated, OrderShipped]
        assert registry.resolve(OrderShipped).handler_type is ExplicitHandler

    def test_discover_rejects_undeclared_handler(self):
        with pytest.raises(ConfigurationError):
            HandlerRegistry().discover([UntypedHandler])

    @pytest.mark.asyncio
    async def test_acquire_builds_and_disposes_one_instance_per_delivery(self):
        TrackingHandler.instances = []
        registry = HandlerRegistry()
        registration = registry.register(CustomEvent, TrackingHandler)

        async with registry.acquire(registration) as first:
            assert not first.disposed
        async with registry.acquire(registration) as second:
            pass

        assert first is not second
        assert first.disposed and second.disposed
        assert len(TrackingHandler.instances) == 2

    @pytest.mark.asyncio
    async def test_acquire_disposes_on_error(self):
        TrackingHandler.instances = []
        registration = HandlerRegistry().register(CustomEvent, TrackingHandler)
        registry = HandlerRegistry()

        with pytest.raises(RuntimeError):
            async with registry.acquire(registration):
                raise RuntimeError("handler failed")

        assert TrackingHandler.instances[0].disposed

    @pytest.mark.asyncio
    async def test_acquire_uses_factory(self):
        created = []

        def factory():
            handler = AnotherOrderHandler()
            created.append(handler)
            return handler

        registry = HandlerRegistry()
        registration = registry.register(OrderCreated, AnotherOrderHandler, factory)

        async with registry.acquire(registration) as handler:
            assert handler is created[0]
