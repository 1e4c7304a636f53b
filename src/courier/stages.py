"""
Built-in Receive Pipeline Stages

Reusable stages for logging, error containment, filtering, deduplication,
timeouts and tracing.
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Union

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from .core import MessageContext
from .exceptions import InvalidPipelineUsage
from .pipeline import CallNext, PipelineStage

logger = logging.getLogger(__name__)

Predicate = Callable[[MessageContext], Union[bool, Awaitable[bool]]]


class LoggingStage(PipelineStage):
    """Stage for message logging."""

    def __init__(self, log_level: str = "INFO"):
        self.log_level = getattr(logging, log_level.upper())

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        envelope = context.envelope
        log_data = {
            "message_id": envelope.message_id,
            "queue": envelope.queue,
            "routing_key": envelope.routing_key,
            "exchange": envelope.exchange,
            "event_type": type(context.event).__qualname__,
            "redelivered": envelope.redelivered,
        }
        logger.log(self.log_level, "Message received: %s", log_data)

        await call_next()

        logger.log(
            self.log_level,
            "Message %s processed in %.3fms",
            envelope.message_id,
            context.elapsed() * 1000,
        )


class ErrorBoundaryStage(PipelineStage):
    """
    Contains errors raised further down the chain.

    Matching errors are logged and swallowed so the delivery is acknowledged;
    anything else, and ``InvalidPipelineUsage``, keeps propagating to the
    failure handler.
    """

    def __init__(
        self,
        exceptions: tuple[type[Exception], ...] = (Exception,),
        on_error: Callable[[Exception, MessageContext], Any] | None = None,
    ):
        self.exceptions = exceptions
        self.on_error = on_error

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        try:
            await call_next()
        except InvalidPipelineUsage:
            raise
        except self.exceptions as e:
            logger.error(
                "Error contained for message %s: %s", context.message_id, e, exc_info=True
            )
            context.items["error"] = e
            if self.on_error:
                result = self.on_error(e, context)
                if inspect.isawaitable(result):
                    await result


class FilterStage(PipelineStage):
    """Drops messages for which ``predicate`` returns false."""

    def __init__(self, predicate: Predicate):
        self.predicate = predicate

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        accepted = self.predicate(context)
        if inspect.isawaitable(accepted):
            accepted = await accepted

        if not accepted:
            logger.debug("Message %s filtered out", context.message_id)
            context.items["filtered"] = True
            return

        await call_next()


class DeduplicationStage(PipelineStage):
    """
    Skips messages whose id was already handled.

    Remembers the last ``max_size`` handled message ids. An id is recorded only
    after the rest of the chain succeeds, so a failed delivery can be retried.
    """

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._in_progress: set[str] = set()
        self._lock = asyncio.Lock()

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        message_id = context.message_id

        async with self._lock:
            if message_id in self._seen or message_id in self._in_progress:
                logger.info("Duplicate message %s skipped", message_id)
                context.items["duplicate"] = True
                return
            self._in_progress.add(message_id)

        try:
            await call_next()
        except BaseException:
            async with self._lock:
                self._in_progress.discard(message_id)
            raise

        async with self._lock:
            self._in_progress.discard(message_id)
            self._seen[message_id] = None
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)

    async def seen(self, message_id: str) -> bool:
        async with self._lock:
            return message_id in self._seen


class TimeoutStage(PipelineStage):
    """Bounds the time spent in the rest of the chain."""

    def __init__(self, timeout: float):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        try:
            await asyncio.wait_for(call_next(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Message %s processing timed out after %.2fs", context.message_id, self.timeout
            )
            raise


class TracingStage(PipelineStage):
    """Opens a consumer span around the rest of the chain."""

    def __init__(self, tracer: trace.Tracer | None = None, tracer_name: str = "courier"):
        self.tracer = tracer or trace.get_tracer(tracer_name)

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        envelope = context.envelope
        with self.tracer.start_as_current_span(
            f"{envelope.routing_key} process", kind=SpanKind.CONSUMER
        ) as span:
            span.set_attribute("messaging.message.id", envelope.message_id)
            span.set_attribute("messaging.destination.name", envelope.routing_key)
            if envelope.queue:
                span.set_attribute("messaging.source.name", envelope.queue)
            span.set_attribute("courier.event_type", type(context.event).__qualname__)

            await call_next()
