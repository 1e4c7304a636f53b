"""
In-Memory Transport

Broker emulation for tests and local development. Supports direct and topic
exchanges, per-queue consumers, ack/reject/requeue and fault injection.
"""

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from enum import Enum

from ..core import AckAction, Envelope
from ..exceptions import PermanentBrokerFailure, TransientBrokerFailure
from ..transport import AckHandle, Binding, DeliveryCallback, Transport

logger = logging.getLogger(__name__)


class ExchangeType(Enum):
    """Routing behaviour of an exchange."""

    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic match: ``*`` is exactly one word, ``#`` zero or more words.

    >>> topic_matches("orders.*", "orders.created")
    True
    >>> topic_matches("orders.#", "orders")
    True
    """
    pattern_words = pattern.split(".") if pattern else []
    key_words = routing_key.split(".") if routing_key else []

    def match(p: int, k: int) -> bool:
        if p == len(pattern_words):
            return k == len(key_words)
        word = pattern_words[p]
        if word == "#":
            return any(match(p + 1, i) for i in range(k, len(key_words) + 1))
        if k == len(key_words):
            return False
        if word == "*" or word == key_words[k]:
            return match(p + 1, k + 1)
        return False

    return match(0, 0)


@dataclass
class Settlement:
    """Record of how a delivery was settled."""

    queue: str
    message_id: str
    action: AckAction


class InMemoryAckHandle(AckHandle):
    """Ack handle settling a delivery held by ``InMemoryTransport``."""

    def __init__(self, transport: "InMemoryTransport", queue: str, envelope: Envelope):
        self._transport = transport
        self._queue = queue
        self._envelope = envelope
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def _mark_settled(self) -> None:
        if self._settled:
            raise PermanentBrokerFailure(
                f"Delivery {self._envelope.delivery_token} on '{self._queue}' already settled"
            )
        self._settled = True

    async def ack(self) -> None:
        self._mark_settled()
        self._transport._record(self._queue, self._envelope, AckAction.ack())

    async def reject(self, requeue: bool = False) -> None:
        self._mark_settled()
        self._transport._record(self._queue, self._envelope, AckAction.reject(requeue))
        if requeue:
            self._transport._enqueue(self._queue, replace(self._envelope, redelivered=True))
        else:
            self._transport.dead_letters.append(self._envelope)


class InMemoryTransport(Transport):
    """In-memory broker transport for testing and development."""

    def __init__(
        self,
        exchange: str = "courier",
        exchange_type: ExchangeType | str = ExchangeType.TOPIC,
        prefetch_count: int = 10,
    ):
        super().__init__()
        self.exchange = exchange
        self.prefetch_count = max(1, prefetch_count)

        self._exchanges: dict[str, ExchangeType] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._bindings: list[Binding] = []
        self._consumers: dict[str, list[tuple[Binding, DeliveryCallback]]] = defaultdict(list)
        self._workers: dict[str, asyncio.Task] = {}
        self._deliveries: set[asyncio.Task] = set()
        self._round_robin: dict[str, itertools.count] = defaultdict(itertools.count)
        self._delivery_tags = itertools.count(1)
        self._faults: dict[str, deque[BaseException]] = defaultdict(deque)

        # Inspection
        self.published: list[Envelope] = []
        self.settlements: list[Settlement] = []
        self.dead_letters: list[Envelope] = []
        self.publish_calls = 0
        self.bind_calls = 0

        self.declare_exchange(exchange, exchange_type)

    def declare_exchange(self, name: str, exchange_type: ExchangeType | str = ExchangeType.TOPIC) -> None:
        """Declare an exchange if it does not exist yet."""
        if isinstance(exchange_type, str):
            exchange_type = ExchangeType(exchange_type)
        self._exchanges.setdefault(name, exchange_type)

    def inject_fault(self, operation: str, *errors: BaseException) -> None:
        """
        Make the next calls to ``operation`` raise the given errors, in order.

        Args:
            operation: ``"publish"`` or ``"bind"``
            errors: One exception per failing call
        """
        if operation not in ("publish", "bind"):
            raise ValueError(f"Unsupported fault operation: {operation}")
        self._faults[operation].extend(errors)

    def _raise_fault(self, operation: str) -> None:
        faults = self._faults[operation]
        if faults:
            raise faults.popleft()

    async def connect(self) -> None:
        self._connected = True
        logger.info("Connected to in-memory transport")

    async def disconnect(self) -> None:
        for binding in list(self._bindings):
            await self.unbind(binding)

        deliveries = list(self._deliveries)
        for task in deliveries:
            task.cancel()
        if deliveries:
            await asyncio.gather(*deliveries, return_exceptions=True)

        self._connected = False
        logger.info("Disconnected from in-memory transport")

    async def publish(self, envelope: Envelope) -> None:
        self.publish_calls += 1
        self._raise_fault("publish")
        if not self._connected:
            raise TransientBrokerFailure("In-memory transport is not connected")

        exchange_name = envelope.exchange or self.exchange
        exchange_type = self._exchanges.get(exchange_name)
        if exchange_type is None:
            raise PermanentBrokerFailure(f"Exchange '{exchange_name}' does not exist")

        self.published.append(envelope)

        targets: list[str] = []
        for binding in self._bindings:
            if binding.exchange != exchange_name or binding.queue in targets:
                continue
            if self._routes(exchange_type, binding.routing_key, envelope.routing_key):
                targets.append(binding.queue)

        if not targets:
            logger.debug(
                "Message %s on '%s' with key '%s' is unroutable",
                envelope.message_id,
                exchange_name,
                envelope.routing_key,
            )

        for queue in targets:
            self._enqueue(queue, replace(envelope, exchange=exchange_name))

    @staticmethod
    def _routes(exchange_type: ExchangeType, binding_key: str, routing_key: str) -> bool:
        if exchange_type == ExchangeType.FANOUT:
            return True
        if exchange_type == ExchangeType.DIRECT:
            return binding_key == routing_key
        return topic_matches(binding_key, routing_key)

    async def bind(self, queue: str, routing_key: str, on_delivery: DeliveryCallback) -> Binding:
        self.bind_calls += 1
        self._raise_fault("bind")
        if not self._connected:
            raise TransientBrokerFailure("In-memory transport is not connected")

        self._queues.setdefault(queue, asyncio.Queue())
        binding = Binding(queue=queue, routing_key=routing_key, exchange=self.exchange)
        self._bindings.append(binding)
        self._consumers[queue].append((binding, on_delivery))

        if queue not in self._workers:
            self._workers[queue] = asyncio.create_task(self._worker_loop(queue))

        logger.info("Bound queue '%s' to '%s' with key '%s'", queue, self.exchange, routing_key)
        return binding

    async def unbind(self, binding: Binding) -> None:
        if binding not in self._bindings:
            return

        self._bindings.remove(binding)
        self._consumers[binding.queue] = [
            consumer for consumer in self._consumers[binding.queue] if consumer[0] is not binding
        ]

        if not self._consumers[binding.queue]:
            del self._consumers[binding.queue]
            worker = self._workers.pop(binding.queue, None)
            if worker:
                worker.cancel()
                await asyncio.gather(worker, return_exceptions=True)

        logger.info("Unbound queue '%s' key '%s'", binding.queue, binding.routing_key)

    def _enqueue(self, queue: str, envelope: Envelope) -> None:
        self._queues.setdefault(queue, asyncio.Queue()).put_nowait(envelope)

    def _record(self, queue: str, envelope: Envelope, action: AckAction) -> None:
        self.settlements.append(Settlement(queue, envelope.message_id, action))

    def _select_consumer(self, queue: str, envelope: Envelope) -> DeliveryCallback | None:
        candidates = [
            (binding, on_delivery)
            for binding, on_delivery in self._consumers.get(queue) or []
            if self._routes(self._exchanges[binding.exchange], binding.routing_key, envelope.routing_key)
        ]
        if not candidates:
            return None
        index = next(self._round_robin[queue]) % len(candidates)
        return candidates[index][1]

    async def _worker_loop(self, queue: str) -> None:
        """Pull messages off ``queue`` and hand them to its consumers."""
        pending = self._queues[queue]
        slots = asyncio.Semaphore(self.prefetch_count)
        try:
            while True:
                await slots.acquire()
                envelope = await pending.get()
                if not self._consumers.get(queue):
                    pending.put_nowait(envelope)
                    slots.release()
                    return

                on_delivery = self._select_consumer(queue, envelope)
                if on_delivery is None:
                    logger.warning(
                        "No binding on '%s' matches key '%s', rejecting message %s",
                        queue,
                        envelope.routing_key,
                        envelope.message_id,
                    )
                    await InMemoryAckHandle(self, queue, envelope).reject(requeue=False)
                    slots.release()
                    continue

                delivery = replace(envelope, queue=queue, delivery_token=next(self._delivery_tags))
                task = asyncio.create_task(self._deliver(queue, delivery, on_delivery))
                self._deliveries.add(task)
                task.add_done_callback(self._deliveries.discard)
                task.add_done_callback(lambda _: slots.release())
        except asyncio.CancelledError:
            pass

    async def _deliver(self, queue: str, envelope: Envelope, on_delivery: DeliveryCallback) -> None:
        handle = InMemoryAckHandle(self, queue, envelope)
        try:
            await on_delivery(envelope, handle)
        except Exception as e:
            logger.error("Delivery callback for '%s' failed: %s", queue, e, exc_info=True)
            if not handle.settled:
                await handle.reject(requeue=True)

    def pending(self, queue: str) -> int:
        """Number of messages waiting in ``queue``."""
        if queue not in self._queues:
            return 0
        return self._queues[queue].qsize()

    def settlements_for(self, message_id: str) -> list[AckAction]:
        """Every settlement recorded for a message id."""
        return [s.action for s in self.settlements if s.message_id == message_id]

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait until every queue with a consumer is empty and no delivery is running."""

        async def _idle() -> None:
            while self._deliveries or any(
                not self._queues[queue].empty() for queue in self._consumers
            ):
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_idle(), timeout)
