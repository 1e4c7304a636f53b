"""
Receive Pipeline

Ordered middleware chain run for every inbound message before its handler.
Each stage receives the message context and a ``call_next`` continuation; not
calling it short-circuits the rest of the chain and the handler.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Union

from .core import MessageContext
from .exceptions import InvalidPipelineUsage, PipelineFrozen

logger = logging.getLogger(__name__)

CallNext = Callable[[], Awaitable[None]]
StageFunction = Callable[[MessageContext, CallNext], Awaitable[None]]
Terminal = Callable[[MessageContext], Awaitable[None]]


class PipelineStage(ABC):
    """Abstract base class for receive pipeline stages."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        """
        Process a message.

        Args:
            context: Per-delivery context
            call_next: Continuation running the remaining stages and the
                handler. Await it at most once.
        """


class FunctionStage(PipelineStage):
    """Adapts a plain ``async def stage(context, call_next)`` function."""

    def __init__(self, func: StageFunction):
        self.func = func

    @property
    def name(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))

    async def process(self, context: MessageContext, call_next: CallNext) -> None:
        await self.func(context, call_next)


class _PipelineCursor:
    """Walks one message through the stages by index."""

    def __init__(self, stages: tuple[PipelineStage, ...], context: MessageContext, terminal: Terminal):
        self.stages = stages
        self.context = context
        self.terminal = terminal
        self.violation: InvalidPipelineUsage | None = None

    async def run(self, index: int = 0) -> None:
        if index == len(self.stages):
            await self.terminal(self.context)
            return

        stage = self.stages[index]
        called = False

        async def call_next() -> None:
            nonlocal called
            if called:
                if self.violation is None:
                    self.violation = InvalidPipelineUsage(stage)
                raise self.violation
            called = True
            await self.run(index + 1)

        await stage.process(self.context, call_next)

        if self.violation is not None:
            raise self.violation

        if not called:
            logger.warning(
                "Stage %s stopped processing chain for message %s",
                stage.name,
                self.context.message_id,
            )


class ReceivePipeline:
    """
    Shared, ordered chain of receive stages.

    Stages run in registration order. The pipeline is frozen once the bus
    starts serving subscriptions; adding stages afterwards raises
    ``PipelineFrozen``.
    """

    def __init__(self, stages: list[Union[PipelineStage, StageFunction]] | None = None):
        self._stages: list[PipelineStage] = []
        self._frozen = False
        for stage in stages or []:
            self.add(stage)

    def add(self, stage: Union[PipelineStage, StageFunction]) -> "ReceivePipeline":
        """Append a stage to the end of the chain."""
        if self._frozen:
            raise PipelineFrozen("Cannot add stages after the pipeline has started")
        if not isinstance(stage, PipelineStage):
            if not callable(stage):
                raise TypeError(f"Pipeline stage must be a PipelineStage or callable, got {stage!r}")
            stage = FunctionStage(stage)
        self._stages.append(stage)
        return self

    def freeze(self) -> None:
        """Fix the stage order."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        return tuple(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    async def execute(self, context: MessageContext, terminal: Terminal) -> None:
        """
        Run ``context`` through every stage and then ``terminal``.

        Errors raised by stages or the terminal propagate to the caller unless
        a stage swallows them.
        """
        await _PipelineCursor(tuple(self._stages), context, terminal).run()
