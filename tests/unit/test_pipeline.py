"""
Receive Pipeline Tests

Tests ordering, short-circuiting, continuation misuse and freezing.
"""

import pytest

from courier.exceptions import CourierError, InvalidPipelineUsage, PipelineFrozen
from courier.pipeline import FunctionStage, PipelineStage, ReceivePipeline
from tests.conftest import make_context


class RecordingStage(PipelineStage):
    def __init__(self, name, log, forward=True):
        self.label = name
        self.log = log
        self.forward = forward

    async def process(self, context, call_next):
        self.log.append(f"{self.label}:before")
        if self.forward:
            await call_next()
        self.log.append(f"{self.label}:after")


@pytest.mark.unit
class TestReceivePipeline:
    """Test pipeline execution semantics."""

    @pytest.mark.asyncio
    async def test_stages_run_in_registration_order_once_each(self):
        log = []
        pipeline = ReceivePipeline([RecordingStage("a", log), RecordingStage("b", log)])
        pipeline.add(RecordingStage("c", log))

        async def terminal(context):
            log.append("handler")

        await pipeline.execute(make_context(), terminal)

        assert log == [
            "a:before",
            "b:before",
            "c:before",
            "handler",
            "c:after",
            "b:after",
            "a:after",
        ]

    @pytest.mark.asyncio
    async def test_stage_without_continuation_short_circuits(self):
        log = []
        pipeline = ReceivePipeline(
            [RecordingStage("a", log), RecordingStage("stop", log, forward=False), RecordingStage("c", log)]
        )

        async def terminal(context):
            log.append("handler")

        await pipeline.execute(make_context(), terminal)

        assert "handler" not in log
        assert "c:before" not in log
        assert log == ["a:before", "stop:before", "stop:after", "a:after"]

    @pytest.mark.asyncio
    async def test_calling_continuation_twice_raises(self):
        handler_calls = []

        async def greedy(context, call_next):
            await call_next()
            await call_next()

        async def terminal(context):
            handler_calls.append(context)

        pipeline = ReceivePipeline([greedy])

        with pytest.raises(InvalidPipelineUsage):
            await pipeline.execute(make_context(), terminal)

        assert len(handler_calls) == 1

    @pytest.mark.asyncio
    async def test_swallowed_double_continuation_still_raises(self):
        async def greedy(context, call_next):
            await call_next()
            try:
                await call_next()
            except InvalidPipelineUsage:
                pass

        async def contain_everything(context, call_next):
            try:
                await call_next()
            except Exception:
                pass

        async def terminal(context):
            pass

        pipeline = ReceivePipeline([contain_everything, greedy])

        with pytest.raises(InvalidPipelineUsage) as exc_info:
            await pipeline.execute(make_context(), terminal)

        assert "greedy" in str(exc_info.value)
        assert exc_info.value.stage.name.endswith("greedy")

    @pytest.mark.asyncio
    async def test_errors_propagate_through_stages(self):
        log = []
        pipeline = ReceivePipeline([RecordingStage("a", log)])

        async def terminal(context):
            raise RuntimeError("handler failed")

        with pytest.raises(RuntimeError, match="handler failed"):
            await pipeline.execute(make_context(), terminal)

        assert log == ["a:before"]

    @pytest.mark.asyncio
    async def test_stages_share_context_items(self):
        async def tag(context, call_next):
            context.items["tenant"] = "acme"
            await call_next()

        seen = {}

        async def terminal(context):
            seen.update(context.items)

        await ReceivePipeline([tag]).execute(make_context(), terminal)

        assert seen == {"tenant": "acme"}

    @pytest.mark.asyncio
    async def test_empty_pipeline_runs_terminal(self):
        calls = []

        async def terminal(context):
            calls.append(context.message_id)

        context = make_context()
        await ReceivePipeline().execute(context, terminal)

        assert calls == [context.message_id]

    def test_plain_functions_are_wrapped(self):
        async def stage(context, call_next):
            await call_next()

        pipeline = ReceivePipeline([stage])

        assert isinstance(pipeline.stages[0], FunctionStage)
        assert pipeline.stages[0].name.endswith("stage")

    def test_non_callable_stage_rejected(self):
        with pytest.raises(TypeError):
            ReceivePipeline().add("not a stage")

    def test_add_after_freeze_raises(self):
        pipeline = ReceivePipeline()
        pipeline.freeze()

        with pytest.raises(PipelineFrozen) as exc_info:
            pipeline.add(RecordingStage("late", []))

        assert isinstance(exc_info.value, CourierError)
        assert pipeline.frozen
        assert len(pipeline) == 0
