"""
Tests for the middleware pipeline, the event router and the pattern matcher.
"""
import re
from unittest.mock import MagicMock

import pytest

from core.errors import MiddlewareError, StopPipeline
from core.events import EventRouter, call_handler, split_events
from core.matcher import UTTERANCES, hears_regexp
from core.middleware import STAGES, MiddlewarePipeline, StageContext
from models.schemas import Message


# ──────────────────────────────────────────────────────────────
#  Middleware
# ──────────────────────────────────────────────────────────────

class TestMiddleware:
    @pytest.fixture
    def pipeline(self):
        return MiddlewarePipeline()

    def test_every_stage_exists(self, pipeline):
        for name in STAGES:
            assert len(pipeline.stage(name)) == 0
        assert pipeline.capture is pipeline.stage("capture")

    def test_unknown_stage_raises(self, pipeline):
        with pytest.raises(KeyError):
            pipeline.register("teleport", lambda ctx: None)
        with pytest.raises(AttributeError):
            pipeline.teleport

    @pytest.mark.asyncio
    async def test_runs_in_registration_order(self, pipeline):
        calls = []
        pipeline.register("receive", lambda ctx: calls.append("a"))

        async def second(ctx):
            calls.append("b")

        pipeline.register("receive", second)
        result = await pipeline.run("receive", StageContext())
        assert calls == ["a", "b"]
        assert result.ok and not result.halted

    @pytest.mark.asyncio
    async def test_mutations_are_visible_downstream(self, pipeline):
        def tag(ctx):
            ctx.message.text = ctx.message.text + "!"

        pipeline.register("normalize", tag)
        pipeline.register("normalize", tag)
        ctx = StageContext(message=Message(text="hi"))
        await pipeline.run("normalize", ctx)
        assert ctx.message.text == "hi!!"

    @pytest.mark.asyncio
    async def test_error_aborts_the_chain(self, pipeline):
        after = MagicMock()

        def broken(ctx):
            raise ValueError("bad payload")

        pipeline.register("ingest", broken)
        pipeline.register("ingest", after)
        result = await pipeline.run("ingest", StageContext())

        assert not result
        assert isinstance(result.error, MiddlewareError)
        assert result.error.stage == "ingest"
        assert isinstance(result.error.cause, ValueError)
        after.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_pipeline_halts_quietly(self, pipeline):
        after = MagicMock()

        def halt(ctx):
            raise StopPipeline()

        pipeline.register("send", halt)
        pipeline.register("send", after)
        result = await pipeline.run("send", StageContext())

        assert result.ok
        assert result.halted
        after.assert_not_called()


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class TestEventRouter:
    def test_split_events(self):
        assert split_events("a, b,,c ") == ["a", "b", "c"]
        assert split_events(["x", " y "]) == ["x", "y"]

    @pytest.mark.asyncio
    async def test_call_handler_awaits_coroutines(self):
        async def add(a, b):
            return a + b

        assert await call_handler(add, 1, 2) == 3
        assert await call_handler(lambda a: a * 2, 4) == 8

    @pytest.mark.asyncio
    async def test_handlers_run_in_order_until_false(self):
        router = EventRouter()
        calls = []
        router.on("ping", lambda x: calls.append(("first", x)))
        router.on("ping", lambda x: calls.append(("second", x)) or False)
        router.on("ping", lambda x: calls.append(("third", x)))

        await router.trigger("ping", 1)
        assert calls == [("first", 1), ("second", 1)]

    @pytest.mark.asyncio
    async def test_one_registration_for_several_events(self):
        router = EventRouter()
        seen = []
        router.on("a,b", lambda: seen.append(1))
        await router.trigger("a")
        await router.trigger("b")
        assert seen == [1, 1]

    @pytest.mark.asyncio
    async def test_hearing_handler_claims_event(self):
        router = EventRouter()
        generic = MagicMock()
        router.on("message_received", generic)
        router.on("message_received", lambda m: False, is_hearing=True)

        claimed = await router.trigger("message_received", "hi")
        assert claimed is True
        generic.assert_not_called()

    @pytest.mark.asyncio
    async def test_unclaimed_hearing_falls_through(self):
        router = EventRouter()
        generic = MagicMock()
        router.on("message_received", generic)
        router.on("message_received", lambda m: None, is_hearing=True)

        assert await router.trigger("message_received", "hi") is False
        generic.assert_called_once_with("hi")

    @pytest.mark.asyncio
    async def test_gate_blocks_generic_tier(self):
        async def deny(event, args):
            return False

        router = EventRouter(before_generic=deny)
        generic = MagicMock()
        router.on("tick", generic)
        await router.trigger("tick")
        generic.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_event_is_noop(self):
        assert await EventRouter().trigger("nothing") is False


# ──────────────────────────────────────────────────────────────
#  Matcher
# ──────────────────────────────────────────────────────────────

class TestMatcher:
    def test_case_insensitive_search_records_match(self):
        msg = Message(text="Please CANCEL my order")
        assert hears_regexp(["cancel"], msg)
        assert msg.match.group(0) == "CANCEL"

    def test_first_matching_pattern_wins(self):
        msg = Message(text="order 42")
        assert hears_regexp([re.compile(r"(\d+)"), "order"], msg)
        assert msg.match.group(1) == "42"

    def test_empty_text_never_matches(self):
        assert not hears_regexp([".*"], Message(text=""))
        assert not hears_regexp(".*", Message(text=None))

    @pytest.mark.parametrize("text,key", [
        ("yes", "yes"), ("Yup sure", "yes"), ("nope", "no"),
        ("never mind", "quit"), ("cancel that", "quit"),
    ])
    def test_stock_utterances(self, text, key):
        assert UTTERANCES[key].search(text)
