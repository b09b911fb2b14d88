"""
Controller — the bot-wide hub.

Owns the middleware pipeline, the event router, the live task list and the
engine context (id counters + storage). Inbound messages flow through

    ingest → normalize → categorize → receive

and are then handed to an active conversation (worker.find_conversation)
or, failing that, fired as an event named after `message.type`.
"""
from __future__ import annotations

import copy
import itertools
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

import structlog

from config.settings import Settings, get_settings
from core.events import EventRouter, call_handler
from core.matcher import UTTERANCES, Matcher, Pattern, hears_regexp
from core.middleware import MiddlewarePipeline, StageContext
from database.store_base import BaseStorage
from database.store_factory import create_storage
from models.schemas import Message, PipelineTag

if TYPE_CHECKING:
    from backend.invoker import JsonApiInvoker
    from context.conversation import Conversation
    from context.scheduler import TickScheduler
    from context.task import Task

logger = structlog.get_logger()


@dataclass
class EngineContext:
    """Counters and storage shared by every task and conversation of one engine."""
    storage: Optional[BaseStorage] = None
    _task_ids: Any = field(default_factory=itertools.count)
    _convo_ids: Any = field(default_factory=itertools.count)

    def next_task_id(self) -> int:
        return next(self._task_ids)

    def next_conversation_id(self) -> int:
        return next(self._convo_ids)


class Controller:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        context: Optional[EngineContext] = None,
        api_invoker: Optional[JsonApiInvoker] = None,
    ):
        self.settings = settings or get_settings()
        self.context = context or EngineContext(storage=create_storage(self.settings.storage))
        self.middleware = MiddlewarePipeline()
        self.events = EventRouter(name="controller", before_generic=self._run_triggered)
        self.tasks: list[Task] = []
        self.utterances = UTTERANCES
        self.excluded_events: list[str] = []
        self.hears_test: Matcher = hears_regexp
        self.tick_delay_ms = self.settings.tick.tick_delay_ms
        self.studio = None
        self._api_invoker = api_invoker
        self._scheduler: Optional[TickScheduler] = None

    @property
    def storage(self) -> Optional[BaseStorage]:
        return self.context.storage

    @property
    def api_invoker(self) -> JsonApiInvoker:
        if self._api_invoker is None:
            from backend.invoker import JsonApiInvoker
            self._api_invoker = JsonApiInvoker(
                timeout=self.settings.http.timeout_seconds,
                retry_attempts=self.settings.http.retry_attempts,
            )
        return self._api_invoker

    # ── Events ────────────────────────────────────────────

    def on(self, events: Union[str, list[str]], handler: Callable, is_hearing: bool = False) -> None:
        self.events.on(events, handler, is_hearing)

    async def trigger(self, event: str, *args: Any) -> bool:
        return await self.events.trigger(event, *args)

    async def _run_triggered(self, event: str, args: tuple) -> bool:
        ctx = StageContext(
            bot=args[0] if args else None,
            message=args[1] if len(args) > 1 else None,
        )
        result = await self.middleware.run("triggered", ctx)
        if not result:
            logger.error("triggered_middleware_failed", event_name=event, error=str(result.error))
            return False
        return True

    def hears(
        self,
        patterns: Union[Pattern, list[Pattern]],
        events: Union[str, list[str]],
        handler: Callable,
        matcher: Optional[Matcher] = None,
    ) -> None:
        """Run `handler(bot, message)` when an event's message matches `patterns`."""
        if not isinstance(patterns, list):
            patterns = [patterns]

        async def hearing(bot: Any, message: Any, *rest: Any) -> Optional[bool]:
            test = matcher or self.hears_test
            if not test(patterns, message):
                return None
            logger.debug("heard_pattern", text=getattr(message, "text", None))
            ctx = StageContext(bot=bot, message=message)
            result = await self.middleware.run("heard", ctx)
            if not result:
                logger.error("heard_middleware_failed", error=str(result.error))
                return False
            await call_handler(handler, bot, ctx.message)
            await self.trigger("heard_trigger", bot, patterns, ctx.message)
            return False

        self.on(events, hearing, is_hearing=True)

    def change_ears(self, matcher: Matcher) -> None:
        self.hears_test = matcher

    def exclude_from_conversations(self, events: Union[str, list[str]]) -> None:
        if isinstance(events, str):
            events = [events]
        self.excluded_events.extend(events)

    # ── Inbound pipeline ──────────────────────────────────

    async def ingest(self, bot: Any, payload: Union[dict[str, Any], Message], source: Any = None) -> Optional[Message]:
        if isinstance(payload, Message):
            raw = payload.model_dump(exclude={"raw_message", "pipeline"})
            message = payload
        else:
            raw = dict(payload)
            message = Message(**payload)
        message.raw_message = copy.deepcopy(raw)
        message.pipeline = PipelineTag(stage="ingest")

        ctx = StageContext(bot=bot, message=message, source=source)
        result = await self.middleware.run("ingest", ctx)
        if not result:
            logger.error("ingest_middleware_failed", error=str(result.error))
            return None
        return await self.normalize(bot, ctx.message)

    async def normalize(self, bot: Any, message: Message) -> Optional[Message]:
        message.pipeline = PipelineTag(stage="normalize")
        ctx = StageContext(bot=bot, message=message)
        result = await self.middleware.run("normalize", ctx)
        if not result:
            logger.error("normalize_middleware_failed", error=str(result.error))
            return None
        message = ctx.message
        if not message.type:
            message.type = "message_received"
        return await self.categorize(bot, message)

    async def categorize(self, bot: Any, message: Message) -> Optional[Message]:
        message.pipeline = PipelineTag(stage="categorize")
        ctx = StageContext(bot=bot, message=message)
        result = await self.middleware.run("categorize", ctx)
        if not result:
            logger.error("categorize_middleware_failed", error=str(result.error))
            return None
        return await self.receive_message(bot, ctx.message)

    async def receive_message(self, bot: Any, message: Message) -> Optional[Message]:
        message.pipeline = PipelineTag(stage="receive")
        ctx = StageContext(bot=bot, message=message)
        result = await self.middleware.run("receive", ctx)
        if not result:
            logger.error("receive_middleware_failed", error=str(result.error))
            return None
        message = ctx.message
        logger.debug("message_received", type=message.type, user=message.user, channel=message.channel)

        convo = await call_handler(bot.find_conversation, message)
        if convo is not None:
            await convo.handle(message)
        else:
            await self.trigger(message.type, bot, message)
        return message

    # ── Workers, tasks, conversations ─────────────────────

    async def spawn(self, worker: Any) -> Any:
        worker.controller = self
        result = await self.middleware.run("spawn", StageContext(bot=worker))
        if not result:
            logger.error("spawn_middleware_failed", error=str(result.error))
        await self.trigger("spawned", worker)
        return worker

    async def start_task(self, bot: Any, message: Message) -> Task:
        from context.task import Task
        task = Task(self, bot, message)
        self.tasks.append(task)
        await task.start_conversation(message)
        return task

    async def start_conversation(self, bot: Any, message: Message) -> Conversation:
        task = await self.start_task(bot, message)
        return task.convos[0]

    def create_conversation(self, bot: Any, message: Message) -> Conversation:
        from context.task import Task
        task = Task(self, bot, message)
        self.tasks.append(task)
        return task.create_conversation(message)

    # ── Ticking ───────────────────────────────────────────

    async def tick(self) -> None:
        for task in list(self.tasks):
            await task.tick()
        self.tasks = [t for t in self.tasks if t.is_active()]
        await self.trigger("tick")

    def set_tick_delay(self, delay_ms: int) -> None:
        self.tick_delay_ms = delay_ms
        if self._scheduler is not None:
            self._scheduler.interval_ms = delay_ms

    async def start_ticking(self) -> None:
        from context.scheduler import TickScheduler
        if self._scheduler is None:
            self._scheduler = TickScheduler(self, interval_ms=self.tick_delay_ms)
        await self._scheduler.start()

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        await self.trigger("shutdown")
        if self.studio is not None:
            await self.studio.close()
        if self._api_invoker is not None:
            await self._api_invoker.close()
        if self.storage is not None:
            await self.storage.close()


def create_controller(config_path: str = None, provider: Any = None) -> Controller:
    """Load settings, configure logging and return a controller with a Studio attached."""
    from config.log_setup import configure_logging
    from config.settings import load_settings
    from templates.studio import Studio

    settings = load_settings(config_path)
    configure_logging(settings)
    controller = Controller(settings)
    Studio(controller, provider)
    logger.info("controller_created", app=settings.app_name, storage=settings.storage.backend)
    return controller
