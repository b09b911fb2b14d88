"""
Task — the conversations spawned from one triggering message.

A task completes exactly when none of its conversations is still active;
it then fires `end` on itself. Response views here are derived from the
conversations' capture maps and hold no state of their own.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional, Union

import structlog

from context.conversation import Conversation, now_ms, status_value
from core.events import EventRouter
from core.middleware import StageContext
from models.schemas import Message, TaskStatus

if TYPE_CHECKING:
    from core.controller import Controller

logger = structlog.get_logger()


class Task:
    def __init__(self, controller: Controller, bot: Any, message: Message):
        self.controller = controller
        self.bot = bot
        self.source_message = message
        self.id = controller.context.next_task_id()
        self.convos: list[Conversation] = []
        self.status = TaskStatus.ACTIVE
        self.start_time = now_ms()
        self.time_limit: Optional[int] = None
        self.events = EventRouter(name=f"task:{self.id}")

    def __repr__(self) -> str:
        return f"Task(id={self.id}, status={self.status.value}, convos={len(self.convos)})"

    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE

    # ── Events ────────────────────────────────────────────

    def on(self, events: Union[str, list[str]], handler: Callable) -> Task:
        self.events.on(events, handler)
        return self

    async def trigger(self, event: str, *args: Any) -> None:
        await self.events.trigger(event, *args)

    # ── Conversations ─────────────────────────────────────

    def create_conversation(self, message: Message) -> Conversation:
        convo = Conversation(self, message, convo_id=self.controller.context.next_conversation_id())
        self.convos.append(convo)
        return convo

    async def start_conversation(self, message: Message) -> Conversation:
        convo = self.create_conversation(message)
        logger.debug("conversation_starting", convo_id=convo.id,
                     user=message.user, channel=message.channel)
        await convo.activate()
        return convo

    async def conversation_ended(self, convo: Conversation) -> None:
        ctx = StageContext(bot=self.bot, convo=convo)
        result = await self.controller.middleware.run("conversation_end", ctx)
        if not result:
            logger.error("conversation_end_middleware_failed",
                         convo_id=convo.id, error=str(result.error))

        logger.info("conversation_ended", convo_id=convo.id, task_id=self.id,
                    user=convo.source_message.user, status=status_value(convo.status))
        await self.trigger("conversationEnded", convo)
        await self.controller.trigger("conversationEnded", self.bot, convo)
        await convo.trigger("end", convo)

        if not any(c.is_active() for c in self.convos):
            await self.task_ended()

    async def end_immediately(self, reason: Optional[str] = None) -> None:
        for convo in list(self.convos):
            if convo.is_active():
                await convo.stop(reason or "stopped")

    async def task_ended(self) -> None:
        if self.status == TaskStatus.COMPLETED:
            return
        logger.debug("task_ended", task_id=self.id, user=self.source_message.user)
        self.status = TaskStatus.COMPLETED
        await self.trigger("end", self)

    async def tick(self) -> None:
        for convo in list(self.convos):
            if not convo.is_active():
                continue
            try:
                await convo.tick()
            except Exception as e:
                logger.error("conversation_tick_failed", convo_id=convo.id, error=str(e))

    # ── Response views ────────────────────────────────────

    def get_responses_by_user(self) -> dict[str, dict[str, str]]:
        users: dict[str, dict[str, str]] = {}
        for convo in self.convos:
            users[convo.source_message.user] = convo.extract_responses()
        return users

    def get_responses_by_subject(self) -> dict[str, dict[str, str]]:
        answers: dict[str, dict[str, str]] = {}
        for convo in self.convos:
            for key in convo.responses:
                answers.setdefault(key, {})[convo.source_message.user] = convo.extract_response(key)
        return answers
