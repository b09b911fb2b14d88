"""
Bot Workers — the transport-facing half of the engine.

Provides:
- ChannelError: structured error raised by transports
- BotWorker: abstract base every platform connector extends
    reply()             → deliver an outbound step in reply to a message
    send()              → hand a platform payload to the network
    say()               → render a step via the `send` and `format` stages, then send
    find_conversation() → route an inbound message to an active conversation
"""
from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, Optional, Union

import structlog

from core.errors import ScriptBotError
from core.middleware import StageContext
from models.schemas import Message, SendReceipt, Step

if TYPE_CHECKING:
    from context.conversation import Conversation
    from core.controller import Controller

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(ScriptBotError):
    """Base exception for all transport operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  BOT WORKER: abstract base
# ══════════════════════════════════════════════════════════════

class BotWorker(abc.ABC):
    """
    Base class for all platform workers.

    Subclasses implement send() and reply(). The base class wires outbound
    messages through the controller's middleware and provides the default
    conversation lookup.
    """

    type: str = "core"

    def __init__(self, controller: Optional[Controller] = None, identity: Optional[dict[str, Any]] = None):
        self.controller = controller
        self.identity: dict[str, Any] = identity or {"id": "", "name": ""}

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def send(self, platform_message: dict[str, Any]) -> SendReceipt:
        """Push a formatted payload to the network. Raise ChannelError on failure."""
        ...

    @abc.abstractmethod
    async def reply(self, src: Message, outbound: Step) -> SendReceipt:
        """Answer `src` with `outbound`. Raise ChannelError on failure."""
        ...

    # ── Outbound ──────────────────────────────────────────────

    async def say(self, message: Union[str, dict[str, Any], Step]) -> SendReceipt:
        step = Step.coerce(message)
        ctx = StageContext(bot=self, message=step, platform_message={})

        result = await self.controller.middleware.run("send", ctx)
        if not result:
            raise ChannelError(f"send middleware failed: {result.error}", channel=self.type)

        result = await self.controller.middleware.run("format", ctx)
        if not result:
            raise ChannelError(f"format middleware failed: {result.error}", channel=self.type)

        return await self.send(ctx.platform_message)

    # ── Conversations ─────────────────────────────────────────

    async def find_conversation(self, message: Message) -> Optional[Conversation]:
        """Active conversation with the same user and channel, if any."""
        if message.type in self.controller.excluded_events:
            return None
        for task in self.controller.tasks:
            for convo in task.convos:
                if (
                    convo.is_active()
                    and convo.source_message.user == message.user
                    and convo.source_message.channel == message.channel
                ):
                    logger.debug("conversation_found", convo_id=convo.id, user=message.user)
                    return convo
        return None

    async def start_conversation(self, message: Message) -> Conversation:
        return await self.controller.start_conversation(self, message)

    def create_conversation(self, message: Message) -> Conversation:
        return self.controller.create_conversation(self, message)
