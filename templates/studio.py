"""
Studio — runs scripts fetched from the script service.

    get / get_by_id   fetch + compile, hand back an inactive conversation
    run               get + activate
    run_trigger       match input text against script triggers, compile, activate
    test_trigger      does any script answer to this text?

Every loaded script fires `command_triggered` on the controller and, when
its conversation ends, runs the script's after hooks and fires
`remote_command_end`.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from backend.connector import ScriptProvider, create_script_provider
from core.errors import ScriptHaltedError, ScriptNotFoundError
from models.schemas import Message
from templates.compiler import DEFAULT_MESSAGING_TYPE, ScriptCompiler
from templates.models import ScriptCommand
from templates.registry import ScriptHookRegistry, run_hooks

if TYPE_CHECKING:
    from context.conversation import Conversation
    from core.controller import Controller

logger = structlog.get_logger()


class Studio:
    def __init__(
        self,
        controller: Controller,
        provider: Optional[ScriptProvider] = None,
        hooks: Optional[ScriptHookRegistry] = None,
    ):
        self.controller = controller
        self.provider = provider or create_script_provider(controller.settings.studio)
        self.hooks = hooks or ScriptHookRegistry()
        self.compiler = ScriptCompiler(controller, self.hooks)
        controller.studio = self

    # ── Hook registration ─────────────────────────────

    def before(self, command: str, fn: Callable) -> Studio:
        self.hooks.before(command, fn)
        return self

    def after(self, command: str, fn: Callable) -> Studio:
        self.hooks.after(command, fn)
        return self

    def validate(self, command: str, key: str, fn: Callable) -> Studio:
        self.hooks.validate(command, key, fn)
        return self

    def before_thread(self, command: str, thread: str, fn: Callable) -> Studio:
        self.hooks.before_thread(command, thread, fn)
        return self

    # ── Loading ───────────────────────────────────────

    @staticmethod
    def _context(user: str, channel: str, original_message: Optional[Message], **fields: Any) -> Message:
        return Message(
            user=user,
            channel=channel,
            raw_message=original_message.raw_message if original_message else None,
            original_message=original_message.model_dump(exclude={"raw_message"}) if original_message else None,
            **fields,
        )

    async def _load(self, bot: Any, context: Message, command: ScriptCommand) -> Conversation:
        await self.controller.trigger("command_triggered", bot, context, command)

        context.script_name = command.command
        context.script_id = command.script_id
        convo = await self.compiler.compile(bot, context, command)

        async def on_end(ended: Conversation) -> None:
            if await run_hooks(self.hooks.after_hooks(command.command), ended):
                await self.controller.trigger("remote_command_end", bot, context, command, ended)

        convo.on("end", on_end)

        if not await run_hooks(self.hooks.before_hooks(command.command), convo):
            if convo.task in self.controller.tasks:
                self.controller.tasks.remove(convo.task)
            raise ScriptHaltedError(command.command)
        return convo

    async def get(
        self,
        bot: Any,
        name: str,
        user: str,
        channel: str,
        original_message: Optional[Message] = None,
    ) -> Conversation:
        """Fetch the script called `name` and compile it. The conversation is not activated."""
        command = await self.provider.get_script(name, user)
        if not command.found:
            raise ScriptNotFoundError(name)
        context = self._context(user, channel, original_message, text=name)
        return await self._load(bot, context, command)

    async def get_by_id(
        self,
        bot: Any,
        script_id: str,
        user: str,
        channel: str,
        original_message: Optional[Message] = None,
    ) -> Conversation:
        command = await self.provider.get_script_by_id(script_id, user)
        if not command.found:
            raise ScriptNotFoundError(script_id)
        context = self._context(user, channel, original_message, id=script_id)
        return await self._load(bot, context, command)

    async def run(
        self,
        bot: Any,
        name: str,
        user: str,
        channel: str,
        original_message: Optional[Message] = None,
    ) -> Conversation:
        convo = await self.get(bot, name, user, channel, original_message)
        await convo.activate()
        return convo

    async def run_trigger(
        self,
        bot: Any,
        text: str,
        user: str,
        channel: str,
        original_message: Optional[Message] = None,
    ) -> Optional[Conversation]:
        """
        Start whichever script answers to `text`.

        Returns None when no script matches, leaving the caller free to
        run a fallback.
        """
        extra: dict[str, Any] = {}
        if original_message is not None:
            extra["is_subscription"] = bool(getattr(original_message, "is_subscription", False))
            extra["messaging_type"] = getattr(original_message, "new_messaging_type", None) or DEFAULT_MESSAGING_TYPE
        context = self._context(user, channel, original_message, text=text, **extra)

        command = await self.provider.evaluate_trigger(text, user)
        if not command.found:
            logger.debug("no_script_triggered", text=text, user=user)
            return None

        convo = await self._load(bot, context, command)
        await convo.activate()
        return convo

    async def test_trigger(self, bot: Any, text: str, user: str, channel: str = "") -> bool:
        command = await self.provider.evaluate_trigger(text, user)
        return command.found

    async def close(self):
        await self.provider.close()
