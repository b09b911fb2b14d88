"""
Script Compiler — turns a remote ScriptCommand into a ready Conversation.

Compile order:
  1. create the conversation (not yet active) and set the default timeout
  2. starter scripts record the user
  3. pre-populate vars from the user's stored attributes and the script's
     declared variables
  4. walk every topic line by line, appending Steps to the topic's thread
  5. install the script's before-thread hooks

A line carrying several directives becomes consecutive single-kind steps,
in the order the conversation processes them:

    set_var → json_api → goto_dialogue → contact_human
      → link_to_subscription → back_to_bot → message / question / action
"""
from __future__ import annotations

import copy
import re
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from models.schemas import CaptureOptions, HandlerOption, Message, Step, StepKind
from templates.models import Collect, CollectOption, QuickReplySet, ScriptCommand, ScriptLine
from templates.registry import ScriptHookRegistry, run_hooks

if TYPE_CHECKING:
    from context.conversation import Conversation
    from core.controller import Controller

logger = structlog.get_logger()

CANCEL_INPUT = "##cancel**input**loop##"
QUICK_REPLY_KEY = "quickReplyResponse"
DEFAULT_MESSAGING_TYPE = "NON_PROMOTIONAL_SUBSCRIPTION"

COMMON_ATTRIBUTES = (
    "user_age",
    "user_email",
    "user_phone",
    "fb_gender",
    "fb_username",
    "fb_lastname",
    "fb_fullname",
    "fb_firstname",
)

DIRECTIVE_ORDER = (
    (StepKind.SET_VAR, "set_var"),
    (StepKind.JSON_API, "json_api"),
    (StepKind.GOTO_DIALOGUE, "goto_dialogue"),
    (StepKind.CONTACT_HUMAN, "contact_human"),
    (StepKind.LINK_SUBSCRIPTION, "link_to_subscription"),
    (StepKind.BACK_TO_BOT, "back_to_bot"),
)

# meta keys that would clash with how the compiler builds a step
_RESERVED_META = {"kind", "handler", "capture_options", "call_scheduler"}


class ScriptCompiler:
    def __init__(self, controller: Controller, hooks: Optional[ScriptHookRegistry] = None):
        self.controller = controller
        self.hooks = hooks or ScriptHookRegistry()

    async def compile(self, bot: Any, context: Message, command: ScriptCommand) -> Conversation:
        convo = bot.create_conversation(context)
        convo.set_timeout(self.controller.settings.tick.default_timeout_ms)

        if command.is_starter_trigger:
            await self._save_starter_user(context.user)
        await self._prepopulate(convo, context, command)

        for topic in command.script:
            for line in topic.script:
                self._compile_line(bot, convo, context, command, topic.topic, line)

            for hook in self.hooks.thread_hooks(command.command).get(topic.topic, []):
                convo.before_thread(topic.topic, hook)

        logger.info("script_compiled", command=command.command, convo_id=convo.id,
                    threads=len(convo.threads))
        return convo

    # ── Pre-population ────────────────────────────────

    async def _save_starter_user(self, user: str) -> None:
        storage = self.controller.storage
        if storage is None or not user:
            return
        try:
            record = await storage.users.get(user) or {}
            record.update({"id": user, "user_id": user})
            await storage.users.save(record)
        except Exception as e:
            logger.error("starter_user_save_failed", user=user, error=str(e))

    async def _prepopulate(self, convo: Conversation, context: Message, command: ScriptCommand) -> None:
        storage = self.controller.storage
        if storage is not None:
            try:
                record = await storage.users.get(context.user) or {}
                for name in COMMON_ATTRIBUTES:
                    latest = await storage.get_latest_attribute(context.user, name)
                    value = latest.value if latest else record.get(name)
                    if value:
                        await convo.set_var(name, value)
                for variable in command.variables:
                    latest = await storage.get_latest_attribute(context.user, variable.name)
                    if latest and latest.value:
                        await convo.set_var(variable.name, latest.value)
            except Exception as e:
                logger.error("user_data_fetch_failed", user=context.user, error=str(e))

        # declared values win over stored ones and double as answers
        for variable in command.variables:
            if variable.value:
                await convo.set_var(variable.name, variable.value)
                convo.responses[variable.name] = Message(
                    question=variable.name, text=str(variable.value),
                )

    # ── Lines ─────────────────────────────────────────

    def _compile_line(
        self,
        bot: Any,
        convo: Conversation,
        context: Message,
        command: ScriptCommand,
        topic: str,
        line: ScriptLine,
    ) -> None:
        if line.conditional is not None:
            convo.add_conditional(line.conditional.model_copy(deep=True), topic)
            return

        base: dict[str, Any] = {}
        if getattr(context, "is_subscription", False):
            base["messaging_type"] = getattr(context, "messaging_type", None) or DEFAULT_MESSAGING_TYPE
        base.update({m.key: m.value for m in line.meta if m.key not in _RESERVED_META})

        for kind, field in DIRECTIVE_ORDER:
            payload = getattr(line, field)
            if payload is None:
                continue
            fields = dict(base)
            if kind == StepKind.LINK_SUBSCRIPTION:
                payload = self._resolve_subscription(payload)
                fields["call_scheduler"] = self._subscription_scheduler(context, payload)
            fields[field] = payload.model_copy(deep=True)
            convo.add_message(Step(kind=kind, **fields), topic)

        fields = self._content_fields(bot, line)
        fields.update(base)

        if line.collect is not None:
            self._add_question(convo, command, topic, line.collect, fields)
        elif line.quick_reply is not None:
            self._attach_quick_reply(convo, command, topic, line.quick_reply, fields)
        elif fields.get("text") or fields.get("attachments") or fields.get("attachment"):
            convo.add_message(Step(kind=StepKind.MESSAGE, **fields), topic)
        elif fields.get("action") is not None:
            convo.add_message(Step(kind=StepKind.ACTION, **fields), topic)

    def _content_fields(self, bot: Any, line: ScriptLine) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if line.text:
            fields["text"] = copy.copy(line.text)

        if line.attachments:
            fields["attachments"] = [
                {**a, "mrkdwn_in": ["text", "pretext", "fields"], "mrkdwn": True}
                for a in copy.deepcopy(line.attachments)
            ]

        if line.fb_attachment:
            _apply_fb_attachment(fields, copy.deepcopy(line.fb_attachment), getattr(bot, "type", ""))

        replies = list(fields.get("quick_replies") or [])
        if line.quick_reply is not None:
            replies.extend(copy.deepcopy(line.quick_reply.quick_replies))
        if line.collect is not None:
            replies.extend(
                {
                    "title": o.pattern,
                    "payload": o.fb_quick_reply_payload,
                    "image_url": o.fb_quick_reply_image_url,
                    "content_type": o.fb_quick_reply_content_type,
                }
                for o in line.collect.options if o.fb_quick_reply
            )
        if replies:
            fields["quick_replies"] = replies

        if line.action:
            fields["action"] = line.action
            if line.execute is not None:
                fields["execute"] = line.execute.model_copy()
        return fields

    # ── Questions ─────────────────────────────────────

    def _add_question(
        self,
        convo: Conversation,
        command: ScriptCommand,
        topic: str,
        collect: Collect,
        fields: dict[str, Any],
    ) -> None:
        capture = CaptureOptions(multiple=collect.multiple)
        if collect.key:
            capture = CaptureOptions(
                key=collect.key,
                multiple=collect.multiple,
                validation=collect.validation,
                validation_regex=collect.validation_regex,
                validation_message=collect.validation_message,
                check_if_attribute_exists=collect.check_if_attribute_exists,
            )

        handlers = [self._option_handler(command, option, capture) for option in collect.options]
        if not any(option.default for option in collect.options):
            handlers.append(HandlerOption(default=True, callback=self._default_handler(command, capture)))

        if collect.allow_canceling_conversation:
            fields["attachment"] = {
                "type": "template",
                "payload": {
                    "text": fields.get("text"),
                    "buttons": [{
                        "payload": CANCEL_INPUT,
                        "title": collect.cancel_button_name or "cancel",
                        "type": "postback",
                    }],
                    "template_type": "button",
                },
            }
            fields["text"] = None

        if capture.check_if_attribute_exists and convo.get_var(capture.key) is not None:
            logger.debug("question_skipped_attribute_exists", key=capture.key, convo_id=convo.id)
            return

        convo.add_message(
            Step(kind=StepKind.QUESTION, handler=handlers, capture_options=capture, **fields),
            topic,
        )

    def _option_handler(self, command: ScriptCommand, option: CollectOption,
                        capture: CaptureOptions) -> HandlerOption:
        if option.type == "utterance":
            pattern = self.controller.utterances.get(option.pattern)
        elif option.type == "string":
            pattern = f"^{re.escape(option.pattern)}$"
        elif option.type == "regex":
            pattern = option.pattern
        else:
            pattern = None

        async def callback(message: Message, convo: Conversation) -> None:
            key = capture.key or message.question
            if option.action != "wait" and capture.multiple:
                captured = convo.responses.get(key)
                if isinstance(captured, list) and captured:
                    captured.pop()
            if not await run_hooks(self.hooks.validate_hooks(command.command, key), convo):
                return
            await convo.handle_action(option)

        return HandlerOption(pattern=pattern, default=option.default, callback=callback)

    def _default_handler(self, command: ScriptCommand, capture: CaptureOptions) -> Callable:
        async def callback(message: Message, convo: Conversation) -> None:
            if not await run_hooks(self.hooks.validate_hooks(command.command, capture.key), convo):
                return

            answer = message.text or ""
            if answer == CANCEL_INPUT:
                await convo.stop()
                return

            if (
                capture.key
                and capture.validation_regex
                and capture.key.lower() != "none"
                and not re.search(capture.validation_regex, answer)
            ):
                # ask again: validation text first, then the question
                if convo.last_message is not None:
                    convo.say_first(convo.last_message.model_copy(update={"timestamp": None}))
                if capture.validation_message:
                    convo.say_first(capture.validation_message)
                convo.next()
                return

            if capture.key:
                await convo.set_var(capture.key, answer, persist=True)
            convo.next()

        return callback

    # ── Quick replies ─────────────────────────────────

    def _attach_quick_reply(
        self,
        convo: Conversation,
        command: ScriptCommand,
        topic: str,
        quick_reply: QuickReplySet,
        fields: dict[str, Any],
    ) -> None:
        """Make the topic's previous message wait for one of the buttons."""
        definition = convo.threads.get(topic) or []
        previous = definition[-1] if definition else None
        if previous is None or previous.kind != StepKind.MESSAGE or not _takes_quick_reply(previous):
            logger.warning("quick_reply_without_message", command=command.command, topic=topic)
            return

        valid = [
            value
            for reply in quick_reply.quick_replies
            for value in (reply.get("payload"), reply.get("title"))
            if value
        ]
        handler = HandlerOption(default=True, callback=self._quick_reply_handler(command, quick_reply, valid))
        definition[-1] = previous.model_copy(update={
            "kind": StepKind.QUESTION,
            "handler": [handler],
            "capture_options": CaptureOptions(key=QUICK_REPLY_KEY),
            "quick_replies": fields.get("quick_replies"),
        })
        # the live queue holds its own copy of the current thread
        if topic == convo.thread and convo.messages:
            convo.messages[-1] = definition[-1].model_copy()

    def _quick_reply_handler(self, command: ScriptCommand, quick_reply: QuickReplySet,
                             valid: list[str]) -> Callable:
        async def callback(message: Message, convo: Conversation) -> None:
            if not await run_hooks(self.hooks.validate_hooks(command.command, QUICK_REPLY_KEY), convo):
                return

            response = convo.responses.get(QUICK_REPLY_KEY) or message
            text = response.text
            tapped = getattr(response, "quick_reply", None)
            payload = tapped.get("payload") if isinstance(tapped, dict) else None
            choice = text or payload

            if choice not in valid:
                # free text ends the script and is handled as a fresh message
                logger.debug("quick_reply_not_matched", convo_id=convo.id, text=choice)
                await convo.stop()
                fresh = convo.clone_trigger_message(type="message_received", text=choice)
                await self.controller.trigger("message_received", convo.task.bot, fresh)
                return

            if quick_reply.save_to_attribute:
                await convo.set_var(quick_reply.save_to_attribute, text, persist=True)
            convo.next()

            if payload and payload in quick_reply.dialogue_triggers:
                trigger = convo.clone_trigger_message(text=payload)
                await self.controller.trigger("custom_trigger", convo.task.bot, trigger)

        return callback

    # ── Subscriptions ─────────────────────────────────

    def _resolve_subscription(self, directive):
        studio = self.controller.settings.studio
        return directive.model_copy(update={
            "helper_api_url": studio.helper_api_uri,
            "loopback_url": directive.loopback_url or studio.command_uri,
        })

    def _subscription_scheduler(self, context: Message, directive) -> Callable:
        controller = self.controller

        async def call_scheduler(subscriptions: Any) -> Any:
            return await controller.api_invoker.post_subscriptions(
                directive.helper_api_url,
                subscriptions,
                directive.loopback_url,
                controller.settings.studio.token,
                context.user,
                context.channel,
            )

        return call_scheduler


def _apply_fb_attachment(fields: dict[str, Any], attachment: dict[str, Any], bot_type: str) -> None:
    """Map a Messenger attachment onto step fields."""
    template_type = attachment.get("template_type")

    if bot_type in ("web", "socket"):
        # web clients render buttons as markdown links and quick replies
        if template_type == "button":
            buttons = attachment.get("buttons") or []
            links = "".join(
                f"\n\n[{b.get('title')}]({b.get('url')})" for b in buttons if b.get("type") == "web_url"
            )
            text = fields.get("text") or ""
            if isinstance(text, list):
                fields["text"] = [f"{t}{links}" for t in text]
            else:
                fields["text"] = f"{text}{links}"
            fields.setdefault("quick_replies", []).extend(
                {"content_type": "text", "payload": b.get("payload"), "title": b.get("title")}
                for b in buttons if b.get("type") == "postback"
            )
        elif not template_type and attachment.get("type"):
            fields["attachment"] = attachment
        return

    if template_type:
        if template_type == "button":
            attachment["text"] = fields.get("text")
        fields["attachment"] = {"type": "template", "payload": attachment}
    elif attachment.get("type"):
        fields["attachment"] = attachment
    fields["text"] = None

    payload = (fields.get("attachment") or {}).get("payload")
    if isinstance(payload, dict):
        for element in payload.get("elements") or []:
            if not element.get("buttons"):
                element.pop("buttons", None)


def _takes_quick_reply(step: Step) -> bool:
    if step.attachment:
        return step.attachment.get("type") in ("template", "image")
    return bool(step.text)
