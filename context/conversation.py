"""
Conversation — the dialogue state machine.

A conversation owns named threads of steps, the live queue of the current
thread, the capture map, the variable store and a lifecycle status. It is
advanced one step per scheduler tick and by inbound answers via handle().

Thread switch:
    goto_thread(name) → before-thread hooks run in order (processing=True)
    → unknown non-default thread stops the conversation (unknown_thread)
    → otherwise thread/messages are replaced by a fresh copy of the
      definition and any pending answer handler is cleared.

Side effects that must not block a tick (deliveries, JSON API calls,
script transitions, subscription linking) run as background tasks kept in
`background_tasks`. Each conversation carries an `epoch` that stop()
bumps; a JSON API completion from an older epoch is discarded.
"""
from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

import structlog

from core.events import EventRouter, call_handler
from core.middleware import StageContext
from models.schemas import (
    ApiProperty, CaptureOptions, Condition, ConversationStatus, HandlerOption,
    Message, Step, StepKind,
)
from utils.conditions import (
    evaluate_direct_to_flow, evaluate_entity, evaluate_operation, passes_test,
)
from utils.templating import combine_messages, render_attachments, safe_render

if TYPE_CHECKING:
    from context.task import Task

logger = structlog.get_logger()

ACTIVE_STATUSES = (ConversationStatus.ACTIVE, ConversationStatus.ENDING)
API_ERROR_TEXT = "An error occured with a request."


def now_ms() -> float:
    return time.time() * 1000


def status_value(status: Union[ConversationStatus, str]) -> str:
    return status.value if isinstance(status, ConversationStatus) else str(status)


def _coerce_handler(handler: Any) -> Any:
    if isinstance(handler, list):
        return [h if isinstance(h, HandlerOption) else HandlerOption(**h) for h in handler]
    return handler


def _coerce_capture(options: Any) -> Optional[CaptureOptions]:
    if options is None or isinstance(options, CaptureOptions):
        return options
    return CaptureOptions.model_validate(options)


class Conversation:
    """One scripted dialogue with one user in one channel."""

    def __init__(self, task: Task, message: Message, convo_id: int = 0):
        self.task = task
        self.source_message = message
        self.id = convo_id

        self.status: Union[ConversationStatus, str] = ConversationStatus.NEW
        self.threads: dict[str, list[Step]] = {}
        self.thread: Optional[str] = None
        self.messages: list[Step] = []
        self.sent: list[Step] = []
        self.transcript: list[Any] = []
        self.responses: dict[str, Any] = {}
        self.vars: dict[str, Any] = {}

        self.handler: Any = None
        self.capture_options: CaptureOptions = CaptureOptions()
        self.timeout_handler: Optional[Callable] = None
        self.before_hooks: dict[str, list[Callable]] = {}
        self.last_message: Optional[Step] = None

        self.start_time = now_ms()
        self.last_active = now_ms()
        self.processing = False
        self.next_thread: Optional[str] = None
        self.epoch = 0
        self._ended = False

        self.events = EventRouter(name=f"convo:{convo_id}")
        self.background_tasks: list[asyncio.Task] = []

        self.context: dict[str, Any] = {
            "user": message.user,
            "channel": message.channel,
            "bot": task.bot,
            "script_name": message.script_name,
            "script_id": message.script_id,
        }

        self._enter_thread("default")
        logger.debug("conversation_created", convo_id=self.id,
                     user=message.user, channel=message.channel)

    # ── Helpers ───────────────────────────────────────────

    @property
    def controller(self):
        return self.task.controller

    def _require_delivery(self) -> bool:
        settings = getattr(self.controller, "settings", None)
        return bool(settings and settings.tick.require_delivery)

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        bg = asyncio.create_task(coro, name=f"convo{self.id}:{name}")
        self.background_tasks.append(bg)
        bg.add_done_callback(self._on_background_done)
        return bg

    def _on_background_done(self, bg: asyncio.Task) -> None:
        if bg.cancelled():
            return
        exc = bg.exception()
        if exc is not None:
            logger.error("background_task_failed", convo_id=self.id,
                         task=bg.get_name(), error=str(exc))

    async def wait_for_background(self) -> None:
        """Await every background task, including ones spawned meanwhile."""
        while True:
            pending = [t for t in self.background_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Events ────────────────────────────────────────────

    def on(self, events: Union[str, list[str]], handler: Callable) -> Conversation:
        self.events.on(events, handler)
        return self

    async def trigger(self, event: str, *args: Any) -> None:
        await self.events.trigger(event, *args)

    # ── Lifecycle ─────────────────────────────────────────

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def deactivate(self) -> None:
        self.status = ConversationStatus.INACTIVE

    def successful(self) -> bool:
        """True only once the conversation finished with status completed."""
        if self.is_active():
            return False
        return self.status == ConversationStatus.COMPLETED

    async def activate(self) -> None:
        if self._ended:
            logger.debug("conversation_already_ended", convo_id=self.id,
                         status=status_value(self.status))
            return
        ctx = StageContext(bot=self.task.bot, convo=self)
        result = await self.controller.middleware.run("conversation_start", ctx)
        if not result:
            logger.error("conversation_start_middleware_failed",
                         convo_id=self.id, error=str(result.error))
        self.status = ConversationStatus.ACTIVE
        await self.task.trigger("conversationStarted", self)
        await self.controller.trigger("conversationStarted", self.task.bot, self)

    async def stop(self, status: Optional[str] = None) -> None:
        """End the conversation. Only the first call has any effect."""
        if self._ended:
            return
        self._ended = True
        self.epoch += 1
        self.handler = None
        self.messages = []
        self.status = status or ConversationStatus.STOPPED
        logger.debug("conversation_stopped", convo_id=self.id, status=status_value(self.status))
        await self.task.conversation_ended(self)

    def set_timeout(self, timeout_ms: int) -> None:
        self.task.time_limit = timeout_ms

    def on_timeout(self, handler: Callable) -> None:
        if callable(handler):
            self.timeout_handler = handler
        else:
            logger.debug("invalid_timeout_handler", convo_id=self.id)

    # ── Building threads ──────────────────────────────────

    def add_message(
        self,
        message: Union[str, dict[str, Any], Step],
        thread: Optional[str] = None,
        prepend: bool = False,
    ) -> Step:
        step = Step.coerce(message)
        if not step.channel:
            step.channel = self.source_message.channel
        thread = thread or self.thread
        definition = self.threads.setdefault(thread, [])
        if prepend:
            definition.insert(0, step)
        else:
            definition.append(step)

        if thread == self.thread:
            live = step.model_copy()
            if prepend:
                self.messages.insert(0, live)
            else:
                self.messages.append(live)
        return step

    def say(self, message: Union[str, dict[str, Any], Step]) -> Step:
        return self.add_message(message)

    def say_first(self, message: Union[str, dict[str, Any], Step]) -> Step:
        """Put a step at the very front of the live queue only."""
        step = Step.coerce(message)
        if not step.channel:
            step.channel = self.source_message.channel
        self.messages.insert(0, step)
        return step

    def add_question(
        self,
        message: Union[str, dict[str, Any], Step],
        handler: Any,
        capture_options: Any = None,
        thread: Optional[str] = None,
    ) -> Step:
        step = Step.coerce(message)
        if step.kind not in (StepKind.MESSAGE, StepKind.QUESTION):
            raise ValueError(f"cannot ask a {step.kind.value} step")
        update: dict[str, Any] = {"kind": StepKind.QUESTION, "handler": _coerce_handler(handler)}
        if capture_options is not None:
            update["capture_options"] = _coerce_capture(capture_options)
        return self.add_message(step.model_copy(update=update), thread)

    def ask(self, message: Union[str, dict[str, Any], Step], handler: Any,
            capture_options: Any = None) -> Step:
        return self.add_question(message, handler, capture_options, self.thread or "default")

    def add_conditional(self, condition: Union[dict[str, Any], Condition],
                        thread: Optional[str] = None) -> Step:
        if not isinstance(condition, Condition):
            condition = Condition(**condition)
        return self.add_message(Step(kind=StepKind.CONDITIONAL, conditional=condition), thread)

    def has_thread(self, thread: str) -> bool:
        return thread in self.threads

    def before_thread(self, thread: str, hook: Callable) -> None:
        self.before_hooks.setdefault(thread, []).append(hook)

    # ── Thread switching ──────────────────────────────────

    def _enter_thread(self, thread: str) -> bool:
        if thread not in self.threads:
            if thread != "default":
                return False
            self.threads[thread] = []
        self.thread = thread
        self.messages = [s.model_copy() for s in self.threads[thread]]
        self.handler = None
        return True

    async def goto_thread(self, thread: str) -> None:
        self.next_thread = thread
        self.processing = True
        for hook in list(self.before_hooks.get(thread, [])):
            try:
                await call_handler(hook, self)
            except Exception as e:
                logger.error("before_thread_hook_failed", convo_id=self.id,
                             thread=thread, error=str(e))
                self.processing = False
                return

        self.processing = False
        if not self._enter_thread(thread):
            logger.warning("unknown_thread", convo_id=self.id, thread=thread)
            await self.stop(ConversationStatus.UNKNOWN_THREAD)

    change_topic = goto_thread

    async def transition_to(self, thread: str, message: Union[str, dict[str, Any]]) -> None:
        """Say `message` in a throwaway thread, then move on to `thread`."""
        num = 1
        while self.has_thread(f"transition_{num}"):
            num += 1
        name = f"transition_{num}"

        if isinstance(message, str):
            message = {"text": message}
        self.add_message({**message, "action": thread}, name)
        await self.goto_thread(name)

    # ── Answer flow ───────────────────────────────────────

    def next(self) -> None:
        self.handler = None

    def repeat(self) -> None:
        if not self.sent:
            return
        again = self.sent[-1].model_copy(update={
            "sent": False, "delivered": False, "api_response": None,
            "sent_timestamp": None, "timestamp": None,
        })
        if not self.messages:
            self.messages.append(again)
        else:
            self.say_first(again)

    def silent_repeat(self) -> None:
        return

    async def capture(self, message: Message) -> bool:
        ctx = StageContext(bot=self.task.bot, message=message, convo=self)
        result = await self.controller.middleware.run("capture", ctx)
        if not result:
            logger.error("capture_middleware_failed", convo_id=self.id, error=str(result.error))
            return False
        message = ctx.message
        message.text = (message.text or "").strip()

        last_text = self.sent[-1].text if self.sent else None
        capture_key = last_text if isinstance(last_text, str) else None
        if self.capture_options.key is not None:
            capture_key = self.capture_options.key

        if isinstance(last_text, str):
            message.question = last_text
        elif isinstance(last_text, list) and last_text:
            message.question = last_text[0]
        else:
            message.question = ""

        if capture_key is None:
            return True

        if self.capture_options.multiple:
            existing = self.responses.get(capture_key)
            if not isinstance(existing, list):
                existing = self.responses[capture_key] = []
            existing.append(message)
        else:
            self.responses[capture_key] = message
        return True

    async def handle(self, message: Message) -> None:
        """Feed an inbound answer to the installed handler."""
        self.last_active = now_ms()
        self.transcript.append(message)
        logger.debug("conversation_handling", convo_id=self.id, text=message.text)

        if self.handler is None:
            return
        if not await self.capture(message):
            return

        handler = self.handler
        if not isinstance(handler, list):
            await call_handler(handler, message, self)
            return

        chosen = next(
            (opt for opt in handler
             if opt.pattern and self.controller.hears_test([opt.pattern], message)),
            None,
        )
        if chosen is None:
            chosen = next((opt for opt in handler if opt.default), None)
        if chosen is None:
            return

        ctx = StageContext(bot=self.task.bot, message=message, convo=self)
        result = await self.controller.middleware.run("heard", ctx)
        if not result:
            logger.error("heard_middleware_failed", convo_id=self.id, error=str(result.error))
            return
        await call_handler(chosen.callback, ctx.message, self)

    # ── Variables ─────────────────────────────────────────

    async def set_var(self, field: str, value: Any, persist: bool = False) -> None:
        self.vars[field] = value
        if not persist:
            return
        storage = self.controller.storage
        if storage is None:
            return
        try:
            await storage.save_attribute(self.context["user"], field, value)
        except Exception as e:
            logger.error("attribute_save_failed", convo_id=self.id, key=field, error=str(e))

    def get_var(self, field: str) -> Any:
        return self.vars.get(field)

    async def load_attribute(self, field: str) -> Any:
        storage = self.controller.storage
        if storage is None:
            logger.error("attribute_storage_unavailable", key=field)
            return None
        try:
            attribute = await storage.get_latest_attribute(self.context["user"], field)
        except Exception as e:
            logger.error("attribute_load_failed", convo_id=self.id, key=field, error=str(e))
            return None
        return attribute.value if attribute else None

    async def fetch_var(self, field: str) -> Any:
        """Memory first, then the user's latest persisted attribute."""
        value = self.vars.get(field)
        if not value:
            value = await self.load_attribute(field)
        return value

    # ── Responses ─────────────────────────────────────────

    def extract_response(self, key: str) -> str:
        return combine_messages(self.responses.get(key))

    def extract_responses(self) -> dict[str, str]:
        return {key: self.extract_response(key) for key in self.responses}

    def _question_for(self, key: str) -> str:
        value = self.responses[key]
        if isinstance(value, list):
            return value[0].question if value else ""
        return getattr(value, "question", "")

    def get_responses(self) -> dict[str, dict[str, Any]]:
        return {
            key: {"question": self._question_for(key), "key": key,
                  "answer": self.extract_response(key)}
            for key in self.responses
        }

    def get_responses_as_array(self) -> list[dict[str, Any]]:
        return list(self.get_responses().values())

    # ── Rendering ─────────────────────────────────────────

    def _template_context(self) -> dict[str, Any]:
        identity = getattr(self.task.bot, "identity", None) or {}
        return {
            "identity": identity,
            "responses": self.extract_responses(),
            "origin": self.task.source_message.model_dump(),
            "vars": self.vars,
        }

    def replace_tokens(self, text: Optional[str]) -> str:
        return safe_render(text, self._template_context())

    def clone_message(self, step: Step) -> Step:
        """Render a step into the outbound copy that gets sent."""
        outbound = step.model_copy()
        ctx = self._template_context()

        if isinstance(step.text, list):
            outbound.text = safe_render(random.choice(step.text), ctx) if step.text else ""
        elif step.text:
            outbound.text = safe_render(step.text, ctx)

        if callable(step.attachments):
            outbound.attachments = step.attachments(self)
        elif step.attachments:
            outbound.attachments = render_attachments(step.attachments, ctx)

        if step.attachment:
            attachment = render_attachments(step.attachment, ctx)
            payload = attachment.get("payload") if isinstance(attachment, dict) else None
            if isinstance(payload, dict) and isinstance(payload.get("text"), list) and payload["text"]:
                payload["text"] = random.choice(payload["text"])
            outbound.attachment = attachment

        if not outbound.channel:
            outbound.channel = self.source_message.channel
        outbound.continue_typing = bool(self.messages) and step.handler is None
        return outbound

    def clone_trigger_message(self, **extra: Any) -> Message:
        data = self.source_message.model_dump(
            exclude={"script_id", "script_name", "raw_message", "original_message"},
        )
        data.update(extra)
        return Message(**data)

    # ── Actions and conditions ────────────────────────────

    async def handle_action(self, step: Union[Step, Condition]) -> None:
        action = step.action
        if action is None:
            return
        if callable(action):
            await call_handler(action, self)
        elif action == "execute_script":
            if step.execute is not None:
                self.status = ConversationStatus.TRANSITIONING
                self._spawn(self._execute_script(step.execute.script, step.execute.thread),
                            "execute_script")
        elif action == "next":
            self.next()
        elif action == "repeat":
            self.repeat()
            self.next()
        elif action == "stop":
            await self.stop()
        elif action == "wait":
            self.silent_repeat()
        elif action == "complete":
            await self.stop(ConversationStatus.COMPLETED)
        elif action == "timeout":
            await self.stop(ConversationStatus.TIMEOUT)
        else:
            await self.goto_thread(action)

    async def _execute_script(self, script: str, thread: str) -> None:
        studio = self.controller.studio
        if studio is None:
            logger.error("execute_script_no_studio", convo_id=self.id, script=script)
            await self.stop("transition_failed")
            return
        try:
            new_convo = await studio.get(
                self.task.bot, script, self.source_message.user,
                self.source_message.channel, self.source_message,
            )
        except Exception as e:
            logger.error("execute_script_failed", convo_id=self.id, script=script, error=str(e))
            await self.stop("transition_failed")
            return

        self.context["transition_to"] = new_convo.context.get("script_name")
        self.context["transition_to_id"] = new_convo.context.get("script_id")
        await self.stop(f"transitioning to {script}")

        new_convo.responses.update(self.responses)
        for key, value in self.vars.items():
            await new_convo.set_var(key, value)
        new_convo.context["transition_from"] = self.context.get("script_name")
        new_convo.context["transition_from_id"] = self.context.get("script_id")

        if thread and thread != "default":
            await new_convo.goto_thread(thread)
            if new_convo._ended:
                logger.error("execute_script_thread_failed", convo_id=new_convo.id,
                             script=script, thread=thread)
                return
        await new_convo.activate()

    async def evaluate_condition(self, condition: Condition) -> None:
        left = self.replace_tokens(condition.left)
        right = self.replace_tokens(condition.right)
        if passes_test(condition.test, left, right):
            await self.handle_action(condition)
        await self.tick()

    # ── Scheduler entry point ─────────────────────────────

    async def tick(self) -> None:
        now = now_ms()
        if not self.is_active() or self.processing:
            return

        if self.handler is not None:
            await self._check_timeout(now)
            return

        if not self.messages:
            if self.sent:
                await self.stop(ConversationStatus.COMPLETED)
            return

        if self.sent:
            last = self.sent[-1]
            if not last.sent:
                return
            if self._require_delivery() and not last.delivered:
                return

        head = self.messages[0]
        if head.timestamp is not None and head.timestamp > now:
            return

        step = self.messages.pop(0)
        self.last_message = step
        if not await self._process_step(step, now):
            return

        if self.is_active() and not self.messages and self.handler is None and not self.processing:
            await self.stop(ConversationStatus.COMPLETED)

    async def _check_timeout(self, now: float) -> None:
        limit = self.task.time_limit
        if not limit:
            return
        if now - self.task.start_time <= limit or now - self.last_active <= limit:
            return
        logger.info("conversation_timed_out", convo_id=self.id, limit_ms=limit)
        if self.timeout_handler is not None:
            await call_handler(self.timeout_handler, self)
        elif self.has_thread("on_timeout"):
            self.status = ConversationStatus.ENDING
            await self.goto_thread("on_timeout")
        else:
            await self.stop(ConversationStatus.TIMEOUT)

    async def _process_step(self, step: Step, now: float) -> bool:
        """Run one dequeued step. Returns False when the step owns progression."""
        kind = step.kind

        if kind == StepKind.SET_VAR:
            await self._apply_set_var(step)
        elif kind == StepKind.JSON_API:
            await self._start_json_api(step)
        elif kind == StepKind.GOTO_DIALOGUE:
            if await self._goto_dialogue(step):
                return False
        elif kind == StepKind.CONTACT_HUMAN:
            d = step.contact_human
            copy = self.clone_trigger_message(
                dialogue_id=step.dialogue_id,
                dialogue_name=step.dialogue_name,
                reply_text=d.message,
                waiting_minutes=d.waiting_minutes,
                no_response_message=d.no_response_message,
                regain_control_message=d.regain_control_message,
            )
            await self.controller.trigger("human_handoff", self.task.bot, copy)
        elif kind == StepKind.LINK_SUBSCRIPTION:
            self._spawn(self._link_subscription(step), "link_subscription")
        elif kind == StepKind.BACK_TO_BOT:
            d = step.back_to_bot
            copy = self.clone_trigger_message(
                dialogue_id=step.dialogue_id,
                dialogue_name=step.dialogue_name,
                is_show_message=d.is_show_message,
                message_to_user=d.message_to_user,
            )
            await self.controller.trigger("back_to_bot", self.task.bot, copy)

        if self.messages and self.messages[0].delay:
            self.messages[0].timestamp = now + self.messages[0].delay

        if kind == StepKind.CONDITIONAL:
            await self.evaluate_condition(step.conditional)
            return False

        if kind in (StepKind.MESSAGE, StepKind.QUESTION, StepKind.ACTION):
            self.handler = step.handler
            self.capture_options = step.capture_options or CaptureOptions()
            self.last_active = now_ms()
            if step.has_content:
                self._dispatch(self.clone_message(step))
            if step.action is not None:
                await self.handle_action(step)
        return True

    # ── Step kinds ────────────────────────────────────────

    def _dispatch(self, outbound: Step) -> None:
        outbound.sent_timestamp = now_ms()
        self.sent.append(outbound)
        self.transcript.append(outbound)
        self._spawn(self._deliver(outbound), "deliver")

    async def _deliver(self, outbound: Step) -> None:
        try:
            receipt = await call_handler(self.task.bot.reply, self.source_message, outbound)
        except Exception as e:
            # keep the queue moving; the failure is recorded on the step
            logger.error("message_send_failed", convo_id=self.id, error=str(e))
            outbound.sent = True
            outbound.api_response = e
            return
        outbound.sent = True
        outbound.api_response = receipt
        if getattr(receipt, "delivered", False):
            outbound.delivered = True
        await self.trigger("sent", receipt)

    async def _apply_set_var(self, step: Step) -> None:
        d = step.set_var
        try:
            if d.is_use_operation:
                value = await evaluate_operation(d.operation, self.fetch_var)
            elif d.value_entity is not None:
                value = await evaluate_entity(d.value_entity, self.fetch_var)
            else:
                value = d.value
            await self.set_var(d.key, value, d.is_persist)
        except Exception as e:
            logger.error("set_var_failed", convo_id=self.id, key=d.key, error=str(e))

    async def _start_json_api(self, step: Step) -> None:
        self.processing = True
        attributes: list[ApiProperty] = []
        for attr in step.json_api.attribute_objects:
            value = self.get_var(attr.name)
            if not value:
                value = await self.load_attribute(attr.name)
            attributes.append(attr.model_copy(update={"value": value}))
        self._spawn(self._run_json_api(step, attributes, self.epoch), "json_api")

    async def _run_json_api(self, step: Step, attributes: list[ApiProperty], epoch: int) -> None:
        directive = step.json_api
        try:
            data = await self.controller.api_invoker.invoke(directive, attributes)
        except Exception as e:
            if epoch != self.epoch:
                logger.info("json_api_stale_result_discarded", convo_id=self.id)
                return
            self.processing = False
            logger.error("json_api_failed", convo_id=self.id, url=directive.api_url, error=str(e))
            text = (getattr(e, "plugin_message", None)
                    or directive.plugin_messages.get("errorOccured")
                    or API_ERROR_TEXT)
            self._dispatch(self.clone_message(Step(
                kind=StepKind.MESSAGE, text=text, channel=step.channel,
                dialogue_id=step.dialogue_id, dialogue_name=step.dialogue_name,
            )))
            return

        if epoch != self.epoch:
            logger.info("json_api_stale_result_discarded", convo_id=self.id)
            return
        self.processing = False

        if not isinstance(data, dict):
            data = {"result": data}
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        vars_to_set = data.get("varsToSet") or nested.get("varsToSet")
        if isinstance(vars_to_set, list):
            for item in vars_to_set:
                if isinstance(item, dict) and item.get("key"):
                    await self.set_var(item["key"], item.get("value"), persist=True)

        api_messages = data.get("messages") or []
        last = len(api_messages) - 1
        for i in range(last, -1, -1):
            m = api_messages[i] if isinstance(api_messages[i], dict) else {"text": str(api_messages[i])}
            fields: dict[str, Any] = {"kind": StepKind.MESSAGE, "channel": step.channel}
            if m.get("attachment"):
                fields["attachment"] = m["attachment"]
            else:
                fields["text"] = m.get("text") or ""
            if i == last:
                fields["dialogue_id"] = step.dialogue_id
                fields["dialogue_name"] = step.dialogue_name
            self.say_first(Step(**fields))

        if not (data.get("messages") or data.get("varsToSet") or nested.get("varsToSet")):
            for key, value in data.items():
                await self.set_var(f"api_{key}", value, persist=True)

        if self.is_active() and not self.messages and self.handler is None:
            await self.stop(ConversationStatus.COMPLETED)

    async def _goto_dialogue(self, step: Step) -> bool:
        target = await evaluate_direct_to_flow(step.goto_dialogue.as_conditions(), self.fetch_var)
        if not target:
            return False
        message = self.clone_trigger_message(text=str(target))
        await self.stop()
        await self.controller.trigger("custom_trigger", self.task.bot, message)
        return True

    async def _link_subscription(self, step: Step) -> None:
        d = step.link_to_subscription
        if not (d.loopback_url and d.helper_api_url):
            logger.error("link_subscription_missing_urls", convo_id=self.id)
            return
        group = await evaluate_direct_to_flow(d.as_conditions(), self.fetch_var)
        if not group:
            return
        if not callable(step.call_scheduler):
            logger.error("link_subscription_no_scheduler", convo_id=self.id)
            return
        await call_handler(step.call_scheduler, group)
