"""
Tests for the Conversation state machine.

Covers:
  - lifecycle (activate, stop, terminal ticks)
  - thread building and switching (copy-on-activate, before hooks, unknown threads)
  - questions: capture keys, multi-capture, list handlers, repeat
  - conditionals
  - timeouts
  - delivery gating and delays
  - task aggregation
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from channels.base import ChannelError
from config.settings import Settings, TickConfig
from context.conversation import now_ms
from core.controller import Controller, EngineContext
from models.schemas import ConversationStatus, Message, TaskStatus


def answer(text: str, user: str = "U1") -> Message:
    return Message(type="message_received", user=user, channel="C1", text=text)


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_new_conversation_is_inactive_until_activated(self, worker, message):
        convo = worker.create_conversation(message)
        assert convo.status == ConversationStatus.NEW
        assert not convo.is_active()

        await convo.activate()
        assert convo.status == ConversationStatus.ACTIVE
        assert convo.is_active()

    @pytest.mark.asyncio
    async def test_is_active_matches_active_and_ending(self, worker, message):
        convo = worker.create_conversation(message)
        for status, active in [
            (ConversationStatus.ACTIVE, True),
            (ConversationStatus.ENDING, True),
            (ConversationStatus.COMPLETED, False),
            (ConversationStatus.STOPPED, False),
            (ConversationStatus.TIMEOUT, False),
            (ConversationStatus.TRANSITIONING, False),
        ]:
            convo.status = status
            assert convo.is_active() is active

    @pytest.mark.asyncio
    async def test_single_message_completes(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.say("Hi there")
        await convo.activate()

        await drive(convo)
        assert [s.text for s in worker.replies] == ["Hi there"]
        assert convo.status == ConversationStatus.COMPLETED
        assert convo.successful()

    @pytest.mark.asyncio
    async def test_stop_twice_keeps_first_status(self, controller, worker, message):
        ended = MagicMock()
        controller.on("conversationEnded", ended)
        convo = worker.create_conversation(message)
        await convo.activate()

        await convo.stop(ConversationStatus.COMPLETED)
        await convo.stop()
        assert convo.status == ConversationStatus.COMPLETED
        assert ended.call_count == 1

    @pytest.mark.asyncio
    async def test_stop_discards_pending_steps_and_handler(self, worker, message):
        convo = worker.create_conversation(message)
        convo.ask("Name?", lambda m, c: None)
        convo.say("never sent")
        await convo.activate()
        await convo.tick()

        await convo.stop()
        assert convo.messages == []
        assert convo.handler is None
        assert convo.status == ConversationStatus.STOPPED

    @pytest.mark.asyncio
    async def test_tick_after_terminal_status_is_noop(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.say("one")
        await convo.activate()
        await drive(convo)
        assert convo.status == ConversationStatus.COMPLETED

        convo.say("late")
        sent_before = len(convo.sent)
        await drive(convo, 3)
        assert len(convo.sent) == sent_before
        assert convo.status == ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_next_without_handler_is_noop(self, worker, message):
        convo = worker.create_conversation(message)
        convo.say("one")
        before = (convo.status, len(convo.messages), convo.thread)
        convo.next()
        assert convo.handler is None
        assert (convo.status, len(convo.messages), convo.thread) == before

    @pytest.mark.asyncio
    async def test_conversation_start_middleware_error_does_not_block_activation(self, controller, worker, message):
        def broken(ctx):
            raise RuntimeError("boom")

        controller.middleware.register("conversation_start", broken)
        convo = worker.create_conversation(message)
        await convo.activate()
        assert convo.is_active()

    @pytest.mark.asyncio
    async def test_end_event_fires_on_conversation(self, worker, message, drive):
        convo = worker.create_conversation(message)
        on_end = MagicMock()
        convo.on("end", on_end)
        convo.say("bye")
        await convo.activate()
        await drive(convo)
        on_end.assert_called_once_with(convo)


# ──────────────────────────────────────────────────────────────
#  Threads
# ──────────────────────────────────────────────────────────────

class TestThreads:
    @pytest.mark.asyncio
    async def test_default_thread_round_trip(self, worker, message):
        convo = worker.create_conversation(message)
        convo.add_message("elsewhere", "other")
        await convo.goto_thread("other")
        assert convo.thread == "other"

        for text in ("a", "b", "c"):
            convo.add_message(text, "default")
        assert [s.text for s in convo.messages] == ["elsewhere"]

        await convo.goto_thread("default")
        assert convo.thread == "default"
        assert [s.text for s in convo.messages] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_live_queue_is_a_copy_of_the_definition(self, worker, message):
        convo = worker.create_conversation(message)
        convo.add_message("x", "menu")
        await convo.goto_thread("menu")
        convo.messages[0].text = "changed"
        convo.messages.pop()
        assert [s.text for s in convo.threads["menu"]] == ["x"]

    @pytest.mark.asyncio
    async def test_adding_to_current_thread_updates_live_queue(self, worker, message):
        convo = worker.create_conversation(message)
        convo.say("one")
        convo.add_message("zero", prepend=True)
        assert [s.text for s in convo.messages] == ["zero", "one"]
        assert [s.text for s in convo.threads["default"]] == ["zero", "one"]

    @pytest.mark.asyncio
    async def test_unknown_thread_stops_conversation(self, worker, message):
        convo = worker.create_conversation(message)
        await convo.activate()
        await convo.goto_thread("nowhere")
        assert convo.status == ConversationStatus.UNKNOWN_THREAD
        assert not convo.is_active()

    @pytest.mark.asyncio
    async def test_goto_default_always_works(self, worker, message):
        convo = worker.create_conversation(message)
        convo.threads.clear()
        await convo.activate()
        await convo.goto_thread("default")
        assert convo.thread == "default"
        assert convo.is_active()

    @pytest.mark.asyncio
    async def test_before_hooks_run_in_order_before_switch(self, worker, message):
        convo = worker.create_conversation(message)
        convo.add_message("inside", "next_thread")
        seen = []

        def first(c):
            seen.append(("first", c.thread, c.processing))

        async def second(c):
            seen.append(("second", c.thread, c.processing))

        convo.before_thread("next_thread", first)
        convo.before_thread("next_thread", second)
        await convo.goto_thread("next_thread")

        assert seen == [("first", "default", True), ("second", "default", True)]
        assert convo.thread == "next_thread"
        assert convo.processing is False

    @pytest.mark.asyncio
    async def test_failing_before_hook_leaves_thread_unchanged(self, worker, message):
        convo = worker.create_conversation(message)
        convo.add_message("inside", "locked")

        def refuse(c):
            raise RuntimeError("not allowed")

        convo.before_thread("locked", refuse)
        await convo.activate()
        await convo.goto_thread("locked")
        assert convo.thread == "default"
        assert convo.processing is False
        assert convo.is_active()

    @pytest.mark.asyncio
    async def test_goto_clears_pending_handler(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("Question?", lambda m, c: None)
        convo.add_message("later", "after")
        await convo.activate()
        await drive(convo)
        assert convo.handler is not None

        await convo.goto_thread("after")
        assert convo.handler is None

    @pytest.mark.asyncio
    async def test_transition_to_says_then_moves_on(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.add_message("arrived", "target")
        await convo.activate()

        await convo.transition_to("target", "On my way")
        assert convo.thread == "transition_1"

        await drive(convo, 3)
        assert [s.text for s in worker.replies] == ["On my way", "arrived"]
        assert convo.status == ConversationStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Questions and capture
# ──────────────────────────────────────────────────────────────

class TestCapture:
    @pytest.mark.asyncio
    async def test_latest_answer_wins_without_multiple(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("What is your name?", lambda m, c: c.next(), {"key": "name"})
        convo.ask("Sure? Your name?", lambda m, c: c.next(), {"key": "name"})
        await convo.activate()

        await drive(convo)
        await convo.handle(answer("  Alice "))
        await drive(convo)
        await convo.handle(answer("Bob"))

        assert convo.responses["name"].text == "Bob"
        assert convo.extract_response("name") == "Bob"

    @pytest.mark.asyncio
    async def test_multiple_keeps_every_answer_in_order(self, worker, message, drive):
        convo = worker.create_conversation(message)
        options = {"key": "name", "multiple": True}
        convo.ask("First name?", lambda m, c: c.next(), options)
        convo.ask("Second name?", lambda m, c: c.next(), options)
        await convo.activate()

        await drive(convo)
        await convo.handle(answer("Alice"))
        await drive(convo)
        await convo.handle(answer("Bob"))

        assert [m.text for m in convo.responses["name"]] == ["Alice", "Bob"]
        assert convo.extract_response("name") == "Alice\nBob"

    @pytest.mark.asyncio
    async def test_default_key_is_the_question_text(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("Favourite colour?", lambda m, c: c.next())
        await convo.activate()
        await drive(convo)
        await convo.handle(answer("blue"))

        assert convo.responses["Favourite colour?"].text == "blue"
        assert convo.responses["Favourite colour?"].question == "Favourite colour?"
        assert convo.get_responses_as_array() == [
            {"question": "Favourite colour?", "key": "Favourite colour?", "answer": "blue"},
        ]

    @pytest.mark.asyncio
    async def test_list_handler_first_match_wins(self, worker, message, drive):
        convo = worker.create_conversation(message)
        picked = []
        convo.ask("Continue?", [
            {"pattern": convo.controller.utterances["yes"],
             "callback": lambda m, c: picked.append("yes")},
            {"pattern": "^y.*$",
             "callback": lambda m, c: picked.append("y-regex")},
            {"default": True, "callback": lambda m, c: picked.append("default")},
        ])
        await convo.activate()
        await drive(convo)

        await convo.handle(answer("yes please"))
        await convo.handle(answer("maybe"))
        assert picked == ["yes", "default"]

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited(self, worker, message, drive):
        convo = worker.create_conversation(message)
        handler = AsyncMock()
        convo.ask("Anything?", handler)
        await convo.activate()
        await drive(convo)

        await convo.handle(answer("ok"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_capture_middleware_can_rewrite_answer(self, controller, worker, message, drive):
        def shout(ctx):
            ctx.message.text = ctx.message.text.upper()

        controller.middleware.register("capture", shout)
        convo = worker.create_conversation(message)
        convo.ask("Word?", lambda m, c: c.next(), {"key": "word"})
        await convo.activate()
        await drive(convo)
        await convo.handle(answer("quiet"))
        assert convo.responses["word"].text == "QUIET"

    @pytest.mark.asyncio
    async def test_failed_capture_middleware_drops_answer(self, controller, worker, message, drive):
        def broken(ctx):
            raise ValueError("nope")

        controller.middleware.register("capture", broken)
        handler = MagicMock()
        convo = worker.create_conversation(message)
        convo.ask("Word?", handler, {"key": "word"})
        await convo.activate()
        await drive(convo)
        await convo.handle(answer("quiet"))
        handler.assert_not_called()
        assert "word" not in convo.responses

    @pytest.mark.asyncio
    async def test_repeat_requeues_last_sent_step(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("Again?", lambda m, c: c.repeat())
        await convo.activate()
        await drive(convo)
        assert convo.messages == []

        convo.repeat()
        assert len(convo.messages) == 1
        assert convo.messages[0].text == "Again?"
        assert convo.messages[0].sent is False

    @pytest.mark.asyncio
    async def test_repeat_action_asks_again(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("Again?", [{"default": True, "callback": lambda m, c: c.handle_action(
            SimpleNamespace(action="repeat", execute=None))}])
        await convo.activate()
        await drive(convo)
        await convo.handle(answer("what"))
        await drive(convo)
        assert [s.text for s in worker.replies] == ["Again?", "Again?"]


# ──────────────────────────────────────────────────────────────
#  Conditionals
# ──────────────────────────────────────────────────────────────

class TestConditionals:
    def _build(self, worker, message, age):
        convo = worker.create_conversation(message)
        convo.vars["age"] = age
        convo.add_conditional({
            "left": "{{vars.age}}", "right": "18", "test": "equals", "action": "adult_thread",
        })
        convo.say("still in default")
        convo.add_message("welcome, adult", "adult_thread")
        return convo

    @pytest.mark.asyncio
    async def test_matching_condition_switches_thread(self, worker, message, drive):
        convo = self._build(worker, message, "18")
        await convo.activate()
        await drive(convo)
        assert convo.thread == "adult_thread"
        assert [s.text for s in worker.replies] == ["welcome, adult"]

    @pytest.mark.asyncio
    async def test_failing_condition_proceeds_in_place(self, worker, message, drive):
        convo = self._build(worker, message, "17")
        await convo.activate()
        await drive(convo)
        assert convo.thread == "default"
        assert [s.text for s in worker.replies] == ["still in default"]

    @pytest.mark.asyncio
    async def test_exists_test_with_complete_action(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.vars["email"] = "a@b.c"
        convo.add_conditional({"left": "{{vars.email}}", "test": "exists", "action": "complete"})
        convo.say("not reached")
        await convo.activate()
        await drive(convo)
        assert convo.status == ConversationStatus.COMPLETED
        assert worker.replies == []

    @pytest.mark.asyncio
    async def test_callable_action_receives_conversation(self, worker, message, drive):
        convo = worker.create_conversation(message)
        action = MagicMock()
        convo.add_conditional({"left": "x", "right": "x", "test": "equals", "action": action})
        await convo.activate()
        await drive(convo)
        action.assert_called_once_with(convo)


# ──────────────────────────────────────────────────────────────
#  Timeouts
# ──────────────────────────────────────────────────────────────

class TestTimeout:
    async def _waiting(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.set_timeout(60000)
        convo.ask("Still there?", lambda m, c: None)
        await convo.activate()
        await drive(convo)
        past = now_ms() - 61000
        convo.task.start_time = past
        convo.last_active = past
        return convo

    @pytest.mark.asyncio
    async def test_idle_past_limit_times_out(self, worker, message, drive):
        convo = await self._waiting(worker, message, drive)
        await convo.tick()
        assert convo.status == ConversationStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_recent_activity_keeps_waiting(self, worker, message, drive):
        convo = await self._waiting(worker, message, drive)
        convo.last_active = now_ms()
        await convo.tick()
        assert convo.status == ConversationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_custom_timeout_handler(self, worker, message, drive):
        convo = await self._waiting(worker, message, drive)
        on_timeout = MagicMock()
        convo.on_timeout(on_timeout)
        await convo.tick()
        on_timeout.assert_called_once_with(convo)
        assert convo.status == ConversationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_on_timeout_thread(self, worker, message, drive):
        convo = await self._waiting(worker, message, drive)
        convo.add_message("Bye for now", "on_timeout")
        await convo.tick()
        assert convo.status == ConversationStatus.ENDING
        assert convo.thread == "on_timeout"

        await drive(convo)
        assert worker.replies[-1].text == "Bye for now"
        assert convo.status == ConversationStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Delivery and pacing
# ──────────────────────────────────────────────────────────────

class TestDelivery:
    @pytest.mark.asyncio
    async def test_failed_reply_still_marks_sent(self, worker, message, drive):
        error = ChannelError("network down", channel="test")
        worker.reply = AsyncMock(side_effect=error)
        convo = worker.create_conversation(message)
        convo.say("one")
        convo.say("two")
        await convo.activate()

        await drive(convo)
        assert convo.sent[0].sent is True
        assert convo.sent[0].api_response is error

        await drive(convo)
        assert len(convo.sent) == 2

    @pytest.mark.asyncio
    async def test_unsent_step_blocks_queue(self, worker, message):
        convo = worker.create_conversation(message)
        gate = asyncio.Event()

        async def slow_reply(src, outbound):
            await gate.wait()

        worker.reply = slow_reply
        convo.say("one")
        convo.say("two")
        await convo.activate()

        await convo.tick()
        await asyncio.sleep(0)
        await convo.tick()
        assert len(convo.sent) == 1

        gate.set()
        await convo.wait_for_background()
        await convo.tick()
        assert len(convo.sent) == 2

    @pytest.mark.asyncio
    async def test_require_delivery_waits_for_confirmation(self, storage, api_invoker, make_worker,
                                                           message, drive):
        settings = Settings(tick=TickConfig(require_delivery=True))
        controller = Controller(settings=settings, context=EngineContext(storage=storage),
                                api_invoker=api_invoker)
        worker = make_worker(controller, delivered=False)
        convo = worker.create_conversation(message)
        convo.say("one")
        convo.say("two")
        await convo.activate()

        await drive(convo, 3)
        assert len(convo.sent) == 1
        assert convo.sent[0].sent is True
        assert convo.sent[0].delivered is False

        convo.sent[0].delivered = True
        await drive(convo)
        assert len(convo.sent) == 2

    @pytest.mark.asyncio
    async def test_delay_schedules_next_step(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.say("now")
        convo.say({"text": "later", "delay": 60000})
        await convo.activate()

        before = now_ms()
        await drive(convo, 3)
        assert [s.text for s in worker.replies] == ["now"]
        assert convo.messages[0].timestamp >= before + 60000

        convo.messages[0].timestamp = now_ms() - 1
        await drive(convo)
        assert [s.text for s in worker.replies] == ["now", "later"]

    @pytest.mark.asyncio
    async def test_sent_event_carries_receipt(self, worker, message, drive):
        convo = worker.create_conversation(message)
        receipts = []
        convo.on("sent", lambda receipt: receipts.append(receipt))
        convo.say("hello")
        await convo.activate()
        await drive(convo)
        assert [r.id for r in receipts] == ["r1"]

    @pytest.mark.asyncio
    async def test_tokens_are_rendered_on_send(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.vars["name"] = "Ada"
        convo.say("Hi {{vars.name}}, I am {{identity.name}}. You said {{origin.text}}")
        await convo.activate()
        await drive(convo)
        assert worker.replies[0].text == "Hi Ada, I am scriptbot. You said hello"

    @pytest.mark.asyncio
    async def test_unclosed_tag_falls_back_to_raw_text(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.say("Broken {{vars.name")
        await convo.activate()
        await drive(convo)
        assert worker.replies[0].text == "Broken {{vars.name"

    @pytest.mark.asyncio
    async def test_answer_keyed_by_question_text_renders(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.ask("Favourite colour?", lambda m, c: c.next())
        convo.say("You like {{responses.Favourite colour?}}")
        await convo.activate()
        await drive(convo)
        await convo.handle(answer("blue"))
        await drive(convo)
        assert worker.replies[-1].text == "You like blue"


# ──────────────────────────────────────────────────────────────
#  Task aggregation
# ──────────────────────────────────────────────────────────────

class TestTask:
    @pytest.mark.asyncio
    async def test_task_completes_when_last_conversation_ends(self, controller, worker, message, drive):
        task = await controller.start_task(worker, message)
        first = task.convos[0]
        second = task.create_conversation(Message(user="U2", channel="C1", text="hey"))
        await second.activate()
        ended = MagicMock()
        task.on("end", ended)

        await first.stop(ConversationStatus.COMPLETED)
        assert task.status == TaskStatus.ACTIVE

        await second.stop(ConversationStatus.COMPLETED)
        assert task.status == TaskStatus.COMPLETED
        ended.assert_called_once_with(task)

    @pytest.mark.asyncio
    async def test_conversation_ids_are_monotonic(self, controller, worker, message):
        a = worker.create_conversation(message)
        b = worker.create_conversation(message)
        assert b.id > a.id
        assert b.task.id > a.task.id

    @pytest.mark.asyncio
    async def test_responses_by_user_and_subject(self, controller, worker, message):
        task = await controller.start_task(worker, message)
        first = task.convos[0]
        second = task.create_conversation(Message(user="U2", channel="C1"))
        first.responses["color"] = answer("red", user="U1")
        second.responses["color"] = answer("green", user="U2")

        assert task.get_responses_by_user() == {"U1": {"color": "red"}, "U2": {"color": "green"}}
        assert task.get_responses_by_subject() == {"color": {"U1": "red", "U2": "green"}}

    @pytest.mark.asyncio
    async def test_multi_author_answers_combine_with_headers(self, worker, message):
        convo = worker.create_conversation(message)
        convo.responses["topic"] = [answer("hi", user="u1"), answer("yo", user="u2")]
        assert convo.extract_response("topic") == "<@u1>:\nhi\n\n<@u2>:\nyo"

    @pytest.mark.asyncio
    async def test_failing_conversation_does_not_stop_others(self, controller, worker, message):
        task = await controller.start_task(worker, message)
        broken = task.convos[0]
        healthy = task.create_conversation(Message(user="U2", channel="C1"))
        healthy.say("still ticking")
        await healthy.activate()

        broken.tick = AsyncMock(side_effect=RuntimeError("kaboom"))
        await task.tick()
        await healthy.wait_for_background()
        assert [s.text for s in worker.replies] == ["still ticking"]

    @pytest.mark.asyncio
    async def test_end_immediately_stops_active_conversations(self, controller, worker, message):
        task = await controller.start_task(worker, message)
        idle = task.create_conversation(Message(user="U2", channel="C1"))

        await task.end_immediately()
        assert task.convos[0].status == "stopped"
        assert idle.status == ConversationStatus.NEW
        assert task.status == TaskStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Variables and response views
# ──────────────────────────────────────────────────────────────

class TestVariablesAndResponses:
    @pytest.mark.asyncio
    async def test_say_first_only_touches_live_queue(self, worker, message):
        convo = worker.create_conversation(message)
        convo.say("second")
        convo.say_first("first")
        assert [s.text for s in convo.messages] == ["first", "second"]
        assert [s.text for s in convo.threads["default"]] == ["second"]

    @pytest.mark.asyncio
    async def test_fetch_var_prefers_memory(self, storage, worker, message):
        await storage.save_attribute("U1", "plan", "gold")
        convo = worker.create_conversation(message)
        assert await convo.fetch_var("plan") == "gold"

        convo.vars["plan"] = "free"
        assert await convo.fetch_var("plan") == "free"

    @pytest.mark.asyncio
    async def test_silent_repeat_changes_nothing(self, worker, message, drive):
        convo = worker.create_conversation(message)
        convo.say("only once")
        await convo.activate()
        await drive(convo)
        convo.silent_repeat()
        assert convo.messages == []

    @pytest.mark.asyncio
    async def test_response_views(self, worker, message):
        convo = worker.create_conversation(message)
        reply = answer("blue")
        reply.question = "Favourite colour?"
        convo.responses["color"] = reply

        assert convo.extract_responses() == {"color": "blue"}
        assert convo.get_responses() == {
            "color": {"question": "Favourite colour?", "key": "color", "answer": "blue"},
        }
        assert convo.get_responses_as_array() == [
            {"question": "Favourite colour?", "key": "color", "answer": "blue"},
        ]
