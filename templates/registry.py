"""
Script Hook Registry — developer code attached to remote scripts by name.

Four hook families, each keyed by script command name:
  before(command, fn)                → runs after compile, before the convo is handed back
  after(command, fn)                 → runs when the convo fires `end`
  validate(command, key, fn)         → runs when a question capturing `key` is answered
  before_thread(command, thread, fn) → installed as a before-thread hook on the convo

Every hook is fn(convo), sync or async. A hook that returns False halts the
rest of its chain and whatever would have run after it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable

import structlog

from core.events import call_handler

if TYPE_CHECKING:
    from context.conversation import Conversation

logger = structlog.get_logger()


class ScriptHookRegistry:
    """Per-command hook lists. Registration methods chain."""

    def __init__(self):
        self._before: dict[str, list[Callable]] = {}
        self._after: dict[str, list[Callable]] = {}
        self._validate: dict[str, dict[str, list[Callable]]] = {}
        self._threads: dict[str, dict[str, list[Callable]]] = {}

    # ── Registration ──────────────────────────────────

    def before(self, command: str, fn: Callable) -> ScriptHookRegistry:
        self._before.setdefault(command, []).append(fn)
        return self

    def after(self, command: str, fn: Callable) -> ScriptHookRegistry:
        self._after.setdefault(command, []).append(fn)
        return self

    def validate(self, command: str, key: str, fn: Callable) -> ScriptHookRegistry:
        self._validate.setdefault(command, {}).setdefault(key, []).append(fn)
        return self

    def before_thread(self, command: str, thread: str, fn: Callable) -> ScriptHookRegistry:
        self._threads.setdefault(command, {}).setdefault(thread, []).append(fn)
        return self

    # ── Lookup ────────────────────────────────────────

    def before_hooks(self, command: str) -> list[Callable]:
        return list(self._before.get(command, []))

    def after_hooks(self, command: str) -> list[Callable]:
        return list(self._after.get(command, []))

    def validate_hooks(self, command: str, key: str) -> list[Callable]:
        if not key:
            return []
        return list(self._validate.get(command, {}).get(key, []))

    def thread_hooks(self, command: str) -> dict[str, list[Callable]]:
        return {thread: list(hooks) for thread, hooks in self._threads.get(command, {}).items()}


async def run_hooks(hooks: list[Callable], convo: Conversation) -> bool:
    """Run hooks in order. Returns False if one of them halted the chain."""
    for hook in hooks:
        if await call_handler(hook, convo) is False:
            logger.debug("script_hook_halted", convo_id=convo.id, hook=getattr(hook, "__name__", repr(hook)))
            return False
    return True
