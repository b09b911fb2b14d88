"""
Event router — event name → ordered handlers, in two tiers.

Hearing handlers run first; one returning False claims the event and
nothing else runs. Generic handlers run afterwards, optionally gated by a
pre-dispatch hook (the controller wires its `triggered` middleware here),
and a False return stops the rest of that tier.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger()


@dataclass
class EventHandler:
    callback: Callable
    is_hearing: bool = False


def split_events(events: Union[str, list[str]]) -> list[str]:
    if isinstance(events, str):
        events = events.split(",")
    return [e.strip() for e in events if e and e.strip()]


async def call_handler(fn: Callable, *args: Any) -> Any:
    out = fn(*args)
    if inspect.isawaitable(out):
        out = await out
    return out


class EventRouter:
    def __init__(
        self,
        name: str = "",
        before_generic: Optional[Callable[[str, tuple], Awaitable[bool]]] = None,
    ):
        self.name = name
        self.before_generic = before_generic
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, events: Union[str, list[str]], handler: Callable, is_hearing: bool = False) -> None:
        for event in split_events(events):
            self._handlers.setdefault(event, []).append(EventHandler(handler, is_hearing))

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def handlers(self, event: str) -> list[EventHandler]:
        return list(self._handlers.get(event, []))

    async def trigger(self, event: str, *args: Any) -> bool:
        """Fire `event`. Returns True when a hearing handler claimed it."""
        registered = self._handlers.get(event)
        if not registered:
            return False

        hearing = [h for h in registered if h.is_hearing]
        generic = [h for h in registered if not h.is_hearing]

        for h in hearing:
            if await call_handler(h.callback, *args) is False:
                return True

        if not generic:
            return False

        if self.before_generic is not None and not await self.before_generic(event, args):
            return False

        for h in generic:
            if await call_handler(h.callback, *args) is False:
                break
        return False
