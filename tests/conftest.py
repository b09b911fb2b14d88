"""Shared test fixtures for ScriptBot."""
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from channels.base import BotWorker
from config.settings import Settings
from core.controller import Controller, EngineContext
from database.store_memory import InMemoryStorage
from models.schemas import Message, SendReceipt


class FakeWorker(BotWorker):
    """Records every reply instead of talking to a network."""

    type = "test"

    def __init__(self, controller=None, delivered: bool = True):
        super().__init__(controller, identity={"id": "B1", "name": "scriptbot"})
        self.delivered = delivered
        self.replies: list[Any] = []
        self.payloads: list[dict[str, Any]] = []

    async def send(self, platform_message):
        self.payloads.append(platform_message)
        return SendReceipt(id=f"p{len(self.payloads)}", delivered=self.delivered)

    async def reply(self, src, outbound):
        self.replies.append(outbound)
        return SendReceipt(id=f"r{len(self.replies)}", delivered=self.delivered)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def api_invoker() -> MagicMock:
    invoker = MagicMock()
    invoker.invoke = AsyncMock(return_value={"ok": True})
    invoker.post_subscriptions = AsyncMock(return_value={"status": "ok"})
    invoker.close = AsyncMock()
    return invoker


@pytest.fixture
def controller(settings, storage, api_invoker) -> Controller:
    return Controller(
        settings=settings,
        context=EngineContext(storage=storage),
        api_invoker=api_invoker,
    )


@pytest.fixture
def worker(controller) -> FakeWorker:
    return FakeWorker(controller)


@pytest.fixture
def message() -> Message:
    return Message(type="message_received", user="U1", channel="C1", text="hello")


@pytest.fixture
def drive():
    """Tick a conversation `times` times, letting background work settle after each tick."""
    async def _drive(convo, times: int = 1):
        for _ in range(times):
            await convo.tick()
            await convo.wait_for_background()
    return _drive


@pytest.fixture
def make_worker():
    def _make(controller, delivered: bool = True) -> FakeWorker:
        return FakeWorker(controller, delivered=delivered)
    return _make
