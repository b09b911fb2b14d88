"""
Exception hierarchy for the ScriptBot engine.

Transport failures live next to the transport contract in channels.base.
"""
from __future__ import annotations

from typing import Any, Optional


class ScriptBotError(Exception):
    """Base exception for all engine errors."""


class MiddlewareError(ScriptBotError):
    """A middleware function failed; the pipeline run was aborted."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"middleware stage '{stage}' failed: {cause}")


class StopPipeline(ScriptBotError):
    """Raised by a middleware function to halt the rest of its stage quietly."""


class UnknownThreadError(ScriptBotError):
    def __init__(self, thread: str):
        self.thread = thread
        super().__init__(f"unknown thread '{thread}'")


class ScriptProviderError(ScriptBotError):
    """The remote script service could not be reached or answered badly."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ScriptNotFoundError(ScriptProviderError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"script not found: {name}", status_code=404)


class ApiInvocationError(ScriptBotError):
    """
    An external JSON API call failed.

    `plugin_message` is an optional user-facing text supplied by the API
    itself; the conversation prefers it over its own fallback.
    """

    def __init__(
        self,
        message: str,
        url: str = "",
        plugin_message: Optional[str] = None,
        payload: Any = None,
    ):
        self.url = url
        self.plugin_message = plugin_message
        self.payload = payload
        super().__init__(message)


class StorageError(ScriptBotError):
    pass


class ScriptHaltedError(ScriptBotError):
    """A before hook declined to hand a compiled script back."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"script '{command}' halted by a before hook")
