"""
Script Provider — where remote scripts come from.

The REST provider talks to the script-authoring service configured under
`studio:` in settings.yaml. The static provider serves scripts from memory
and is used when no service is configured (local development, tests).

Unknown scripts are not errors at this layer: the service answers them
with an empty document, which parses to a ScriptCommand whose `found` is
False. Transport and HTTP failures raise ScriptProviderError.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import StudioConfig, get_settings
from core.errors import ScriptProviderError
from templates.models import ScriptCommand

logger = structlog.get_logger()


class ScriptProvider(abc.ABC):
    """Abstract base for all script sources."""

    @abc.abstractmethod
    async def evaluate_trigger(self, text: str, user: str = "") -> ScriptCommand:
        """Find the script whose trigger matches `text`."""
        ...

    @abc.abstractmethod
    async def get_script(self, name: str, user: str = "") -> ScriptCommand:
        ...

    @abc.abstractmethod
    async def get_script_by_id(self, script_id: str, user: str = "") -> ScriptCommand:
        ...

    @abc.abstractmethod
    async def get_scripts(self, tag: Optional[str] = None) -> list[dict[str, Any]]:
        """Script summaries, optionally filtered by tag."""
        ...

    @abc.abstractmethod
    async def identify(self) -> dict[str, Any]:
        """The bot record the service holds for our token."""
        ...

    async def close(self):
        return None


class RESTScriptProvider(ScriptProvider):
    """Script service over HTTP. The token travels as the `access_token` query parameter."""

    def __init__(self, config: StudioConfig = None):
        self.config = config or get_settings().studio
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.command_uri,
                params={"access_token": self.config.token},
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._send(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("script_service_http_error", path=path, status=e.response.status_code)
            raise ScriptProviderError(
                f"script service answered {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("script_service_unreachable", path=path, error=str(e))
            raise ScriptProviderError(f"script service unreachable: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise ScriptProviderError("script service returned invalid JSON") from e

    async def _command(self, path: str, payload: dict[str, Any]) -> ScriptCommand:
        data = await self._request("POST", path, json=payload)
        if not isinstance(data, dict):
            raise ScriptProviderError(f"unexpected script payload from {path}")
        if data.get("error"):
            raise ScriptProviderError(str(data["error"]))
        return ScriptCommand.model_validate(data)

    async def evaluate_trigger(self, text: str, user: str = "") -> ScriptCommand:
        return await self._command("/api/v1/commands/triggers", {"triggers": text, "user": user})

    async def get_script(self, name: str, user: str = "") -> ScriptCommand:
        return await self._command("/api/v1/commands/name", {"command": name, "user": user})

    async def get_script_by_id(self, script_id: str, user: str = "") -> ScriptCommand:
        return await self._command("/api/v1/commands/id", {"command_id": script_id, "user": user})

    async def get_scripts(self, tag: Optional[str] = None) -> list[dict[str, Any]]:
        params = {"tag": tag} if tag else {}
        data = await self._request("GET", "/api/v1/commands/list", params=params)
        return data if isinstance(data, list) else data.get("data", [])

    async def identify(self) -> dict[str, Any]:
        return await self._request("GET", "/api/v1/bot/identify")

    async def close(self):
        if self.client:
            await self.client.aclose()


class StaticScriptProvider(ScriptProvider):
    """
    In-memory scripts. Triggers are matched case-insensitively against the
    whole input text; a script with no explicit triggers answers to its name.
    """

    def __init__(self, scripts: list[dict[str, Any]] = None):
        self._scripts: list[ScriptCommand] = []
        self._triggers: dict[str, list[str]] = {}
        for raw in scripts or []:
            self.add(raw)

    def add(self, raw: dict[str, Any], triggers: list[str] = None) -> ScriptCommand:
        command = ScriptCommand.model_validate(raw)
        if not command.id:
            command.id = command.command
        self._scripts.append(command)
        self._triggers[command.id] = [t.lower() for t in (triggers or raw.get("triggers") or [command.command])]
        return command

    async def evaluate_trigger(self, text: str, user: str = "") -> ScriptCommand:
        needle = (text or "").strip().lower()
        for command in self._scripts:
            if needle in self._triggers.get(command.id, []):
                return command.model_copy(deep=True)
        return ScriptCommand()

    async def get_script(self, name: str, user: str = "") -> ScriptCommand:
        for command in self._scripts:
            if command.command == name:
                return command.model_copy(deep=True)
        return ScriptCommand()

    async def get_script_by_id(self, script_id: str, user: str = "") -> ScriptCommand:
        for command in self._scripts:
            if script_id in (command.id, command.script_id):
                return command.model_copy(deep=True)
        return ScriptCommand()

    async def get_scripts(self, tag: Optional[str] = None) -> list[dict[str, Any]]:
        summaries = []
        for command in self._scripts:
            tags = getattr(command, "tags", None) or []
            if tag and tag not in tags:
                continue
            summaries.append({"id": command.id, "command": command.command,
                              "description": command.description})
        return summaries

    async def identify(self) -> dict[str, Any]:
        return {"name": "static", "scripts": len(self._scripts)}


def create_script_provider(config: StudioConfig = None) -> ScriptProvider:
    """Factory function to create the appropriate script provider."""
    config = config or get_settings().studio
    if config.command_uri:
        return RESTScriptProvider(config)
    logger.warning("using_static_script_provider", reason="no script service configured")
    return StaticScriptProvider()
