"""
External API Invoker — HTTP calls made on behalf of script steps.

Two callers:
- json_api steps: one request per step, parameters split into query string,
  headers and form body by each property's `send_in`
- link_to_subscription steps: a form POST to the helper service's
  /api/subscriptions endpoint

Every call resolves to parsed JSON or raises ApiInvocationError. Transport
failures are retried with exponential backoff; bad answers are not.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import ApiInvocationError
from models.schemas import ApiProperty, JsonApiDirective

logger = structlog.get_logger()


def split_properties(*groups: list[ApiProperty]) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
    """Sort request properties into (query, headers, body). Later groups win on key clashes."""
    query: dict[str, Any] = {}
    headers: dict[str, Any] = {}
    body: dict[str, Any] = {}
    for group in groups:
        for prop in group or []:
            if prop.send_in == "query_string":
                query[prop.key] = prop.value
            elif prop.send_in == "header":
                headers[prop.key] = prop.value
            else:
                body[prop.key] = prop.value
    return query, headers, body


def _form_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict) or (isinstance(value, list) and any(isinstance(v, (dict, list)) for v in value)):
        return json.dumps(value)
    return value


class JsonApiInvoker:
    """Thin httpx wrapper with retry and strict JSON answer checking."""

    def __init__(
        self,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return await client.request(method, url, **kwargs)
        raise ApiInvocationError("request was never attempted", url=url)

    async def call(
        self,
        url: str,
        method: str = "GET",
        query: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> Any:
        if not url:
            raise ApiInvocationError("no API url configured")

        kwargs: dict[str, Any] = {}
        if query:
            kwargs["params"] = {k: _form_value(v) for k, v in query.items()}
        if headers:
            kwargs["headers"] = {k: str(_form_value(v)) for k, v in headers.items()}
        if body:
            kwargs["data"] = {k: _form_value(v) for k, v in body.items()}

        try:
            response = await self._send(method.upper(), url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("api_request_failed", url=url, method=method, error=str(e))
            raise ApiInvocationError(f"request failed: {e}", url=url) from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error("api_invalid_json", url=url, status=response.status_code)
            raise ApiInvocationError("Invalid JSON received from API", url=url) from e

        if not data:
            raise ApiInvocationError("API response was empty or invalid JSON", url=url)

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            if response.status_code == 401:
                logger.error("api_unauthorized", url=url, error=error)
            plugin_message = error.get("pluginMessage") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ApiInvocationError(message, url=url, plugin_message=plugin_message, payload=error)

        logger.debug("api_call_succeeded", url=url, status=response.status_code)
        return data

    async def invoke(self, directive: JsonApiDirective, attributes: Optional[list[ApiProperty]] = None) -> Any:
        """Run a json_api step's request. Resolved attribute values go first; fixed properties override."""
        query, headers, body = split_properties(attributes or [], directive.property_objects)
        return await self.call(
            directive.api_url,
            method=(directive.request_type or "get").upper(),
            query=query,
            body=body,
            headers=headers,
        )

    async def post_subscriptions(
        self,
        helper_api_url: str,
        subscriptions: Any,
        api_url: str,
        bot_token: str,
        user: str,
        channel: str,
    ) -> Any:
        """Register the user with the subscription scheduler."""
        url = f"{helper_api_url.rstrip('/')}/api/subscriptions"
        result = await self.call(
            url,
            method="POST",
            body={
                "subscriptions": subscriptions,
                "apiUrl": api_url,
                "botToken": bot_token,
                "user": user,
                "channel": channel,
            },
        )
        logger.info("subscription_linked", user=user, helper=helper_api_url)
        return result

    async def close(self):
        if self.client:
            await self.client.aclose()
