"""Evolution API client with retry/backoff for agent-facing gateway calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from ticket_router.metrics import record_gateway_call

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {408, 429, 500, 502, 503, 504}

DEFAULT_WEBHOOK_EVENTS = [
    "QRCODE_UPDATED",
    "CONNECTION_UPDATE",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "MESSAGES_DELETE",
    "SEND_MESSAGE",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
    "PRESENCE_UPDATE",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "GROUPS_UPSERT",
    "GROUP_PARTICIPANTS_UPDATE",
    "CALL",
]


class GatewayError(Exception):
    """A gateway call that failed after retries."""

    def __init__(self, status_code: int | None, message: str, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.detail = detail


def error_message_for(status_code: int, body: Any = None) -> str:
    if status_code == 400:
        if isinstance(body, dict):
            reason = body.get("message") or body.get("error") or body.get("response")
            if reason:
                return f"invalid request: {reason}"
        return "invalid request"
    if status_code == 401:
        return "invalid API key"
    if status_code == 403:
        return "API key not allowed to perform this action"
    if status_code == 404:
        return "resource not found"
    if status_code == 409:
        return "instance already exists"
    if status_code >= 500:
        return "gateway unavailable, try again later"
    return f"gateway returned HTTP {status_code}"


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for the given zero-based attempt plus up to 50% jitter; 0 disables waiting."""
    delay = min(max_delay, base_delay * (2**attempt))
    return delay + random.uniform(0, delay / 2) if delay else 0.0


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    operation: str = "request",
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """
    Call `request_fn` until it returns a non-retryable response.

    Transport errors and `retry_statuses` are retried up to `max_attempts`
    in total. The last transport error is re-raised; the last retryable
    response is returned as is for the caller to map.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    last_attempt = max_attempts - 1

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt == last_attempt:
                raise
            reason = f"{type(exc).__name__}: {exc}"
        else:
            if response.status_code not in statuses or attempt == last_attempt:
                return response
            reason = f"HTTP {response.status_code}"

        delay = backoff_delay(attempt, base_delay, max_delay)
        logger.warning(
            f"Gateway {operation} attempt {attempt + 1}/{max_attempts} failed ({reason}), "
            f"retrying in {delay:.2f}s"
        )
        if delay:
            await asyncio.sleep(delay)

    raise RuntimeError("max_attempts must be at least 1")


class EvolutionClient:
    """
    Thin async client for the Evolution API REST surface.

    Every call sends the apikey header, retries transport errors and
    retryable statuses, and raises GatewayError for anything that is
    still not 2xx.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, operation: str, method: str, path: str, json: Any = None) -> Any:
        async def request_fn() -> httpx.Response:
            return await self._client.request(method, path, json=json)

        try:
            response = await request_with_retries(
                request_fn,
                operation=operation,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
            )
        except httpx.RequestError as exc:
            record_gateway_call(operation, "unreachable")
            logger.error(f"Evolution API {operation} failed: {exc}")
            raise GatewayError(None, "could not reach gateway") from exc

        try:
            body = response.json()
        except ValueError:
            body = response.text or None

        if response.is_error:
            record_gateway_call(operation, str(response.status_code))
            message = error_message_for(response.status_code, body)
            logger.error(f"Evolution API {operation} returned {response.status_code}: {message}")
            raise GatewayError(response.status_code, message, detail=body)

        record_gateway_call(operation, "ok")
        return body

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def create_instance(self, instance_name: str, webhook_url: str | None = None) -> Any:
        payload: dict[str, Any] = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if webhook_url:
            payload["webhook"] = {
                "enabled": True,
                "url": webhook_url,
                "byEvents": False,
                "base64": False,
                "events": DEFAULT_WEBHOOK_EVENTS,
            }
        return await self._call("create_instance", "POST", "/instance/create", json=payload)

    async def connect_instance(self, instance_name: str) -> Any:
        """Start pairing; the response carries the QR code (base64 and/or code)."""
        return await self._call("connect_instance", "GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> Any:
        return await self._call("connection_state", "GET", f"/instance/connectionState/{instance_name}")

    async def logout_instance(self, instance_name: str) -> Any:
        return await self._call("logout_instance", "DELETE", f"/instance/logout/{instance_name}")

    async def delete_instance(self, instance_name: str) -> Any:
        return await self._call("delete_instance", "DELETE", f"/instance/delete/{instance_name}")

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def send_text(self, instance_name: str, number: str, text: str, delay_ms: int | None = None) -> Any:
        payload: dict[str, Any] = {"number": number, "text": text}
        if delay_ms is not None:
            payload["delay"] = delay_ms
        return await self._call("send_text", "POST", f"/message/sendText/{instance_name}", json=payload)

    async def send_media(
        self,
        instance_name: str,
        number: str,
        media: str,
        mediatype: str,
        caption: str | None = None,
        file_name: str | None = None,
    ) -> Any:
        payload: dict[str, Any] = {"number": number, "mediatype": mediatype, "media": media}
        if caption:
            payload["caption"] = caption
        if file_name:
            payload["fileName"] = file_name
        return await self._call("send_media", "POST", f"/message/sendMedia/{instance_name}", json=payload)

    # -------------------------------------------------------------------------
    # Webhook configuration
    # -------------------------------------------------------------------------

    async def set_webhook(self, instance_name: str, url: str, events: list[str] | None = None) -> Any:
        payload = {
            "webhook": {
                "enabled": True,
                "url": url,
                "byEvents": False,
                "base64": False,
                "events": events or DEFAULT_WEBHOOK_EVENTS,
            }
        }
        return await self._call("set_webhook", "POST", f"/webhook/set/{instance_name}", json=payload)

    async def find_webhook(self, instance_name: str) -> Any:
        return await self._call("find_webhook", "GET", f"/webhook/find/{instance_name}")
