"""Outbound notifier: the email worker HTTP client."""

from dataclasses import dataclass
from typing import Protocol

import httpx

from orderbell.services.dispatch.payloads import NotificationPayload


RATE_LIMIT_MARKERS = ("too many requests", "rate limit")


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def sent(cls, message_id: str | None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "SendResult":
        return cls(success=False, error=error)


def classify_error(error: str | None) -> str:
    """Bucket a delivery error for logs and metrics."""

    text = (error or "").lower()
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return "rate_limited"
    return "delivery"


class OutboundNotifier(Protocol):
    async def send(self, payload: NotificationPayload, destination: str) -> SendResult:
        ...


class HttpNotifier:
    """Posts `{"action", "data"}` to the email worker.

    Ordinary delivery failures (bad address, provider rate limiting, provider
    validation) come back as failed results. Transport errors, where no
    response was received at all, propagate as `httpx.TransportError`.
    """

    def __init__(self, endpoint: str, timeout_seconds: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.endpoint)

    async def _post(self, body: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.endpoint, json=body)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(self.endpoint, json=body)

    async def send(self, payload: NotificationPayload, destination: str) -> SendResult:
        if not self.configured:
            return SendResult.failed("Email service not configured")

        resp = await self._post({"action": payload.action, "data": {**payload.data, "toEmail": destination}})
        if resp.status_code != 200:
            return SendResult.failed(f"HTTP {resp.status_code}: {resp.text}")
        try:
            data = resp.json()
        except ValueError:
            return SendResult.failed(f"invalid worker response: {resp.text[:200]}")
        if data.get("success") is True:
            return SendResult.sent(data.get("messageId"))
        return SendResult.failed(data.get("error") or "Unknown error")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
