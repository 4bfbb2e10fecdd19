"""HttpNotifier result mapping against a mocked email worker."""

import asyncio
import json

import httpx
import pytest

from orderbell.services.dispatch.notifier import HttpNotifier, SendResult, classify_error
from orderbell.services.dispatch.payloads import NotificationPayload


PAYLOAD = NotificationPayload(action="order-notification", data={"orderNo": "A-1", "items": []})


def notifier_for(handler) -> HttpNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNotifier("https://worker.test/", client=client)


def send(notifier: HttpNotifier) -> SendResult:
    async def run():
        try:
            return await notifier.send(PAYLOAD, "shop@x.com")
        finally:
            await notifier.close()

    return asyncio.run(run())


def test_success_returns_message_id_and_posts_action_envelope():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "messageId": "re_42"})

    result = send(notifier_for(handler))

    assert result == SendResult(success=True, message_id="re_42")
    assert seen["body"]["action"] == "order-notification"
    assert seen["body"]["data"]["orderNo"] == "A-1"
    assert seen["body"]["data"]["toEmail"] == "shop@x.com"


def test_worker_reported_failure_is_a_result():
    result = send(notifier_for(lambda request: httpx.Response(200, json={"success": False, "error": "Too many requests"})))
    assert result == SendResult.failed("Too many requests")

    result = send(notifier_for(lambda request: httpx.Response(200, json={"success": False})))
    assert result.error == "Unknown error"


def test_non_200_is_a_result():
    result = send(notifier_for(lambda request: httpx.Response(500, text="upstream exploded")))
    assert not result.success
    assert result.error == "HTTP 500: upstream exploded"


def test_transport_errors_propagate():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(httpx.ConnectError):
        send(notifier_for(handler))


def test_unconfigured_endpoint_fails_without_a_request():
    result = asyncio.run(HttpNotifier("").send(PAYLOAD, "shop@x.com"))
    assert result == SendResult.failed("Email service not configured")


def test_classify_error():
    assert classify_error("Too many requests") == "rate_limited"
    assert classify_error("Daily rate limit exceeded") == "rate_limited"
    assert classify_error("Invalid `to` field") == "delivery"
    assert classify_error(None) == "delivery"
