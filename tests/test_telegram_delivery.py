"""
Unit tests for the Telegram Bot API client, status log and dead-letter sink.
"""

import json

import httpx
import pytest

from failure_classifier import FailureClassifier, TelegramApiError
from link_registry import InMemoryLinkRegistry
from schemas import DeliveryStatus, DeliveryStatusEvent, FailureVerdict
from telegram_delivery import InMemoryDeliveryStatusStore, JsonlDeadLetterSink, TelegramBotApi


def _bot(handler, links=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = InMemoryLinkRegistry(links if links is not None else {"user-1": "1001"})
    return TelegramBotApi("123456:ABCDEF", registry, client=client)


@pytest.mark.asyncio
async def test_send_message_to_user_posts_html_message_with_keyboard():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    bot = _bot(handler)
    keyboard = {"inline_keyboard": [[{"text": "🔍 Open Tesla App", "url": "http://localhost:3000/redirect/tesla-app"}]]}

    assert await bot.send_message_to_user("user-1", "<b>hi</b>", keyboard) is True

    assert len(requests) == 1
    assert requests[0].url.path == "/bot123456:ABCDEF/sendMessage"
    body = json.loads(requests[0].content)
    assert body == {"chat_id": "1001", "text": "<b>hi</b>", "parse_mode": "HTML", "reply_markup": keyboard}
    await bot.close()


@pytest.mark.asyncio
async def test_user_without_linked_chat_returns_false():
    def handler(request):
        raise AssertionError("Telegram must not be called")

    bot = _bot(handler, links={})

    assert await bot.send_message_to_user("user-1", "hello") is False
    await bot.close()


@pytest.mark.asyncio
async def test_bot_without_token_returns_false():
    bot = TelegramBotApi("", InMemoryLinkRegistry({"user-1": "1001"}))

    assert bot.enabled is False
    assert await bot.send_message_to_user("user-1", "hello") is False


@pytest.mark.asyncio
async def test_blocked_bot_envelope_raises_permanent_error():
    def handler(request):
        return httpx.Response(403, json={
            "ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user",
        })

    bot = _bot(handler)

    with pytest.raises(TelegramApiError) as exc_info:
        await bot.send_message_to_user("user-1", "hello")

    assert exc_info.value.error_code == 403
    assert FailureClassifier().classify(exc_info.value) == FailureVerdict.PERMANENT
    await bot.close()


@pytest.mark.asyncio
async def test_rate_limit_envelope_raises_transient_error():
    def handler(request):
        return httpx.Response(429, json={
            "ok": False, "error_code": 429, "description": "Too Many Requests: retry after 5",
            "parameters": {"retry_after": 5},
        })

    bot = _bot(handler)

    with pytest.raises(TelegramApiError) as exc_info:
        await bot.send_message_to_user("user-1", "hello")

    assert exc_info.value.retry_after == 5
    assert FailureClassifier().classify(exc_info.value) == FailureVerdict.TRANSIENT
    await bot.close()


@pytest.mark.asyncio
async def test_non_json_response_raises_with_status_code():
    bot = _bot(lambda request: httpx.Response(502, text="Bad Gateway"))

    with pytest.raises(TelegramApiError) as exc_info:
        await bot.send_message_to_user("user-1", "hello")

    assert exc_info.value.status_code == 502
    await bot.close()


@pytest.mark.asyncio
async def test_transport_errors_propagate():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    bot = _bot(handler)

    with pytest.raises(httpx.ConnectError):
        await bot.send_message_to_user("user-1", "hello")
    await bot.close()


def test_status_store_is_bounded_and_keeps_recent_events():
    store = InMemoryDeliveryStatusStore(max_size=3)
    for i in range(5):
        store.add(DeliveryStatusEvent(status=DeliveryStatus.SENT, user_id=f"user-{i}"))

    assert len(store) == 3
    assert [e.user_id for e in store.list_recent(limit=2)] == ["user-3", "user-4"]
    assert [e.user_id for e in store.list_recent(limit=10)] == ["user-2", "user-3", "user-4"]
    assert store.list_recent(limit=0) == []


@pytest.mark.asyncio
async def test_jsonl_dead_letter_sink_appends_lines(tmp_path):
    path = tmp_path / "dead" / "telegram.jsonl"
    sink = JsonlDeadLetterSink(str(path))

    await sink.write({"correlation_id": "telegram-alert-user-1-1", "error": "ETIMEDOUT"})
    await sink.write({"correlation_id": "telegram-alert-user-1-2", "error": "ECONNRESET"})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["correlation_id"] for line in lines] == [
        "telegram-alert-user-1-1",
        "telegram-alert-user-1-2",
    ]
