from __future__ import annotations

import asyncio
import json
import unittest

import httpx
from langchain_core.language_models import FakeListChatModel

from strategy_flow.http_fetch import FetchError, HttpxFetcher
from strategy_flow.llm_client import ChatModelClient, LLMCallError, TieredLLMClient, supports_temperature
from strategy_flow.notifier import NotificationError, TelegramNotifier, normalize_parse_mode


class HttpxFetcherTests(unittest.TestCase):
    def test_get_returns_status_and_json_body_without_content(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"price": "101.5"})

        fetcher = HttpxFetcher(transport=httpx.MockTransport(handler))
        response = asyncio.run(
            fetcher.fetch(
                method="get",
                url="https://prices.test/ticker",
                headers={"Content-Type": "application/json"},
                body='{"ignored": true}',
            )
        )

        self.assertTrue(response.ok)
        self.assertEqual(response.body, {"price": "101.5"})
        self.assertEqual(seen[0].method, "GET")
        self.assertEqual(seen[0].content, b"")

    def test_post_sends_body_and_keeps_text_responses(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.content, b'{"a": 1}')
            return httpx.Response(503, text="maintenance")

        fetcher = HttpxFetcher(transport=httpx.MockTransport(handler))
        response = asyncio.run(fetcher.fetch(method="POST", url="https://api.test/x", body='{"a": 1}'))

        self.assertFalse(response.ok)
        self.assertEqual(response.status, 503)
        self.assertEqual(response.body, "maintenance")
        self.assertEqual(response.reason, "Service Unavailable")

    def test_transport_error_becomes_fetch_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = HttpxFetcher(transport=httpx.MockTransport(handler))
        with self.assertRaises(FetchError):
            asyncio.run(fetcher.fetch(method="GET", url="https://api.test/down"))


class TelegramNotifierTests(unittest.TestCase):
    def test_send_message_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 42}})

        notifier = TelegramNotifier(
            bot_token="TOKEN",
            default_chat_id="@default",
            transport=httpx.MockTransport(handler),
        )
        delivery_id = asyncio.run(notifier.send("Price: 1", parse_mode="markdown", severity="warning"))

        self.assertEqual(delivery_id, "42")
        self.assertEqual(seen[0].url.path, "/botTOKEN/sendMessage")
        payload = json.loads(seen[0].content)
        self.assertEqual(payload["chat_id"], "@default")
        self.assertEqual(payload["parse_mode"], "Markdown")
        self.assertEqual(payload["text"], "⚠️ Price: 1")

    def test_api_rejection_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

        notifier = TelegramNotifier(bot_token="TOKEN", transport=httpx.MockTransport(handler))
        with self.assertRaises(NotificationError) as ctx:
            asyncio.run(notifier.send("hi", chat_id="123"))
        self.assertIn("chat not found", str(ctx.exception))

    def test_missing_configuration_raises(self) -> None:
        with self.assertRaises(NotificationError):
            asyncio.run(TelegramNotifier(bot_token="").send("hi", chat_id="1"))
        with self.assertRaises(NotificationError):
            asyncio.run(TelegramNotifier(bot_token="TOKEN").send("hi"))

    def test_parse_mode_normalization(self) -> None:
        self.assertEqual(normalize_parse_mode("html"), "HTML")
        self.assertEqual(normalize_parse_mode("MarkdownV2"), "MarkdownV2")
        self.assertIsNone(normalize_parse_mode("plain"))
        self.assertIsNone(normalize_parse_mode(None))


class _FailingModel:
    def __init__(self) -> None:
        self.calls = 0

    async def ainvoke(self, messages):
        self.calls += 1
        raise RuntimeError("upstream unavailable")


class TieredLLMClientTests(unittest.TestCase):
    def test_routes_tiers_to_their_models(self) -> None:
        client = TieredLLMClient(
            {
                "cheap": ChatModelClient(FakeListChatModel(responses=["quick"]), model_name="mini"),
                "deep": ChatModelClient(FakeListChatModel(responses=["thorough"]), model_name="o1"),
            }
        )

        self.assertEqual(asyncio.run(client.generate("hi", tier="deep", system_prompt="Be brief.")), "thorough")
        self.assertEqual(asyncio.run(client.generate("hi")), "quick")
        self.assertEqual(client.model_for("deep"), "o1")

    def test_unknown_tier_falls_back_to_cheap(self) -> None:
        client = TieredLLMClient(
            {"cheap": ChatModelClient(FakeListChatModel(responses=["quick"]), model_name="mini")}
        )
        with self.assertLogs("strategy_flow.llm_client", level="WARNING"):
            self.assertEqual(client.model_for("premium"), "mini")
        self.assertEqual(client.model_for("deep"), "mini")

    def test_retries_then_raises(self) -> None:
        model = _FailingModel()
        client = ChatModelClient(model, model_name="broken", retry_attempts=3, retry_backoff_seconds=0)

        with self.assertRaises(LLMCallError):
            asyncio.run(client.invoke([]))
        self.assertEqual(model.calls, 3)

    def test_cheap_tier_is_required(self) -> None:
        with self.assertRaises(ValueError):
            TieredLLMClient({})

    def test_reasoning_models_skip_temperature(self) -> None:
        self.assertFalse(supports_temperature("o1"))
        self.assertFalse(supports_temperature("o3-mini"))
        self.assertTrue(supports_temperature("gpt-4o-mini"))


if __name__ == "__main__":
    unittest.main()
