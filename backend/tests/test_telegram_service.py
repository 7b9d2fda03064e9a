"""
SnapDigest Backend — Telegram Notifier Tests (httpx MockTransport)
====================================================================

What we test:
    ✅ deliver() posts an HTML sendMessage and reports success
    ✅ API rejections, non-JSON bodies and transport errors return False, never raise
    ✅ Disabled notifier (no token) sends nothing
    ✅ Formatting helpers escape user text
"""

import json

import httpx
import pytest

from snapdigest.models.records import HistoryRecord, QuotaUsage
from snapdigest.services.telegram_service import (
    TelegramNotifier,
    format_history,
    format_quota,
    format_summary,
)


def make_notifier(handler, token="123:ABC", max_attempts=1):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramNotifier(
        bot_token=token,
        api_base="https://telegram.test",
        client=client,
        max_attempts=max_attempts,
    )


class TestDeliver:

    @pytest.mark.asyncio
    async def test_successful_send(self):
        """A 200 ok=true answer is a successful delivery."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "result": {}})

        notifier = make_notifier(handler)
        assert await notifier.deliver("42", "<b>hi</b>") is True

        assert seen[0].url.path == "/bot123:ABC/sendMessage"
        body = json.loads(seen[0].content)
        assert body == {"chat_id": "42", "text": "<b>hi</b>", "parse_mode": "HTML"}

    @pytest.mark.asyncio
    async def test_api_error_status(self):
        """A non-200 answer is reported as not sent."""
        notifier = make_notifier(lambda request: httpx.Response(400, json={"ok": False}))
        assert await notifier.deliver("42", "hi") is False

    @pytest.mark.asyncio
    async def test_api_rejects_message(self):
        """ok=false in a 200 answer is reported as not sent."""
        notifier = make_notifier(
            lambda request: httpx.Response(200, json={"ok": False, "description": "chat not found"})
        )
        assert await notifier.deliver("42", "hi") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{"text": "<html>Bad Gateway</html>"}, {"json": ["ok"]}],
    )
    async def test_unexpected_success_body(self, body):
        """A 200 whose body is not the Bot API envelope is not sent, not an error."""
        notifier = make_notifier(lambda request: httpx.Response(200, **body))
        assert await notifier.deliver("42", "hi") is False

    @pytest.mark.asyncio
    async def test_transport_error_is_contained(self):
        """Network failures return False instead of raising."""

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        notifier = make_notifier(handler)
        assert await notifier.deliver("42", "hi") is False

    @pytest.mark.asyncio
    async def test_disabled_without_token(self):
        """No token means no request at all."""
        calls = []
        notifier = make_notifier(lambda r: calls.append(r) or httpx.Response(200), token="")

        assert notifier.enabled is False
        assert await notifier.deliver("42", "hi") is False
        assert calls == []


class TestFormatting:

    def test_summary_escapes_html(self):
        """User text cannot inject Telegram HTML."""
        text = format_summary("a <script> & b", ["<i>x</i>", "y"])
        assert "a &lt;script&gt; &amp; b" in text
        assert "1. &lt;i&gt;x&lt;/i&gt;" in text
        assert "2. y" in text

    def test_quota_message(self):
        """The quota message shows used/limit and the reset time."""
        usage = QuotaUsage(used=3, remaining=7, reset_at=1_767_225_600_000)
        text = format_quota(usage, 10)
        assert "<b>3</b>/10" in text
        assert "2026-01-01T00:00:00.000Z" in text

    def test_empty_history(self):
        """No records gives the empty-history message."""
        assert "No History" in format_history([], 10)

    def test_history_lists_previews(self):
        """Each record appears as a numbered preview line."""
        record = HistoryRecord(
            id="1",
            user_id="u1",
            summary="s",
            key_points=["k"],
            original_text="The quick brown fox",
            created_at=1_767_225_600_000,
        )
        text = format_history([record], 10)
        assert "(1/10)" in text
        assert "<b>1.</b> The quick brown fox..." in text
