"""
SnapDigest Backend — Telegram Notifier
========================================

What:  Delivers formatted summaries and stats to a Telegram chat.
Why:   Users of the Telegram mini app get their summary as a bot message.
How:   POST https://api.telegram.org/bot<token>/sendMessage via httpx, HTML
       parse mode. Transient transport errors are retried with tenacity.
Who:   SummaryService: after a successful summary (best-effort), and for
       the explicit send-to-telegram and send-stats requests.

deliver() never raises: every failure, including a 200 whose body is not
the Bot API JSON envelope, comes back as False. Whether that is fatal is the
caller's decision; the summarize path ignores it.
"""

import html
import logging
from typing import Iterable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from snapdigest.models.records import HistoryRecord, QuotaUsage

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """
    Thin Bot API client exposing deliver(chat_id, text) -> bool.

    Args:
        bot_token: Bot token; empty disables delivery.
        api_base: Bot API base URL (overridable for tests/self-hosted API).
        client: Shared httpx.AsyncClient. When omitted the notifier creates
                one and closes it in aclose().
        max_attempts: Attempts per message for transport-level failures.
    """

    def __init__(
        self,
        bot_token: str = "",
        api_base: str = "https://api.telegram.org",
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self.max_attempts = max_attempts

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    async def deliver(self, chat_id: str, text: str) -> bool:
        """Send `text` (HTML) to `chat_id`. True when Telegram accepted it."""
        if not self.enabled:
            logger.warning("TELEGRAM_BOT_TOKEN not configured, skipping Telegram message")
            return False

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential_jitter(initial=1, max=5, jitter=1),
                before_sleep=before_sleep_log(logger, logging.WARNING),
            ):
                with attempt:
                    response = await self._client.post(url, json=payload)
        except RetryError as e:
            logger.error("Telegram delivery to %s failed after retries: %s", chat_id, e)
            return False
        except httpx.HTTPError as e:
            logger.error("Telegram delivery to %s failed: %s", chat_id, e)
            return False

        if response.status_code != 200:
            logger.error(
                "Telegram API error %d for chat %s: %s",
                response.status_code,
                chat_id,
                response.text[:200],
            )
            return False

        try:
            body = response.json()
        except ValueError:
            logger.error(
                "Telegram API returned a non-JSON body for chat %s: %s",
                chat_id,
                response.text[:200],
            )
            return False
        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else body
            logger.error("Telegram API rejected message: %s", description)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════════════════
# Message Formatting (Telegram HTML subset)
# ══════════════════════════════════════════════════════════════════════════


def format_summary(summary: str, key_points: Iterable[str]) -> str:
    lines = ["<b>📋 Summary</b>", "", html.escape(summary), "", "<b>🎯 Key Points:</b>"]
    lines += [f"{i}. {html.escape(point)}" for i, point in enumerate(key_points, start=1)]
    return "\n".join(lines)


def format_quota(usage: QuotaUsage, limit: int) -> str:
    return (
        "<b>📊 Your Usage</b>\n\n"
        f"Used: <b>{usage.used}</b>/{limit}\n"
        f"Remaining: <b>{usage.remaining}</b>\n"
        f"Resets at: <i>{usage.reset_at_iso}</i>"
    )


def format_history(records: list[HistoryRecord], max_records: int) -> str:
    """List of recent summaries, one preview line each."""
    if not records:
        return "📚 <b>No History</b>\n\nYou haven't created any summaries yet."

    lines = [f"📚 <b>Your Recent Summaries</b> ({len(records)}/{max_records})", ""]
    for index, record in enumerate(records, start=1):
        lines.append(f"<b>{index}.</b> {html.escape(record.original_text[:50])}...")
        lines.append(f"   <i>{record.created_at_iso}</i>")
        lines.append("")
    lines.append(f"✨ <i>Your last {max_records} summaries are saved here</i>")
    return "\n".join(lines)
