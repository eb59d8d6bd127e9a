"""
Telegram Bot API - שליחת הודעות לבוט של קונפיגורציה.
"""
import httpx

from chatbot.core.config import settings
from chatbot.core.exceptions import TelegramError
from chatbot.core.logging import get_logger

logger = get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
TELEGRAM_CHUNK_SIZE = 4000
TELEGRAM_TIMEOUT_SECONDS = 10.0

START_GREETING = "Hello! I'm an AI assistant. How can I help you today?"
GENERIC_ERROR_REPLY = "Sorry, I encountered an error. Please try again."


def split_message(text: str) -> list[str]:
    """הודעה מעל 4096 תווים נחתכת לחלקים של 4000"""
    if len(text) <= TELEGRAM_MAX_MESSAGE_LENGTH:
        return [text]
    return [text[i:i + TELEGRAM_CHUNK_SIZE] for i in range(0, len(text), TELEGRAM_CHUNK_SIZE)]


class TelegramClient:
    """sendMessage with Markdown and a plain-text retry on parse errors"""

    def __init__(
        self,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self._transport = transport

    async def _post(self, bot_token: str, method: str, payload: dict) -> httpx.Response:
        url = f"{self._api_base}/bot{bot_token}/{method}"
        async with httpx.AsyncClient(
            timeout=TELEGRAM_TIMEOUT_SECONDS, transport=self._transport
        ) as client:
            return await client.post(url, json=payload)

    async def _send_chunk(self, bot_token: str, chat_id: str, text: str) -> None:
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"}
        response = await self._post(bot_token, "sendMessage", payload)
        if response.status_code == 200:
            return

        description = ""
        try:
            description = (response.json() or {}).get("description", "")
        except ValueError:
            pass

        if "parse" in description.lower():
            logger.warning(
                "Telegram rejected Markdown, retrying as plain text",
                extra_data={"chat_id": chat_id},
            )
            payload.pop("parse_mode")
            response = await self._post(bot_token, "sendMessage", payload)
            if response.status_code == 200:
                return

        raise TelegramError.from_response("sendMessage", response)

    async def send_message(self, bot_token: str, chat_id: str | int, text: str) -> None:
        """
        Raises:
            TelegramError: תשובה שאינה 200 (גם אחרי ניסיון בלי Markdown)
            httpx.HTTPError: כשל רשת
        """
        for chunk in split_message(text):
            await self._send_chunk(bot_token, str(chat_id), chunk)
