"""One-shot relay of a message to a fixed Telegram chat."""

import logging

import httpx

from config import ConfigurationError, TELEGRAM_API_URL, TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

logger = logging.getLogger("relay.telegram")


class RelayError(Exception):
    """The Bot API call failed."""


class RelayNotConfigured(ConfigurationError):
    """No bot token / chat id configured."""


class TelegramRelay:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        bot_token: str = TELEGRAM_BOT_TOKEN,
        chat_id: str = TELEGRAM_CHAT_ID,
        api_url: str = TELEGRAM_API_URL,
    ):
        self._http = http_client
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._api_url = api_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    async def relay(self, text: str):
        if not self.configured:
            raise RelayNotConfigured("Telegram relay is not configured")

        url = f"{self._api_url}/bot{self._bot_token}/sendMessage"
        try:
            resp = await self._http.post(url, json={"chat_id": self._chat_id, "text": text}, timeout=10.0)
        except httpx.HTTPError as e:
            # The URL embeds the bot token, so only the exception type is logged
            logger.error("Telegram request failed: %s", type(e).__name__)
            raise RelayError("Telegram unreachable") from e

        if not resp.is_success:
            logger.error("Telegram returned %d", resp.status_code)
            raise RelayError(f"Telegram returned {resp.status_code}")
        try:
            ok = resp.json().get("ok", False)
        except ValueError:
            ok = False
        if not ok:
            logger.error("Telegram rejected message: %s", resp.text[:200])
            raise RelayError("Telegram rejected message")
        logger.info("Relayed message to chat %s", self._chat_id)
