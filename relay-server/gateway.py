"""Agent gateway: forwards user messages to the Archie backend.

Two call shapes are supported:
- tool invocation (sessions_send into the fixed agent session)
- OpenAI-compatible chat completion with a system prompt
"""

import logging
from typing import Any, Optional

import httpx

from config import (
    AGENT_MODEL,
    AGENT_SESSION_KEY,
    AGENT_TIMEOUT,
    AGENT_URL,
    CLAWDBOT_TOKEN,
    DEFAULT_SYSTEM_PROMPT,
)

logger = logging.getLogger("relay.gateway")

SEND_TOOL = "sessions_send"


class GatewayError(Exception):
    """The backend was unreachable or answered with a failure."""


def _preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class AgentGateway:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = AGENT_URL,
        token: str = CLAWDBOT_TOKEN,
        session_key: str = AGENT_SESSION_KEY,
        model: str = AGENT_MODEL,
        timeout: float = AGENT_TIMEOUT,
    ):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        self.session_key = session_key
        self._model = model
        self._timeout = timeout

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._http.post(url, json=payload, headers=self._headers, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.error("Backend request to %s failed: %s", path, e)
            raise GatewayError("Backend unreachable") from e
        if not resp.is_success:
            logger.error("Backend error %d from %s: %s", resp.status_code, path, _preview(resp.text, 500))
            raise GatewayError(f"Backend returned {resp.status_code}")
        return resp

    async def send_message(self, text: str) -> Any:
        """Invoke the send tool against the fixed agent session. Returns the backend's result."""
        logger.info("Forwarding message to Archie: %s", _preview(text))
        resp = await self._post("/tools/invoke", {
            "tool": SEND_TOOL,
            "args": {
                "sessionKey": self.session_key,
                "message": text,
            },
        })
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def complete(self, text: str, system_prompt: Optional[str] = None) -> str:
        """Run a system + user chat completion and return the first choice's content."""
        logger.info("Requesting completion from Archie: %s", _preview(text))
        resp = await self._post("/v1/chat/completions", {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
        })
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Malformed completion response: %s", e)
            raise GatewayError("Malformed completion response") from e
        return content if isinstance(content, str) else str(content)
