from __future__ import annotations

import html
import logging
import re
from typing import Any, Iterable

import requests

from hyperliquid_tracker.errors import DeliveryError

BASE_URL = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
TAG_RE = re.compile(r"<[^>]+>")

logger = logging.getLogger(__name__)


class TelegramClient:
    def __init__(
        self,
        bot_token: str | None,
        timeout_s: int = 15,
        dry_run: bool = False,
        session: requests.Session | None = None,
    ) -> None:
        if not bot_token and not dry_run:
            raise ValueError("TELEGRAM_BOT_TOKEN is required (or enable telegram.dry_run)")
        self.session = session or requests.Session()
        self.bot_token = bot_token or ""
        self.timeout = timeout_s
        self.dry_run = dry_run

    def send_message(self, chat_id: int | str, text: str) -> None:
        payload: dict[str, Any] = {"chat_id": chat_id, "disable_web_page_preview": True}
        if len(text) > MAX_MESSAGE_LENGTH:
            # cutting HTML can split a tag, send oversize messages as plain text
            plain = html.unescape(TAG_RE.sub("", text))
            payload["text"] = plain if len(plain) <= MAX_MESSAGE_LENGTH else plain[: MAX_MESSAGE_LENGTH - 3] + "..."
        else:
            payload["text"] = text
            payload["parse_mode"] = "HTML"
        if self.dry_run:
            logger.info("[DRY RUN] Telegram message to %s:\n%s", chat_id, payload["text"])
            return
        self._call("sendMessage", payload)

    def get_updates(self, offset: int | None = None, timeout_s: int = 30) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout_s, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        result = self._call("getUpdates", payload, read_timeout=timeout_s + self.timeout)
        return [item for item in result or [] if isinstance(item, dict)]

    def set_my_commands(self, commands: Iterable[tuple[str, str]]) -> None:
        if self.dry_run:
            return
        self._call(
            "setMyCommands",
            {"commands": [{"command": name, "description": description} for name, description in commands]},
        )

    def _call(self, method: str, payload: dict[str, Any], read_timeout: float | None = None) -> Any:
        url = f"{BASE_URL}/bot{self.bot_token}/{method}"
        timeout = (self.timeout, read_timeout or self.timeout)
        try:
            response = self.session.post(url, json=payload, timeout=timeout)
        except requests.RequestException as exc:
            raise DeliveryError(f"Telegram {method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after") if isinstance(body, dict) else None
            raise DeliveryError(f"Telegram {method} rate limited", retry_after=retry_after)
        if response.status_code >= 400 or not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise DeliveryError(
                f"Telegram {method} failed: HTTP {response.status_code} {description or ''}".strip(),
                retryable=response.status_code >= 500,
            )
        return body.get("result")
