from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Protocol

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from hyperliquid_tracker.errors import DeliveryError
from hyperliquid_tracker.tracking.format import (
    format_change_event,
    format_invalid_notice,
    format_stale_notice,
)

MAX_RETRY_AFTER_S = 10.0

logger = logging.getLogger(__name__)


class MessageSender(Protocol):
    def send_message(self, chat_id: int | str, text: str) -> None: ...


def _should_retry(exc: BaseException) -> bool:
    return isinstance(exc, DeliveryError) and exc.retryable


def _honour_retry_after(fallback):
    def wait(retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            return min(float(retry_after), MAX_RETRY_AFTER_S)
        return fallback(retry_state)

    return wait


class Notifier:
    """Turns change events into chat messages.

    Every message gets a few delivery attempts and is then dropped. Nothing is
    queued for later: the next poll cycle works from live positions, so a
    stale event is never worth resending.
    """

    def __init__(self, sender: MessageSender, retry_max: int = 3, wait=None) -> None:
        self.sender = sender
        self.retry_max = max(retry_max, 1)
        self.wait = _honour_retry_after(wait if wait is not None else wait_exponential_jitter(initial=1, max=5))

    def notify_changes(
        self,
        wallet_address: str,
        events: Iterable[Mapping[str, Any]],
        recipients: Iterable[Mapping[str, Any]],
    ) -> int:
        recipients = list(recipients)
        delivered = 0
        for event in events:
            for recipient in recipients:
                text = format_change_event(event, recipient.get("note"))
                if self._deliver(recipient["user_id"], text):
                    delivered += 1
        if delivered:
            logger.info("Sent %d notifications for wallet %s", delivered, wallet_address)
        return delivered

    def notify_stale(
        self,
        wallet_address: str,
        recipients: Iterable[Mapping[str, Any]],
        failures: int,
        last_error: str | None,
    ) -> int:
        delivered = 0
        for recipient in recipients:
            text = format_stale_notice(wallet_address, recipient.get("note"), failures, last_error)
            if self._deliver(recipient["user_id"], text):
                delivered += 1
        return delivered

    def notify_invalid(
        self,
        wallet_address: str,
        recipients: Iterable[Mapping[str, Any]],
        error: str | None,
    ) -> int:
        delivered = 0
        for recipient in recipients:
            text = format_invalid_notice(wallet_address, recipient.get("note"), error)
            if self._deliver(recipient["user_id"], text):
                delivered += 1
        return delivered

    def _deliver(self, chat_id: int | str, text: str) -> bool:
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retry_max),
                wait=self.wait,
                retry=retry_if_exception(_should_retry),
                reraise=True,
            ):
                with attempt:
                    self.sender.send_message(chat_id, text)
        except DeliveryError as exc:
            logger.warning("Dropping notification for chat %s: %s", chat_id, exc)
            return False
        return True
