from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from hyperliquid_tracker.errors import MalformedResponse, NetworkError, RateLimited, UnknownWallet
from hyperliquid_tracker.utils.time import utc_now

BASE_URL = "https://api.hyperliquid.xyz"
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
ZERO = Decimal("0")


def is_valid_address(address: str | None) -> bool:
    return bool(address) and ADDRESS_RE.match(address.strip()) is not None


def normalize_address(address: str) -> str:
    return address.strip().lower()


class HyperliquidClient:
    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout_s: int = 30,
        retry_max: int = 2,
        session: requests.Session | None = None,
        wait=None,
    ) -> None:
        self.session = session or requests.Session()
        self.url = f"{base_url.rstrip('/')}/info"
        self.timeout = (timeout_s, timeout_s)
        self.retry_max = retry_max
        self.wait = wait if wait is not None else wait_exponential_jitter(initial=0.5, max=5)

    def fetch_open_positions(self, wallet_address: str) -> dict[str, dict[str, Any]]:
        if not is_valid_address(wallet_address):
            raise UnknownWallet(f"Not a Hyperliquid address: {wallet_address!r}")
        body = {"type": "clearinghouseState", "user": normalize_address(wallet_address)}
        for attempt in Retrying(
            stop=stop_after_attempt(self.retry_max + 1),
            wait=self.wait,
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        ):
            with attempt:
                payload = self._post_info(body)
        return parse_clearinghouse_state(payload, utc_now())

    def _post_info(self, body: dict[str, Any]) -> Any:
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Hyperliquid request failed: {exc}") from exc
        status = response.status_code
        if status == 429:
            raise RateLimited("Hyperliquid rate limit hit", retry_after=_retry_after(response))
        if status in (400, 422):
            raise UnknownWallet(f"Hyperliquid rejected user {body.get('user')}: HTTP {status}")
        if status >= 500:
            raise NetworkError(f"Hyperliquid server error: HTTP {status}")
        if status >= 400:
            raise MalformedResponse(f"Unexpected Hyperliquid status: HTTP {status}")
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse("Hyperliquid returned a non-JSON body") from exc


def parse_clearinghouse_state(payload: Any, observed_at: datetime) -> dict[str, dict[str, Any]]:
    if not isinstance(payload, dict):
        raise MalformedResponse(f"Expected an object, got {type(payload).__name__}")
    asset_positions = payload.get("assetPositions")
    if not isinstance(asset_positions, list):
        raise MalformedResponse("Missing assetPositions list")

    snapshots: dict[str, dict[str, Any]] = {}
    for entry in asset_positions:
        position = entry.get("position") if isinstance(entry, dict) else None
        if not isinstance(position, dict):
            raise MalformedResponse("assetPositions entry without a position object")
        snapshot = normalize_position(position, observed_at)
        if snapshot["size"] == ZERO:
            continue
        if snapshot["coin"] in snapshots:
            raise MalformedResponse(f"Duplicate position for {snapshot['coin']}")
        snapshots[snapshot["coin"]] = snapshot
    return snapshots


def normalize_position(position: dict[str, Any], observed_at: datetime) -> dict[str, Any]:
    coin = position.get("coin")
    if not isinstance(coin, str) or not coin:
        raise MalformedResponse("Position without a coin")
    return {
        "coin": coin,
        "size": _decimal(position.get("szi"), "szi"),
        "entry_price": _decimal(position.get("entryPx"), "entryPx", default=ZERO),
        "unrealized_pnl": _decimal(position.get("unrealizedPnl"), "unrealizedPnl", default=ZERO),
        "leverage": _leverage(position.get("leverage")),
        "observed_at": observed_at,
    }


def _decimal(value: Any, field: str, default: Decimal | None = None) -> Decimal:
    if value is None and default is not None:
        return default
    if value is None or isinstance(value, bool):
        raise MalformedResponse(f"Missing numeric field {field}")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedResponse(f"Bad numeric value for {field}: {value!r}") from exc
    if not parsed.is_finite():
        raise MalformedResponse(f"Non-finite value for {field}: {value!r}")
    return parsed


def _leverage(value: Any) -> int:
    if value is None:
        return 1
    if isinstance(value, dict):
        value = value.get("value", 1)
    if isinstance(value, bool):
        raise MalformedResponse(f"Bad leverage: {value!r}")
    try:
        leverage = int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError) as exc:
        raise MalformedResponse(f"Bad leverage: {value!r}") from exc
    if leverage < 1:
        raise MalformedResponse(f"Bad leverage: {value!r}")
    return leverage


def _retry_after(response: requests.Response) -> float | None:
    header = response.headers.get("Retry-After") if response.headers else None
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        return None
