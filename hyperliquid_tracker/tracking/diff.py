from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

from hyperliquid_tracker.utils.time import utc_now

OPENED = "Opened"
CLOSED = "Closed"
INCREASED = "Increased"
DECREASED = "Decreased"
EVENT_KINDS = (OPENED, CLOSED, INCREASED, DECREASED)

ZERO = Decimal("0")

Snapshots = Mapping[str, Mapping[str, Any]]


def diff_snapshots(
    wallet_address: str,
    previous: Snapshots | None,
    current: Snapshots,
    timestamp: datetime | None = None,
) -> list[dict[str, Any]]:
    """Compare two snapshot sets of one wallet and return its change events.

    ``previous`` is ``None`` when the wallet has never been observed; that
    observation only establishes the baseline, so nothing is emitted.

    Only the absolute size drives events. A position that crosses zero
    (long to short or back) is reported as a close of the old side followed
    by an open of the new one. Events are grouped as closures, opens and
    size changes, each group ordered by coin.
    """
    if previous is None:
        return []
    timestamp = timestamp or utc_now()

    closures: list[dict[str, Any]] = []
    opens: list[dict[str, Any]] = []
    changes: list[dict[str, Any]] = []

    for coin in sorted(set(previous) | set(current)):
        before = previous.get(coin)
        after = current.get(coin)
        prev_size = _size(before)
        new_size = _size(after)

        if prev_size == new_size:
            continue
        if prev_size == ZERO:
            opens.append(_event(wallet_address, coin, OPENED, ZERO, new_size, after, timestamp))
        elif new_size == ZERO:
            closures.append(_event(wallet_address, coin, CLOSED, prev_size, ZERO, before, timestamp))
        elif (prev_size > ZERO) != (new_size > ZERO):
            closures.append(_event(wallet_address, coin, CLOSED, prev_size, ZERO, before, timestamp))
            opens.append(_event(wallet_address, coin, OPENED, ZERO, new_size, after, timestamp))
        elif abs(new_size) > abs(prev_size):
            changes.append(_event(wallet_address, coin, INCREASED, prev_size, new_size, after, timestamp))
        elif abs(new_size) < abs(prev_size):
            event = _event(wallet_address, coin, DECREASED, prev_size, new_size, after, timestamp)
            event["realized_pnl"] = realized_pnl_estimate(event, before.get("unrealized_pnl"))
            changes.append(event)

    return closures + opens + changes


def realized_pnl_estimate(event: Mapping[str, Any], previous_pnl: Decimal | None) -> Decimal | None:
    if previous_pnl is None:
        return None
    prev_size = abs(event["previous_size"])
    if prev_size == ZERO:
        return None
    closed = prev_size - abs(event["new_size"])
    if closed <= ZERO:
        return None
    return previous_pnl * closed / prev_size


def is_long(event: Mapping[str, Any]) -> bool:
    size = event["previous_size"] if event["kind"] == CLOSED else event["new_size"]
    return size > ZERO


def _size(snapshot: Mapping[str, Any] | None) -> Decimal:
    if snapshot is None:
        return ZERO
    return Decimal(snapshot["size"])


def _event(
    wallet_address: str,
    coin: str,
    kind: str,
    previous_size: Decimal,
    new_size: Decimal,
    context: Mapping[str, Any] | None,
    timestamp: datetime,
) -> dict[str, Any]:
    context = context or {}
    return {
        "wallet_address": wallet_address,
        "coin": coin,
        "kind": kind,
        "previous_size": previous_size,
        "new_size": new_size,
        "timestamp": timestamp,
        "entry_price": context.get("entry_price"),
        "leverage": context.get("leverage"),
        "unrealized_pnl": context.get("unrealized_pnl"),
        "realized_pnl": context.get("unrealized_pnl") if kind == CLOSED else None,
    }
