from __future__ import annotations

import html
from decimal import Decimal
from typing import Any, Mapping

from hyperliquid_tracker.tracking.diff import CLOSED, DECREASED, INCREASED, OPENED, is_long

HYPERDASH_URL = "https://legacy.hyperdash.com/trader/{address}"


def short_address(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def wallet_label(address: str, note: str | None = None, full: bool = False) -> str:
    shown = address if full else short_address(address)
    if note:
        return f"<code>{shown}</code> ({html.escape(note)})"
    return f"<code>{shown}</code>"


def plain_decimal(value: Decimal | None) -> str:
    if value is None:
        return "n/a"
    text = format(Decimal(value).normalize(), "f")
    return "0" if text in ("-0", "") else text


def format_pnl(pnl: Decimal | None) -> str:
    if pnl is None:
        return "n/a"
    if pnl >= 0:
        return f"🟢 +${pnl:.2f}"
    return f"🔴 -${abs(pnl):.2f}"


def _direction(long: bool) -> tuple[str, str]:
    return ("🟢", "Long") if long else ("🔴", "Short")


def format_change_event(event: Mapping[str, Any], note: str | None = None) -> str:
    kind = event["kind"]
    emoji, side = _direction(is_long(event))
    leverage = event.get("leverage") or 1
    header = f"<b>{emoji} {leverage}x {html.escape(event['coin'])} {side} {kind}</b>"
    lines = [header, "", wallet_label(event["wallet_address"], note)]
    entry = event.get("entry_price")

    if kind == OPENED:
        lines.append(f"Size: {plain_decimal(abs(event['new_size']))}")
        lines.append(f"Entry: ${plain_decimal(entry)}")
    elif kind == CLOSED:
        lines.append(f"Size: {plain_decimal(abs(event['previous_size']))}")
        lines.append(f"Entry: ${plain_decimal(entry)}")
        lines.append(f"PnL: {format_pnl(event.get('realized_pnl'))}")
    elif kind in (INCREASED, DECREASED):
        lines.append(
            f"Size: {plain_decimal(abs(event['previous_size']))} → {plain_decimal(abs(event['new_size']))}"
        )
        lines.append(f"Entry: ${plain_decimal(entry)}")
        if kind == DECREASED and event.get("realized_pnl") is not None:
            lines.append(f"PnL: {format_pnl(event.get('realized_pnl'))}")
    else:
        raise ValueError(f"Unknown event kind: {kind}")
    return "\n".join(lines)


def format_stale_notice(address: str, note: str | None, failures: int, last_error: str | None) -> str:
    lines = [
        "<b>⚠️ Could not refresh wallet</b>",
        "",
        wallet_label(address, note),
        f"Position updates have failed {failures} times in a row.",
    ]
    if last_error:
        lines.append(f"Last error: {html.escape(last_error)}")
    lines.append("<i>Notifications resume automatically once the exchange responds again.</i>")
    return "\n".join(lines)


def format_invalid_notice(address: str, note: str | None, error: str | None) -> str:
    lines = [
        "<b>❌ Wallet rejected by Hyperliquid</b>",
        "",
        wallet_label(address, note, full=True),
        "Tracking is paused for this address. Remove it or add it again to retry.",
    ]
    if error:
        lines.append(f"Reason: {html.escape(error)}")
    return "\n".join(lines)


def format_positions(address: str, note: str | None, snapshots: Mapping[str, Mapping[str, Any]]) -> str:
    link = f'<a href="{HYPERDASH_URL.format(address=address)}">Hyperdash</a>'
    lines = ["<b>📊 Open Positions</b>", "", f"👛 Wallet: {wallet_label(address, note)}"]
    if not snapshots:
        lines.extend(["", "<i>No open positions</i>", "", link])
        return "\n".join(lines)

    for coin in sorted(snapshots):
        snapshot = snapshots[coin]
        size = Decimal(snapshot["size"])
        entry = Decimal(snapshot.get("entry_price") or 0)
        pnl = Decimal(snapshot.get("unrealized_pnl") or 0)
        emoji, side = _direction(size > 0)
        entry_value = entry * abs(size)
        pnl_pct = pnl / entry_value * 100 if entry_value > 0 else Decimal("0")
        sign = "+" if pnl_pct >= 0 else ""
        lines.append("")
        lines.append(f"{emoji} <b>{snapshot.get('leverage') or 1}x {html.escape(coin)} {side}</b>")
        lines.append(f"📊 Size: {plain_decimal(abs(size))} {html.escape(coin)}")
        lines.append(f"💰 Entry: ${plain_decimal(entry)}")
        lines.append(f"💵 PnL: {format_pnl(pnl)} ({sign}{pnl_pct:.2f}%)")
    lines.extend(["", link])
    return "\n".join(lines)
