from __future__ import annotations

import sys
from pathlib import Path

from hyperliquid_tracker.config import load_config
from hyperliquid_tracker.db import store
from hyperliquid_tracker.pipeline.run_bot import resolve_db_path
from hyperliquid_tracker.tracking.format import plain_decimal


def main() -> None:
    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")
    db_path = resolve_db_path(config, root)
    if not db_path.exists():
        print(f"No database at {db_path}.")
        return

    conn = store.get_connection(db_path)
    wallets = store.list_tracked_wallets(conn)
    addresses = sorted({wallet["wallet_address"] for wallet in wallets})
    if len(sys.argv) > 1:
        wanted = sys.argv[1].strip().lower()
        addresses = [address for address in addresses if address == wanted]
    if not addresses:
        print("No tracked wallets found.")
        conn.close()
        return

    for address in addresses:
        trackers = [wallet for wallet in wallets if wallet["wallet_address"] == address]
        status = store.wallet_status(conn, address) or {}
        print(f"wallet: {address}")
        print(f"  trackers: {', '.join(_tracker(wallet) for wallet in trackers)}")
        print(f"  baseline: {_fmt_time(status.get('first_observed_at'))}")
        print(f"  last_observed: {_fmt_time(status.get('last_observed_at'))}")
        print(f"  consecutive_failures: {status.get('consecutive_failures', 0)}")
        if status.get("last_error"):
            print(f"  last_error: {status['last_error']}")
        if status.get("invalid"):
            print("  status: invalid (polling paused)")
        positions = store.snapshots_for(conn, address)
        if not positions:
            print("  positions: none")
        for coin, snapshot in positions.items():
            print(
                f"  - {coin} size={plain_decimal(snapshot['size'])} "
                f"entry={plain_decimal(snapshot['entry_price'])} "
                f"upnl={plain_decimal(snapshot['unrealized_pnl'])} "
                f"leverage={snapshot['leverage']}x"
            )
    conn.close()


def _tracker(wallet: dict) -> str:
    if wallet.get("note"):
        return f"{wallet['user_id']} ({wallet['note']})"
    return str(wallet["user_id"])


def _fmt_time(value) -> str:
    if value is None:
        return "n/a"
    return value.isoformat(timespec="seconds")


if __name__ == "__main__":
    main()
