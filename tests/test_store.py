from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from hyperliquid_tracker.db import store
from hyperliquid_tracker.errors import StorageError
from hyperliquid_tracker.tracking.diff import diff_snapshots

WALLET = "0x" + "cd" * 20
NOW = datetime(2026, 1, 7, 12, 0, tzinfo=timezone.utc)


def _setup_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "tracker.sqlite"
    conn = store.get_connection(db_path)
    store.init_db(conn)
    conn.close()
    return db_path


def _pos(coin: str, size: str, entry: str = "100", pnl: str = "0", leverage: int = 3) -> dict:
    return {
        "coin": coin,
        "size": Decimal(size),
        "entry_price": Decimal(entry),
        "unrealized_pnl": Decimal(pnl),
        "leverage": leverage,
        "observed_at": NOW,
    }


def _rows(conn: sqlite3.Connection, wallet: str) -> list[tuple]:
    return [
        tuple(row)
        for row in conn.execute(
            """
            SELECT coin, size, entry_px, unrealized_pnl, leverage, updated_at
            FROM active_positions WHERE wallet_address = ? ORDER BY coin
            """,
            (wallet,),
        ).fetchall()
    ]


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    db_path = _setup_db(tmp_path)
    conn = store.get_connection(db_path)
    store.init_db(conn)
    store.init_db(conn)
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(tracked_wallets)")}
    assert {"id", "user_id", "wallet_address", "note", "created_at"} <= columns
    conn.close()


def test_never_observed_wallet_has_no_baseline(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    assert store.snapshots_for(conn, WALLET) == {}
    assert store.has_baseline(conn, WALLET) is False


def test_commit_empty_set_establishes_baseline(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.commit_snapshots(conn, WALLET, {}, observed_at=NOW)
    assert store.has_baseline(conn, WALLET) is True
    assert store.snapshots_for(conn, WALLET) == {}


def test_commit_replaces_whole_set(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "2"), "ETH": _pos("ETH", "-1")}, NOW)
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "5"), "SOL": _pos("SOL", "10")}, NOW)

    stored = store.snapshots_for(conn, WALLET)
    assert sorted(stored) == ["BTC", "SOL"]
    assert stored["BTC"]["size"] == Decimal("5")
    assert stored["SOL"]["leverage"] == 3
    assert stored["SOL"]["observed_at"] == NOW


def test_commit_keeps_decimal_precision(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    position = _pos("PEPE", "123456789.123456789", entry="0.000012345678", pnl="-0.1")
    store.commit_snapshots(conn, WALLET, {"PEPE": position}, NOW)
    stored = store.snapshots_for(conn, WALLET)["PEPE"]
    assert stored["size"] == Decimal("123456789.123456789")
    assert stored["entry_price"] == Decimal("0.000012345678")
    assert stored["unrealized_pnl"] == Decimal("-0.1")


def test_commit_is_idempotent(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    snapshots = {"BTC": _pos("BTC", "2"), "ETH": _pos("ETH", "1")}
    store.commit_snapshots(conn, WALLET, snapshots, NOW)
    before = _rows(conn, WALLET)
    store.commit_snapshots(conn, WALLET, snapshots, NOW + timedelta(seconds=10))
    assert _rows(conn, WALLET) == before

    stored = store.snapshots_for(conn, WALLET)
    assert diff_snapshots(WALLET, stored, snapshots, NOW) == []


def test_commit_rejects_zero_size(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    with pytest.raises(ValueError):
        store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "0")}, NOW)
    assert store.has_baseline(conn, WALLET) is False


def test_failed_commit_rolls_back(tmp_path: Path) -> None:
    db_path = _setup_db(tmp_path)
    conn = store.get_connection(db_path)
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "2")}, NOW)
    conn.execute(
        """
        CREATE TRIGGER fail_sol BEFORE INSERT ON active_positions
        WHEN NEW.coin = 'SOL'
        BEGIN SELECT RAISE(ABORT, 'disk full'); END
        """
    )
    conn.commit()

    with pytest.raises(StorageError):
        store.commit_snapshots(conn, WALLET, {"ETH": _pos("ETH", "1"), "SOL": _pos("SOL", "3")}, NOW)

    other = store.get_connection(db_path)
    stored = store.snapshots_for(other, WALLET)
    assert sorted(stored) == ["BTC"]
    assert stored["BTC"]["size"] == Decimal("2")
    other.close()


def test_uniqueness_per_wallet_and_coin(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "2")}, NOW)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            """
            INSERT INTO active_positions
            (wallet_address, coin, size, entry_px, unrealized_pnl, leverage, updated_at)
            VALUES (?, 'BTC', '1', '1', '0', 1, ?)
            """,
            (WALLET, NOW.isoformat()),
        )


def test_failure_tracking_and_reset(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    backoff = NOW + timedelta(seconds=30)
    assert store.record_failure(conn, WALLET, "timeout") == 1
    assert store.record_failure(conn, WALLET, "rate limited", backoff_until=backoff) == 2
    store.mark_stale_notified(conn, WALLET)

    status = store.wallet_status(conn, WALLET)
    assert status["consecutive_failures"] == 2
    assert status["last_error"] == "rate limited"
    assert status["backoff_until"] == backoff
    assert status["stale_notified"] is True
    assert store.has_baseline(conn, WALLET) is False

    store.commit_snapshots(conn, WALLET, {}, NOW)
    status = store.wallet_status(conn, WALLET)
    assert status["consecutive_failures"] == 0
    assert status["last_error"] is None
    assert status["backoff_until"] is None
    assert status["stale_notified"] is False
    assert status["first_observed_at"] == NOW


def test_registry_add_update_remove(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    mixed_case = "0x" + "AB" * 20
    assert store.add_wallet(conn, 1, mixed_case, "whale") == "added"
    assert store.add_wallet(conn, 1, mixed_case.lower(), "whale") == "unchanged"
    assert store.add_wallet(conn, 1, mixed_case, "big whale") == "updated"
    assert store.add_wallet(conn, 2, mixed_case, None) == "added"

    wallets = store.list_tracked_wallets(conn)
    assert [(w["user_id"], w["wallet_address"], w["note"]) for w in wallets] == [
        (1, mixed_case.lower(), "big whale"),
        (2, mixed_case.lower(), None),
    ]
    assert store.count_user_wallets(conn, 1) == 1
    assert store.wallet_by_index(conn, 1, 1)["wallet_address"] == mixed_case.lower()
    assert store.wallet_by_index(conn, 1, 2) is None
    assert store.wallet_by_note(conn, 1, "BIG WHALE")["user_id"] == 1
    assert store.note_exists_for_user(conn, 1, "Big Whale") is True
    assert store.note_exists_for_user(conn, 1, "big whale", exclude_address=mixed_case) is False
    assert store.wallet_note(conn, mixed_case, user_id=1) == "big whale"


def test_removing_last_tracker_clears_state(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.add_wallet(conn, 1, WALLET)
    store.add_wallet(conn, 2, WALLET)
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "2")}, NOW)

    assert store.remove_wallet(conn, 1, WALLET) is True
    assert store.snapshots_for(conn, WALLET) != {}

    assert store.remove_wallet(conn, 2, WALLET) is True
    assert store.snapshots_for(conn, WALLET) == {}
    assert store.has_baseline(conn, WALLET) is False
    assert store.remove_wallet(conn, 2, WALLET) is False


def test_readding_invalid_wallet_clears_flag(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.add_wallet(conn, 1, WALLET)
    store.add_wallet(conn, 2, WALLET)
    store.mark_invalid(conn, WALLET, "HTTP 422")
    assert store.wallet_statuses(conn)[WALLET]["invalid"] is True

    store.remove_wallet(conn, 1, WALLET)
    store.add_wallet(conn, 1, WALLET)
    assert store.wallet_status(conn, WALLET)["invalid"] is False


def test_same_user_readding_invalid_wallet_resumes_it(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.add_wallet(conn, 1, WALLET, "whale")
    store.record_failure(conn, WALLET, "HTTP 502")
    store.mark_invalid(conn, WALLET, "HTTP 422")

    assert store.add_wallet(conn, 1, WALLET, "whale") == "resumed"
    status = store.wallet_status(conn, WALLET)
    assert status["invalid"] is False
    assert status["consecutive_failures"] == 0
    assert store.add_wallet(conn, 1, WALLET, "whale") == "unchanged"


def test_adding_untracked_wallet_discards_leftover_baseline(tmp_path: Path) -> None:
    conn = store.get_connection(_setup_db(tmp_path))
    store.add_wallet(conn, 1, WALLET)
    store.remove_wallet(conn, 1, WALLET)
    # a pipeline that fetched before the removal commits afterwards
    store.commit_snapshots(conn, WALLET, {"BTC": _pos("BTC", "2")}, NOW)
    assert store.has_baseline(conn, WALLET) is True

    assert store.add_wallet(conn, 1, WALLET) == "added"
    assert store.has_baseline(conn, WALLET) is False
    assert store.snapshots_for(conn, WALLET) == {}
