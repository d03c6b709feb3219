from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

from hyperliquid_tracker.db.schema import SCHEMA_SQL
from hyperliquid_tracker.errors import StorageError
from hyperliquid_tracker.utils.time import parse_datetime, to_iso, utc_now

MAX_WALLETS_PER_USER = 10


def get_connection(db_path: Path, timeout_s: float = 30.0) -> sqlite3.Connection:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout_s)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA_SQL)
    _ensure_column(conn, "tracked_wallets", "note", "TEXT")
    _ensure_column(conn, "wallet_status", "backoff_until", "TEXT")
    _ensure_column(conn, "wallet_status", "stale_notified", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(conn, "wallet_status", "invalid", "INTEGER NOT NULL DEFAULT 0")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        return


def _normalize(wallet_address: str) -> str:
    return wallet_address.strip().lower()


# Position snapshots


def snapshots_for(conn: sqlite3.Connection, wallet_address: str) -> dict[str, dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT coin, size, entry_px, unrealized_pnl, leverage, updated_at
        FROM active_positions WHERE wallet_address = ?
        ORDER BY coin
        """,
        (_normalize(wallet_address),),
    ).fetchall()
    results: dict[str, dict[str, Any]] = {}
    for row in rows:
        results[row["coin"]] = {
            "coin": row["coin"],
            "size": Decimal(row["size"]),
            "entry_price": Decimal(row["entry_px"]),
            "unrealized_pnl": Decimal(row["unrealized_pnl"]),
            "leverage": row["leverage"],
            "observed_at": parse_datetime(row["updated_at"]),
        }
    return results


def has_baseline(conn: sqlite3.Connection, wallet_address: str) -> bool:
    row = conn.execute(
        "SELECT first_observed_at FROM wallet_status WHERE wallet_address = ?",
        (_normalize(wallet_address),),
    ).fetchone()
    return bool(row and row["first_observed_at"])


def commit_snapshots(
    conn: sqlite3.Connection,
    wallet_address: str,
    snapshots: Mapping[str, Mapping[str, Any]],
    observed_at: datetime | None = None,
) -> None:
    wallet = _normalize(wallet_address)
    now = to_iso(observed_at or utc_now())
    coins = sorted(snapshots)
    rows = []
    for coin in coins:
        snapshot = snapshots[coin]
        if snapshot["size"] == 0:
            raise ValueError(f"Refusing to store a zero-size position for {coin}")
        rows.append(
            (
                wallet,
                coin,
                str(snapshot["size"]),
                str(snapshot.get("entry_price") or 0),
                str(snapshot.get("unrealized_pnl") or 0),
                int(snapshot.get("leverage") or 1),
                to_iso(snapshot.get("observed_at")) or now,
            )
        )

    try:
        conn.execute("BEGIN IMMEDIATE")
        if coins:
            placeholders = ", ".join("?" for _ in coins)
            conn.execute(
                f"DELETE FROM active_positions WHERE wallet_address = ? AND coin NOT IN ({placeholders})",
                (wallet, *coins),
            )
        else:
            conn.execute("DELETE FROM active_positions WHERE wallet_address = ?", (wallet,))
        conn.executemany(
            """
            INSERT INTO active_positions
            (wallet_address, coin, size, entry_px, unrealized_pnl, leverage, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (wallet_address, coin) DO UPDATE SET
                size = excluded.size,
                entry_px = excluded.entry_px,
                unrealized_pnl = excluded.unrealized_pnl,
                leverage = excluded.leverage,
                updated_at = excluded.updated_at
            WHERE size != excluded.size
               OR entry_px != excluded.entry_px
               OR unrealized_pnl != excluded.unrealized_pnl
               OR leverage != excluded.leverage
            """,
            rows,
        )
        conn.execute(
            """
            INSERT INTO wallet_status
            (wallet_address, first_observed_at, last_observed_at, consecutive_failures,
             last_error, backoff_until, stale_notified)
            VALUES (?, ?, ?, 0, NULL, NULL, 0)
            ON CONFLICT (wallet_address) DO UPDATE SET
                first_observed_at = COALESCE(wallet_status.first_observed_at, excluded.first_observed_at),
                last_observed_at = excluded.last_observed_at,
                consecutive_failures = 0,
                last_error = NULL,
                backoff_until = NULL,
                stale_notified = 0
            """,
            (wallet, now, now),
        )
        conn.commit()
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.rollback()
        raise StorageError(f"Failed to commit positions for {wallet}: {exc}") from exc


# Wallet health


def wallet_status(conn: sqlite3.Connection, wallet_address: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT wallet_address, first_observed_at, last_observed_at, consecutive_failures,
               last_error, backoff_until, stale_notified, invalid
        FROM wallet_status WHERE wallet_address = ?
        """,
        (_normalize(wallet_address),),
    ).fetchone()
    return _status_row(row) if row else None


def wallet_statuses(conn: sqlite3.Connection) -> dict[str, dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT wallet_address, first_observed_at, last_observed_at, consecutive_failures,
               last_error, backoff_until, stale_notified, invalid
        FROM wallet_status
        """
    ).fetchall()
    return {row["wallet_address"]: _status_row(row) for row in rows}


def _status_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "wallet_address": row["wallet_address"],
        "first_observed_at": parse_datetime(row["first_observed_at"]),
        "last_observed_at": parse_datetime(row["last_observed_at"]),
        "consecutive_failures": row["consecutive_failures"] or 0,
        "last_error": row["last_error"],
        "backoff_until": parse_datetime(row["backoff_until"]),
        "stale_notified": bool(row["stale_notified"]),
        "invalid": bool(row["invalid"]),
    }


def record_failure(
    conn: sqlite3.Connection,
    wallet_address: str,
    error: str,
    backoff_until: datetime | None = None,
    commit: bool = True,
) -> int:
    wallet = _normalize(wallet_address)
    conn.execute(
        """
        INSERT INTO wallet_status (wallet_address, consecutive_failures, last_error, backoff_until)
        VALUES (?, 1, ?, ?)
        ON CONFLICT (wallet_address) DO UPDATE SET
            consecutive_failures = wallet_status.consecutive_failures + 1,
            last_error = excluded.last_error,
            backoff_until = excluded.backoff_until
        """,
        (wallet, error, to_iso(backoff_until)),
    )
    row = conn.execute(
        "SELECT consecutive_failures FROM wallet_status WHERE wallet_address = ?",
        (wallet,),
    ).fetchone()
    if commit:
        conn.commit()
    return row["consecutive_failures"] if row else 1


def mark_stale_notified(conn: sqlite3.Connection, wallet_address: str, commit: bool = True) -> None:
    conn.execute(
        "UPDATE wallet_status SET stale_notified = 1 WHERE wallet_address = ?",
        (_normalize(wallet_address),),
    )
    if commit:
        conn.commit()


def mark_invalid(conn: sqlite3.Connection, wallet_address: str, error: str, commit: bool = True) -> None:
    conn.execute(
        """
        INSERT INTO wallet_status (wallet_address, last_error, invalid)
        VALUES (?, ?, 1)
        ON CONFLICT (wallet_address) DO UPDATE SET
            last_error = excluded.last_error,
            invalid = 1
        """,
        (_normalize(wallet_address), error),
    )
    if commit:
        conn.commit()


# Wallet registry


def add_wallet(
    conn: sqlite3.Connection,
    user_id: int,
    wallet_address: str,
    note: str | None = None,
) -> str:
    wallet = _normalize(wallet_address)
    row = conn.execute(
        "SELECT id, note FROM tracked_wallets WHERE user_id = ? AND wallet_address = ?",
        (user_id, wallet),
    ).fetchone()
    if row is not None:
        status = wallet_status(conn, wallet)
        if status and status["invalid"]:
            if row["note"] != note:
                conn.execute("UPDATE tracked_wallets SET note = ? WHERE id = ?", (note, row["id"]))
            _reset_health(conn, wallet)
            conn.commit()
            return "resumed"
        if row["note"] == note:
            return "unchanged"
        conn.execute("UPDATE tracked_wallets SET note = ? WHERE id = ?", (note, row["id"]))
        conn.commit()
        return "updated"

    trackers = conn.execute(
        "SELECT COUNT(*) AS count FROM tracked_wallets WHERE wallet_address = ?",
        (wallet,),
    ).fetchone()
    if trackers["count"] == 0:
        # leftovers from a commit that raced the last removal
        conn.execute("DELETE FROM active_positions WHERE wallet_address = ?", (wallet,))
        conn.execute("DELETE FROM wallet_status WHERE wallet_address = ?", (wallet,))
    else:
        _reset_health(conn, wallet)
    conn.execute(
        "INSERT INTO tracked_wallets (user_id, wallet_address, note, created_at) VALUES (?, ?, ?, ?)",
        (user_id, wallet, note, to_iso(utc_now())),
    )
    conn.commit()
    return "added"


def _reset_health(conn: sqlite3.Connection, wallet: str) -> None:
    conn.execute(
        """
        UPDATE wallet_status
        SET invalid = 0, consecutive_failures = 0, stale_notified = 0, backoff_until = NULL
        WHERE wallet_address = ?
        """,
        (wallet,),
    )


def remove_wallet(conn: sqlite3.Connection, user_id: int, wallet_address: str) -> bool:
    wallet = _normalize(wallet_address)
    cursor = conn.execute(
        "DELETE FROM tracked_wallets WHERE user_id = ? AND wallet_address = ?",
        (user_id, wallet),
    )
    removed = cursor.rowcount > 0
    remaining = conn.execute(
        "SELECT COUNT(*) AS count FROM tracked_wallets WHERE wallet_address = ?",
        (wallet,),
    ).fetchone()
    if removed and remaining["count"] == 0:
        conn.execute("DELETE FROM active_positions WHERE wallet_address = ?", (wallet,))
        conn.execute("DELETE FROM wallet_status WHERE wallet_address = ?", (wallet,))
    conn.commit()
    return removed


def list_tracked_wallets(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, user_id, wallet_address, note, created_at
        FROM tracked_wallets ORDER BY wallet_address, id
        """
    ).fetchall()
    return [_wallet_row(row) for row in rows]


def list_user_wallets(conn: sqlite3.Connection, user_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, user_id, wallet_address, note, created_at
        FROM tracked_wallets WHERE user_id = ? ORDER BY id
        """,
        (user_id,),
    ).fetchall()
    return [_wallet_row(row) for row in rows]


def count_user_wallets(conn: sqlite3.Connection, user_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS count FROM tracked_wallets WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return row["count"] if row else 0


def wallet_by_index(conn: sqlite3.Connection, user_id: int, index: int) -> dict[str, Any] | None:
    if index < 1:
        return None
    wallets = list_user_wallets(conn, user_id)
    if index > len(wallets):
        return None
    return wallets[index - 1]


def wallet_by_note(conn: sqlite3.Connection, user_id: int, note: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT id, user_id, wallet_address, note, created_at
        FROM tracked_wallets WHERE user_id = ? AND LOWER(note) = LOWER(?)
        ORDER BY id LIMIT 1
        """,
        (user_id, note),
    ).fetchone()
    return _wallet_row(row) if row else None


def note_exists_for_user(
    conn: sqlite3.Connection,
    user_id: int,
    note: str,
    exclude_address: str | None = None,
) -> bool:
    row = conn.execute(
        """
        SELECT COUNT(*) AS count FROM tracked_wallets
        WHERE user_id = ? AND LOWER(note) = LOWER(?) AND wallet_address != ?
        """,
        (user_id, note, _normalize(exclude_address) if exclude_address else ""),
    ).fetchone()
    return bool(row and row["count"])


def wallet_note(conn: sqlite3.Connection, wallet_address: str, user_id: int | None = None) -> str | None:
    if user_id is None:
        row = conn.execute(
            "SELECT note FROM tracked_wallets WHERE wallet_address = ? AND note IS NOT NULL ORDER BY id LIMIT 1",
            (_normalize(wallet_address),),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT note FROM tracked_wallets WHERE wallet_address = ? AND user_id = ?",
            (_normalize(wallet_address), user_id),
        ).fetchone()
    return row["note"] if row else None


def _wallet_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "wallet_address": row["wallet_address"],
        "note": row["note"],
        "created_at": parse_datetime(row["created_at"]),
    }
