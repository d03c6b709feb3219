from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from hyperliquid_tracker.db import store
from hyperliquid_tracker.errors import MalformedResponse, NetworkError, RateLimited, StorageError, UnknownWallet
from hyperliquid_tracker.tracking.diff import diff_snapshots
from hyperliquid_tracker.utils.time import utc_now

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

logger = logging.getLogger(__name__)


class PositionFetcher(Protocol):
    def fetch_open_positions(self, wallet_address: str) -> dict[str, dict[str, Any]]: ...


def group_recipients(wallets: Iterable[Mapping[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for wallet in wallets:
        address = wallet["wallet_address"].strip().lower()
        grouped.setdefault(address, []).append({"user_id": wallet["user_id"], "note": wallet.get("note")})
    return dict(sorted(grouped.items()))


class Poller:
    """Periodic driver for the fetch -> diff -> commit -> notify pipeline.

    One timer fires ``tick`` every ``poll.interval_s`` seconds. A tick that
    lands while the previous cycle is still running is dropped, never queued.
    Inside a cycle each wallet address runs its pipeline on a bounded thread
    pool with its own SQLite connection, and any failure is contained to that
    wallet.
    """

    def __init__(self, config, db_path: Path, fetcher: PositionFetcher, notifier) -> None:
        self.poll = config.poll
        self.db_path = Path(db_path)
        self.fetcher = fetcher
        self.notifier = notifier
        self._in_flight = threading.Lock()
        self._stop = threading.Event()
        self._cycle_thread: threading.Thread | None = None
        self._driver: threading.Thread | None = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stop.wait(timeout)

    def start(self) -> threading.Thread:
        if self._driver is not None and self._driver.is_alive():
            return self._driver
        self._stop.clear()
        self._driver = threading.Thread(target=self.run_forever, name="poll-driver", daemon=True)
        self._driver.start()
        return self._driver

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        driver = self._driver
        if driver is not None and driver is not threading.current_thread():
            driver.join(timeout)
        self.wait_for_cycle(timeout)

    def wait_for_cycle(self, timeout: float | None = None) -> None:
        thread = self._cycle_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def run_forever(self) -> None:
        interval = self.poll.interval_s
        logger.info(
            "Position polling started interval=%ss max_concurrency=%s",
            interval,
            self.poll.max_concurrency,
        )
        next_tick = time.monotonic()
        while not self._stop.is_set():
            self.tick()
            next_tick += interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                next_tick += missed * interval
            self._stop.wait(next_tick - now)
        self.wait_for_cycle()
        logger.info("Position polling stopped")

    def tick(self) -> bool:
        if self._stop.is_set():
            return False
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Previous poll cycle still running, skipping tick")
            return False
        thread = threading.Thread(target=self._cycle_then_release, name="poll-cycle", daemon=True)
        self._cycle_thread = thread
        thread.start()
        return True

    def run_cycle(self) -> dict[str, Any] | None:
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Previous poll cycle still running, skipping cycle")
            return None
        try:
            return self._run_cycle()
        finally:
            self._in_flight.release()

    def _cycle_then_release(self) -> None:
        try:
            self._run_cycle()
        except Exception:  # noqa: BLE001
            logger.exception("Poll cycle crashed")
        finally:
            self._in_flight.release()

    def _run_cycle(self) -> dict[str, Any]:
        started = time.monotonic()
        summary = {"wallets": 0, SUCCEEDED: 0, FAILED: 0, SKIPPED: 0, "events": 0}
        try:
            conn = store.get_connection(self.db_path)
            try:
                wallets = store.list_tracked_wallets(conn)
                statuses = store.wallet_statuses(conn)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error("Failed to load tracked wallets: %s", exc)
            return summary

        grouped = group_recipients(wallets)
        summary["wallets"] = len(grouped)
        now = utc_now()
        due: list[tuple[str, list[dict[str, Any]]]] = []
        for address, recipients in grouped.items():
            status = statuses.get(address) or {}
            if status.get("invalid"):
                summary[SKIPPED] += 1
                continue
            backoff_until = status.get("backoff_until")
            if backoff_until and backoff_until > now:
                logger.debug("Skipping %s until %s", address, backoff_until.isoformat())
                summary[SKIPPED] += 1
                continue
            due.append((address, recipients))

        if due:
            workers = max(1, min(self.poll.max_concurrency, len(due)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="wallet") as pool:
                results = list(pool.map(lambda item: self.process_wallet(*item), due))
            for outcome, event_count in results:
                summary[outcome] += 1
                summary["events"] += event_count

        logger.info(
            "Poll cycle done wallets=%d succeeded=%d failed=%d skipped=%d events=%d elapsed=%.2fs",
            summary["wallets"],
            summary[SUCCEEDED],
            summary[FAILED],
            summary[SKIPPED],
            summary["events"],
            time.monotonic() - started,
        )
        return summary

    def process_wallet(self, address: str, recipients: list[dict[str, Any]]) -> tuple[str, int]:
        if self._stop.is_set():
            return SKIPPED, 0
        conn = None
        try:
            conn = store.get_connection(self.db_path)
            return self._process_wallet(conn, address, recipients)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure while polling %s", address)
            if conn is not None:
                self._record_failure(conn, address, recipients, f"{type(exc).__name__}: {exc}")
            return FAILED, 0
        finally:
            if conn is not None:
                conn.close()

    def _process_wallet(
        self,
        conn: sqlite3.Connection,
        address: str,
        recipients: list[dict[str, Any]],
    ) -> tuple[str, int]:
        try:
            current = self.fetcher.fetch_open_positions(address)
        except UnknownWallet as exc:
            logger.error("Hyperliquid rejected wallet %s, pausing it: %s", address, exc)
            store.mark_invalid(conn, address, str(exc))
            self.notifier.notify_invalid(address, recipients, str(exc))
            return FAILED, 0
        except RateLimited as exc:
            delay = max(exc.retry_after or 0.0, self.poll.rate_limit_backoff_s)
            logger.warning("Rate limited fetching %s, backing off %.0fs", address, delay)
            backoff_until = utc_now() + timedelta(seconds=delay)
            self._record_failure(conn, address, recipients, str(exc), backoff_until=backoff_until)
            return FAILED, 0
        except (NetworkError, MalformedResponse) as exc:
            logger.warning("Failed to fetch positions for %s: %s", address, exc)
            self._record_failure(conn, address, recipients, str(exc))
            return FAILED, 0

        previous = store.snapshots_for(conn, address) if store.has_baseline(conn, address) else None
        events = diff_snapshots(address, previous, current)
        try:
            store.commit_snapshots(conn, address, current)
        except StorageError as exc:
            logger.error("Keeping previous snapshot for %s: %s", address, exc)
            return FAILED, 0

        if previous is None:
            logger.info("Recorded baseline for %s with %d open positions", address, len(current))
        if events:
            logger.info(
                "Wallet %s changes: %s",
                address,
                ", ".join(f"{event['kind']} {event['coin']}" for event in events),
            )
            self.notifier.notify_changes(address, events, recipients)
        return SUCCEEDED, len(events)

    def _record_failure(
        self,
        conn: sqlite3.Connection,
        address: str,
        recipients: list[dict[str, Any]],
        error: str,
        backoff_until=None,
    ) -> None:
        try:
            failures = store.record_failure(conn, address, error, backoff_until=backoff_until)
            status = store.wallet_status(conn, address) or {}
            threshold = self.poll.stale_after_failures
            if threshold > 0 and failures >= threshold and not status.get("stale_notified"):
                logger.warning("Wallet %s failed %d cycles in a row, notifying trackers", address, failures)
                self.notifier.notify_stale(address, recipients, failures, error)
                store.mark_stale_notified(conn, address)
        except sqlite3.Error as exc:
            logger.error("Could not record failure for %s: %s", address, exc)
