from __future__ import annotations

import html
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from hyperliquid_tracker.api.hyperliquid import is_valid_address, normalize_address
from hyperliquid_tracker.db import store
from hyperliquid_tracker.errors import DeliveryError, FetchError, UnknownWallet
from hyperliquid_tracker.tracking.format import format_positions, wallet_label

COMMANDS = (
    ("help", "Display this help message"),
    ("start", "Start the bot"),
    ("add", "Add a wallet to track: /add 0x... [note]"),
    ("remove", "Remove a tracked wallet: /remove <address|index|note>"),
    ("list", "List all tracked wallets"),
    ("positions", "Show open positions for a wallet: /positions <address|index|note>"),
)
RESERVED_NOTE_RANGE = range(1, 11)
GENERIC_ERROR = "❌ Something went wrong. Please try again."

logger = logging.getLogger(__name__)


def parse_command(text: str | None) -> tuple[str, str] | None:
    if not text:
        return None
    text = text.strip()
    if not text.startswith("/"):
        return None
    parts = text.split(maxsplit=1)
    name = parts[0][1:].split("@", 1)[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""
    return name, args


def describe_commands() -> str:
    return "\n".join(f"/{name} - {description}" for name, description in COMMANDS)


def is_reserved_note(note: str) -> bool:
    try:
        return int(note) in RESERVED_NOTE_RANGE
    except ValueError:
        return False


def resolve_wallet_identifier(
    conn: sqlite3.Connection,
    user_id: int,
    identifier: str,
) -> tuple[str, str | None] | None:
    if identifier.isdigit():
        wallet = store.wallet_by_index(conn, user_id, int(identifier))
        if wallet is not None:
            return wallet["wallet_address"], wallet["note"]
    wallet = store.wallet_by_note(conn, user_id, identifier)
    if wallet is not None:
        return wallet["wallet_address"], wallet["note"]
    if is_valid_address(identifier):
        address = normalize_address(identifier)
        return address, store.wallet_note(conn, address, user_id)
    return None


def handle_command(
    conn: sqlite3.Connection,
    fetcher,
    user_id: int,
    text: str | None,
    max_wallets: int = store.MAX_WALLETS_PER_USER,
) -> str | None:
    parsed = parse_command(text)
    if parsed is None:
        return None
    name, args = parsed
    if name == "help":
        return f"<b>📚 Help</b>\n{describe_commands()}"
    if name == "start":
        return (
            "<b>👋 Welcome to Hyperliquid Position Tracker!</b>\n\n"
            "I'll notify you when wallets you're tracking open or close positions on Hyperliquid.\n"
            f"{describe_commands()}\n\n"
            "<i>Start by adding a wallet address to track!</i>"
        )
    if name == "add":
        return _add(conn, user_id, args, max_wallets)
    if name == "remove":
        return _remove(conn, user_id, args)
    if name == "list":
        return _list(conn, user_id)
    if name == "positions":
        return _positions(conn, fetcher, user_id, args)
    return "❓ Unknown command. Use /help to see what I can do."


def _add(conn: sqlite3.Connection, user_id: int, args: str, max_wallets: int) -> str:
    if not args:
        return "❌ Please provide a wallet address.\n\nUsage: <code>/add 0x... [note]</code>"
    parts = args.split(maxsplit=1)
    wallet = parts[0]
    note = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None

    if not is_valid_address(wallet):
        return "❌ Invalid wallet address format. Please provide a valid Ethereum address."
    address = normalize_address(wallet)
    if note is not None:
        if is_reserved_note(note):
            return "❌ Notes cannot be numbers 1-10 as these are reserved for wallet indexing."
        if store.note_exists_for_user(conn, user_id, note, exclude_address=address):
            return "❌ You already have a wallet with this note. Please use a different note."

    existing = {row["wallet_address"] for row in store.list_user_wallets(conn, user_id)}
    if address not in existing and len(existing) >= max_wallets:
        return (
            f"❌ You've reached the maximum limit of {max_wallets} tracked wallets.\n\n"
            "Use <code>/remove &lt;wallet&gt;</code> to remove a wallet first."
        )

    result = store.add_wallet(conn, user_id, address, note)
    if result == "added":
        logger.info("User %s added wallet %s", user_id, address)
        note_text = f" ({html.escape(note)})" if note else ""
        return f"✅ Now tracking wallet{note_text}:\n<code>{address}</code>"
    if result == "resumed":
        logger.info("User %s resumed paused wallet %s", user_id, address)
        return f"✅ Resumed tracking wallet:\n{wallet_label(address, note, full=True)}"
    if result == "updated":
        logger.info("User %s updated note for wallet %s", user_id, address)
        return f"✅ Updated note:\n{wallet_label(address, note, full=True)}"
    return "⚠️ This wallet is already being tracked with the same note."


def _remove(conn: sqlite3.Connection, user_id: int, identifier: str) -> str:
    if not identifier:
        return (
            "❌ Please provide a wallet address, index (1-10), or note.\n\n"
            "Usage: <code>/remove &lt;address|index|note&gt;</code>"
        )
    resolved = resolve_wallet_identifier(conn, user_id, identifier)
    if resolved is None:
        return "❌ Wallet not found. Use <code>/list</code> to see your tracked wallets."
    address, _ = resolved
    if store.remove_wallet(conn, user_id, address):
        logger.info("User %s removed wallet %s", user_id, address)
        return f"✅ Stopped tracking wallet:\n<code>{address}</code>"
    return "⚠️ This wallet was not being tracked."


def _list(conn: sqlite3.Connection, user_id: int) -> str:
    wallets = store.list_user_wallets(conn, user_id)
    if not wallets:
        return (
            "📋 You're not tracking any wallets yet.\n\n"
            "Use <code>/add &lt;wallet&gt; [note]</code> to start tracking."
        )
    lines = [
        f"{index}. {wallet_label(wallet['wallet_address'], wallet['note'], full=True)}"
        for index, wallet in enumerate(wallets, start=1)
    ]
    return "<b>📋 Your tracked wallets:</b>\n\n" + "\n".join(lines)


def _positions(conn: sqlite3.Connection, fetcher, user_id: int, identifier: str) -> str:
    if not identifier:
        return (
            "❌ Please provide a wallet address, index (1-10), or note.\n\n"
            "Usage: <code>/positions &lt;address|index|note&gt;</code>"
        )
    resolved = resolve_wallet_identifier(conn, user_id, identifier)
    if resolved is None:
        return "❌ Wallet not found. Provide a valid address, index (1-10), or note."
    address, note = resolved
    try:
        snapshots = fetcher.fetch_open_positions(address)
    except UnknownWallet:
        return "❌ Hyperliquid does not recognise this wallet."
    except FetchError as exc:
        logger.error("Failed to fetch positions for %s: %s", address, exc)
        return "❌ Failed to fetch positions. Please try again."
    return format_positions(address, note, snapshots)


class CommandLoop:
    def __init__(self, client, db_path: Path, fetcher, config) -> None:
        self.client = client
        self.db_path = Path(db_path)
        self.fetcher = fetcher
        self.long_poll_timeout_s = config.telegram.long_poll_timeout_s
        self.max_wallets = config.registry.max_wallets_per_user
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self) -> None:
        try:
            self.client.set_my_commands(COMMANDS)
            logger.info("Bot commands registered successfully")
        except DeliveryError as exc:
            logger.error("Failed to register commands: %s", exc)

        offset: int | None = None
        while not self._stop.is_set():
            try:
                updates = self.client.get_updates(offset, timeout_s=self.long_poll_timeout_s)
            except DeliveryError as exc:
                logger.warning("Failed to fetch Telegram updates: %s", exc)
                self._stop.wait(5)
                continue
            for update in updates:
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    offset = update_id + 1
                self.handle_update(update)

    def handle_update(self, update: dict[str, Any]) -> str | None:
        message = update.get("message") or {}
        chat = message.get("chat") or {}
        if chat.get("type") != "private":
            return None
        sender = message.get("from") or {}
        user_id = sender.get("id") or chat.get("id")
        if user_id is None:
            return None

        conn = None
        try:
            conn = store.get_connection(self.db_path)
            reply = handle_command(conn, self.fetcher, int(user_id), message.get("text"), self.max_wallets)
        except sqlite3.Error as exc:
            logger.error("Command from %s failed: %s", user_id, exc)
            reply = GENERIC_ERROR
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected failure handling command from %s", user_id)
            reply = GENERIC_ERROR
        finally:
            if conn is not None:
                conn.close()

        if reply:
            try:
                self.client.send_message(chat["id"], reply)
            except DeliveryError as exc:
                logger.warning("Failed to reply to %s: %s", chat.get("id"), exc)
        return reply
