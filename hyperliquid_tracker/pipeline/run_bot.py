from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path

from hyperliquid_tracker.api.hyperliquid import HyperliquidClient
from hyperliquid_tracker.api.telegram import TelegramClient
from hyperliquid_tracker.config import AppConfig, load_config
from hyperliquid_tracker.db import store
from hyperliquid_tracker.pipeline.commands import CommandLoop
from hyperliquid_tracker.pipeline.notify import Notifier
from hyperliquid_tracker.pipeline.poll import Poller
from hyperliquid_tracker.utils.log import setup_logging

logger = logging.getLogger(__name__)


def resolve_db_path(config: AppConfig, root: Path) -> Path:
    db_path = Path(config.storage.db_path)
    return db_path if db_path.is_absolute() else root / db_path


def main() -> None:
    root = Path(__file__).resolve().parents[2]
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else root / "config.yaml"
    config = load_config(config_path)
    setup_logging(config.logging.level, config.logging.file)
    logger.info("Starting Hyperliquid position tracker")

    db_path = resolve_db_path(config, root)
    conn = store.get_connection(db_path)
    store.init_db(conn)
    conn.close()
    logger.info("Database ready at %s", db_path)

    fetcher = HyperliquidClient(
        base_url=config.exchange.base_url,
        timeout_s=config.exchange.request_timeout_s,
        retry_max=config.exchange.retry_max,
    )
    telegram = TelegramClient(
        config.telegram.bot_token,
        timeout_s=config.telegram.request_timeout_s,
        dry_run=config.telegram.dry_run,
    )
    notifier = Notifier(telegram, retry_max=config.telegram.retry_max)
    poller = Poller(config, db_path, fetcher, notifier)
    commands = CommandLoop(telegram, db_path, fetcher, config)

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        commands.stop()
        poller.stop(timeout=0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    poller.start()
    try:
        if config.telegram.dry_run and not config.telegram.bot_token:
            logger.info("Dry run without a bot token, chat commands disabled")
            while not poller.wait_stopped(timeout=1):
                continue
        else:
            commands.run_forever()
    finally:
        poller.stop()
        logger.info("Tracker stopped")


if __name__ == "__main__":
    main()
