SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tracked_wallets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    wallet_address TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, wallet_address)
);

CREATE TABLE IF NOT EXISTS active_positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    coin TEXT NOT NULL,
    size TEXT NOT NULL,
    entry_px TEXT NOT NULL,
    unrealized_pnl TEXT NOT NULL,
    leverage INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (wallet_address, coin)
);

CREATE TABLE IF NOT EXISTS wallet_status (
    wallet_address TEXT PRIMARY KEY,
    first_observed_at TEXT,
    last_observed_at TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    backoff_until TEXT,
    stale_notified INTEGER NOT NULL DEFAULT 0,
    invalid INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_tracked_wallets_address ON tracked_wallets (wallet_address);
"""
