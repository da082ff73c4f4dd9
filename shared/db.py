import os
import sqlite3
from pathlib import Path

DB_PATH_DEFAULT = Path("data/walkforward.sqlite3")

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS event_log (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    ts_utc  TEXT NOT NULL,
    level   TEXT NOT NULL,
    message TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sim_runs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    created_utc     TEXT    NOT NULL,
    symbol          TEXT    NOT NULL,
    variant         TEXT    NOT NULL,
    asset_class     TEXT    NOT NULL,
    window_start    TEXT,
    window_end      TEXT,
    settings_json   TEXT,
    note            TEXT
);

CREATE TABLE IF NOT EXISTS sim_results (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id      INTEGER NOT NULL REFERENCES sim_runs(id),
    metric      TEXT    NOT NULL,
    value       REAL
);

CREATE TABLE IF NOT EXISTS sim_trades (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id          INTEGER NOT NULL REFERENCES sim_runs(id),
    deal_id         TEXT    NOT NULL,
    direction       TEXT    NOT NULL,
    entry_time      TEXT    NOT NULL,
    exit_time       TEXT    NOT NULL,
    entry_price     REAL    NOT NULL,
    exit_price      REAL    NOT NULL,
    stop_loss       REAL,
    take_profit     REAL,
    exit_reason     TEXT    NOT NULL,
    pips            REAL,
    r_multiple      REAL,
    pnl_money       REAL
);

CREATE INDEX IF NOT EXISTS idx_sim_trades_run
    ON sim_trades (run_id);

CREATE TABLE IF NOT EXISTS sim_equity (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id      INTEGER NOT NULL REFERENCES sim_runs(id),
    ts_utc      TEXT    NOT NULL,
    equity      REAL    NOT NULL
);
"""


def get_db_path() -> Path:
    p = os.getenv("DB_PATH", "").strip()
    return Path(p) if p else DB_PATH_DEFAULT


def connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    conn.commit()
