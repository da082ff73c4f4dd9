"""Structured event logger -- writes to event_log table and optionally to console."""

import os
import sys
from datetime import datetime, timezone

from shared.db import connect, ensure_schema


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _format_fields(fields: dict) -> str:
    parts = []
    for key in sorted(fields):
        parts.append(f"{key}={fields[key]}")
    return " ".join(parts)


def _echo_enabled() -> bool:
    return os.getenv("WF_LOG_ECHO", "1").strip().lower() not in ("0", "false", "no", "n", "off")


def log_event(level: str, source: str, message: str, *, echo: bool = True, **fields) -> None:
    """
    Log a structured event to the event_log table.

    Args:
        level:   INFO, WARN, ERROR, CRITICAL
        source:  Component name (e.g. "engine", "loader", "runner")
        message: Human-readable message
        echo:    Also print to stdout (default True; WF_LOG_ECHO=0 silences it)
        fields:  Extra key=value context appended to the message
    """
    ts = _utc_now_iso()
    full_msg = f"[{source}] {message}"
    if fields:
        full_msg = f"{full_msg} {_format_fields(fields)}"

    try:
        conn = connect()
        ensure_schema(conn)
        conn.execute(
            "INSERT INTO event_log (ts_utc, level, message) VALUES (?, ?, ?)",
            (ts, level.upper(), full_msg),
        )
        conn.commit()
        conn.close()
    except Exception as e:
        print(f"[logger] DB write failed: {e}", file=sys.stderr)

    if echo and _echo_enabled():
        print(f"[{ts}] {level.upper()} {full_msg}")
