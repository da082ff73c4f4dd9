"""
Database schema for the walk-forward evaluator.
Creates the event log and simulation result tables.

Run: python -m scripts.init_db
"""

from shared.db import SCHEMA, connect, get_db_path


def main() -> None:
    conn = connect()
    conn.executescript(SCHEMA)
    conn.commit()
    tables = [
        row["name"]
        for row in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()
    ]
    conn.close()
    print(f"Initialized DB at {get_db_path()}")
    print("Tables:", ", ".join(t for t in tables if not t.startswith("sqlite_")))


if __name__ == "__main__":
    main()
