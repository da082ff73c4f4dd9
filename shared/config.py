# shared/config.py
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _project_root() -> Path:
    # shared/ lives one level under repo root
    return Path(__file__).resolve().parents[1]


def _as_bool(v: str, default: bool = False) -> bool:
    if v is None:
        return default
    s = v.strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


@dataclass(frozen=True)
class Settings:
    # Files
    data_dir: Path            # <data_dir>/<SYMBOL>/<SYMBOL>_<TF>.json
    results_dir: Path         # result_/improvements_ documents and trade logs
    db_path: Path

    # Console echo for log_event
    log_echo: bool


def load_settings() -> Settings:
    root = _project_root()

    # Load .env from repo root regardless of current working dir
    env_path = root / ".env"
    load_dotenv(dotenv_path=env_path, override=False)

    data_dir = Path(os.getenv("WF_DATA_DIR", "").strip() or "data")
    results_dir = Path(os.getenv("WF_RESULTS_DIR", "").strip() or "results")
    db_path = Path(os.getenv("DB_PATH", "").strip() or "data/walkforward.sqlite3")
    log_echo = _as_bool(os.getenv("WF_LOG_ECHO", "1"), default=True)

    return Settings(
        data_dir=data_dir,
        results_dir=results_dir,
        db_path=db_path,
        log_echo=log_echo,
    )
