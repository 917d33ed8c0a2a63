import os
from pathlib import Path


def _env_text(name: str, default: str = "") -> str:
    value = os.getenv(name, default).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1].strip()
    return value


def _env_positive_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _env_positive_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DATA_DIR = Path(_env_text("AUTOFIX_DATA_DIR") or Path(__file__).resolve().parents[1] / "data")
KV_DB_PATH = _env_text("AUTOFIX_KV_DB_PATH") or str(DATA_DIR / "device.sqlite3")
REMOTE_DB_PATH = _env_text("AUTOFIX_REMOTE_DB_PATH") or str(DATA_DIR / "remote.sqlite3")
STORAGE_DIR = _env_text("AUTOFIX_STORAGE_DIR") or str(DATA_DIR / "objects")

REMOTE_URL = _env_text("AUTOFIX_REMOTE_URL")
REMOTE_API_KEY = _env_text("AUTOFIX_REMOTE_API_KEY")
REMOTE_TIMEOUT_SECONDS = _env_positive_float("AUTOFIX_REMOTE_TIMEOUT_SECONDS", 15.0)
REALTIME_RECONNECT_SECONDS = _env_positive_float("AUTOFIX_REALTIME_RECONNECT_SECONDS", 3.0)

ARRIVAL_RADIUS_METERS = _env_positive_int("AUTOFIX_ARRIVAL_RADIUS_METERS", 100)
PUBLIC_BASE_URL = _env_text("AUTOFIX_PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
LOG_LEVEL = _env_text("LOG_LEVEL", "INFO").upper()
