"""
PinChat Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite document store file
_repo_default_db = BASE_DIR / "data" / "pinchat.db"
_user_default_db = Path.home() / ".pinchat" / "pinchat.db"

config_data = {}
CONFIG_FILE = BASE_DIR / "data" / "config.json"
if CONFIG_FILE.exists():
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except Exception:
        pass

if os.getenv("PINCHAT_DB"):
    DB_PATH = os.getenv("PINCHAT_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP/WebSocket server - default to localhost only
HOST = os.getenv("PINCHAT_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("PINCHAT_PORT", config_data.get("PORT", "3000")))
APP_VERSION = "0.1.0"

# Comma separated list of allowed CORS origins ("*" = any)
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("PINCHAT_CORS_ORIGINS", config_data.get("CORS_ORIGINS", "*")).split(",")
    if o.strip()
]

# Room log capacity: newest N messages are kept per room
HISTORY_LIMIT = int(os.getenv("PINCHAT_HISTORY_LIMIT", config_data.get("HISTORY_LIMIT", "100")))
# Seconds an empty room keeps its theme and history before teardown
ROOM_GRACE_SECONDS = float(os.getenv("PINCHAT_ROOM_GRACE_SECONDS", config_data.get("ROOM_GRACE_SECONDS", "30")))

# Document store backend: sqlite | http | memory
STORE_KIND = os.getenv("PINCHAT_STORE", config_data.get("STORE", "sqlite")).lower()
# JSON blob endpoint for the http store (GET to load, PUT to save)
STORE_URL = os.getenv("PINCHAT_STORE_URL", config_data.get("STORE_URL", ""))
STORE_KEY = os.getenv("PINCHAT_STORE_KEY", "")
STORE_TIMEOUT = float(os.getenv("PINCHAT_STORE_TIMEOUT", "10"))

# Persistence sync: "debounce" coalesces bursts of mutations into one save,
# "interval" saves unconditionally on a fixed period.
PERSIST_STRATEGY = os.getenv("PINCHAT_PERSIST_STRATEGY", config_data.get("PERSIST_STRATEGY", "debounce")).lower()
PERSIST_DEBOUNCE_SECONDS = float(os.getenv("PINCHAT_PERSIST_DEBOUNCE", config_data.get("PERSIST_DEBOUNCE", "2")))
PERSIST_INTERVAL_SECONDS = float(os.getenv("PINCHAT_PERSIST_INTERVAL", config_data.get("PERSIST_INTERVAL", "30")))
# Schedule grace teardown for rooms restored from a snapshot with nobody in them.
# Set to false to keep restored rooms until someone rejoins.
EXPIRE_RESTORED_ROOMS = os.getenv("PINCHAT_EXPIRE_RESTORED_ROOMS", "true").lower() not in {"0", "false", "no"}

# Dev: enable hot-reload for development
RELOAD_ENABLED = os.getenv("PINCHAT_RELOAD", "0") in {"1", "true", "yes"}


# Settings PUT /api/config may write back to config.json
EDITABLE_KEYS = {
    "HOST", "PORT", "CORS_ORIGINS", "HISTORY_LIMIT", "ROOM_GRACE_SECONDS",
    "STORE", "STORE_URL", "PERSIST_STRATEGY", "PERSIST_DEBOUNCE", "PERSIST_INTERVAL",
}


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "HISTORY_LIMIT": HISTORY_LIMIT,
        "ROOM_GRACE_SECONDS": ROOM_GRACE_SECONDS,
        "STORE": STORE_KIND,
        "PERSIST_STRATEGY": PERSIST_STRATEGY,
        "PERSIST_DEBOUNCE": PERSIST_DEBOUNCE_SECONDS,
        "PERSIST_INTERVAL": PERSIST_INTERVAL_SECONDS,
    }


def save_config_dict(new_data: dict, path: Path = CONFIG_FILE) -> dict:
    """Merge the settings PUT /api/config may change into config.json; read on next start."""
    current = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update({k: v for k, v in new_data.items() if k in EDITABLE_KEYS})
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2, sort_keys=True)
    return current
