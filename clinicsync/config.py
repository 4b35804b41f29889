"""
ClinicSync Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database holding the persisted credential blob
_repo_default_db = BASE_DIR / "data" / "clinicsync.db"
_user_default_db = Path.home() / ".clinicsync" / "clinicsync.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("CLINICSYNC_DB"):
    DB_PATH = os.getenv("CLINICSYNC_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# REST data service (conversations, messages, profile)
API_URL = os.getenv("CLINICSYNC_API_URL", config_data.get("API_URL", "http://localhost:8000/api/v1"))

# Realtime channel endpoint (Socket.IO)
SOCKET_URL = os.getenv("CLINICSYNC_SOCKET_URL", config_data.get("SOCKET_URL", "http://localhost:8000"))
SOCKET_PATH = os.getenv("CLINICSYNC_SOCKET_PATH", config_data.get("SOCKET_PATH", "socket.io"))
# Tried in order; the first transport that completes the handshake wins.
TRANSPORTS = [
    t.strip()
    for t in os.getenv("CLINICSYNC_TRANSPORTS", config_data.get("TRANSPORTS", "websocket,polling")).split(",")
    if t.strip()
]

# Reconnect backoff (seconds). delay = min(max, base * 2**attempt) +/- jitter fraction
RECONNECT_BASE_DELAY = float(os.getenv("CLINICSYNC_RECONNECT_BASE_DELAY", config_data.get("RECONNECT_BASE_DELAY", "1.0")))
RECONNECT_MAX_DELAY = float(os.getenv("CLINICSYNC_RECONNECT_MAX_DELAY", config_data.get("RECONNECT_MAX_DELAY", "30.0")))
RECONNECT_JITTER = float(os.getenv("CLINICSYNC_RECONNECT_JITTER", config_data.get("RECONNECT_JITTER", "0.3")))
CONNECT_TIMEOUT = float(os.getenv("CLINICSYNC_CONNECT_TIMEOUT", config_data.get("CONNECT_TIMEOUT", "10")))

HTTP_TIMEOUT = float(os.getenv("CLINICSYNC_HTTP_TIMEOUT", config_data.get("HTTP_TIMEOUT", "15")))

# Typing indicators expire after this many seconds without a refresh
TYPING_TIMEOUT = float(os.getenv("CLINICSYNC_TYPING_TIMEOUT", config_data.get("TYPING_TIMEOUT", "3.0")))

# Page size for message history loads
MESSAGE_PAGE_SIZE = int(os.getenv("CLINICSYNC_PAGE_SIZE", config_data.get("MESSAGE_PAGE_SIZE", "50")))

# Local presentation adapter - default to localhost only
HOST = os.getenv("CLINICSYNC_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("CLINICSYNC_PORT", config_data.get("PORT", "39780")))

CLIENT_VERSION = "0.1.0"


def get_config_dict():
    return {
        "API_URL": API_URL,
        "SOCKET_URL": SOCKET_URL,
        "SOCKET_PATH": SOCKET_PATH,
        "TRANSPORTS": ",".join(TRANSPORTS),
        "TYPING_TIMEOUT": TYPING_TIMEOUT,
        "MESSAGE_PAGE_SIZE": MESSAGE_PAGE_SIZE,
        "HOST": HOST,
        "PORT": PORT,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
