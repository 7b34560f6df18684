"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


# --- Identity ---
ROLE = os.environ.get("IDESYNC_ROLE", "host")  # "host" | "peer"
IDENTITY = os.environ.get("IDESYNC_IDENTITY", ROLE)
WORKSPACE_PATH = os.environ.get("IDESYNC_WORKSPACE", os.getcwd())
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
SYNC_HOST = "127.0.0.1"
DISCOVERY_PORT = _env_int("IDESYNC_DISCOVERY_PORT", 3000)
DISCOVERY_ENDPOINT = "discovery"
DATA_ENDPOINT = "data"
MAX_BIND_ATTEMPTS = 10

API_HOST = "127.0.0.1"
API_PORT = _env_int("IDESYNC_API_PORT", 8765 if ROLE == "host" else 8766)
AUTO_ENABLE = os.environ.get("IDESYNC_AUTO_ENABLE", "") in ("1", "true", "yes")

# --- Timeouts (seconds) ---
HELLO_TIMEOUT = 5
DISCOVERY_GRACE = 5  # discovery socket kept open after port assignment
PENDING_TIMEOUT = 30
CONNECT_TIMEOUT = 5
RECONNECT_DELAY = 5  # after a live session closes
DISCOVERY_RETRY_DELAY = 3  # discovery closed without an assignment
ERROR_BACKOFF = 10  # discovery server unreachable

# --- Storage ---
CONFIG_DIR = Path(os.environ.get("IDESYNC_HOME", Path.home() / ".ide-sync"))
PAIRS_FILE = CONFIG_DIR / "pairs.json"
LOG_DIR = CONFIG_DIR / "logs"

# --- Window focus targets ---
JETBRAINS_APPS = [
    "PyCharm", "IntelliJ IDEA", "WebStorm", "Rider", "GoLand",
    "RubyMine", "CLion", "DataGrip", "PhpStorm", "AppCode",
]
JETBRAINS_BUNDLE_IDS = [
    "com.jetbrains.pycharm", "com.jetbrains.intellij", "com.jetbrains.goland",
    "com.jetbrains.rubymine", "com.jetbrains.webstorm", "com.jetbrains.clion",
    "com.jetbrains.datagrip", "com.jetbrains.phpstorm", "com.jetbrains.rider",
    "com.jetbrains.appcode", "com.jetbrains.ide",
]
CODE_APPS = ["Cursor", "Visual Studio Code", "Code"]
CODE_BUNDLE_IDS = [
    "com.todesktop.230313mzl4w4u92",  # Cursor
    "com.microsoft.VSCode",
]


class SyncSettings(BaseModel):
    """Everything the reconnect supervisor needs, overridable per instance."""
    role: Literal["host", "peer"] = ROLE
    identity: str = IDENTITY
    workspace_path: str = WORKSPACE_PATH
    sync_host: str = SYNC_HOST
    discovery_port: int = DISCOVERY_PORT
    discovery_endpoint: str = DISCOVERY_ENDPOINT
    data_endpoint: str = DATA_ENDPOINT
    max_bind_attempts: int = MAX_BIND_ATTEMPTS
    hello_timeout: float = HELLO_TIMEOUT
    discovery_grace: float = DISCOVERY_GRACE
    pending_timeout: float = PENDING_TIMEOUT
    connect_timeout: float = CONNECT_TIMEOUT
    reconnect_delay: float = RECONNECT_DELAY
    discovery_retry_delay: float = DISCOVERY_RETRY_DELAY
    error_backoff: float = ERROR_BACKOFF
    log_dir: Optional[Path] = LOG_DIR  # None disables per-session log files
