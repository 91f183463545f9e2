"""
This module contains the configuration settings for the TurtleCoind supervisor.
It defines the daemon launch flags, health-check tuning, sanitation toggles and
logging options. Every value can be overridden through the environment or a
`.env` file in the working directory.
"""

import os
import pathlib
from typing import Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "")
    return int(raw) if raw else None


#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
OVERRIDES_JSON_PATH = BASE_DIR / "overrides.json"

#* --- Daemon Binary & Storage ---
TURTLECOIND_PATH = pathlib.Path(os.getenv("TURTLECOIND_PATH", "/usr/local/bin/TurtleCoind"))
DATA_DIR = pathlib.Path(os.getenv("TURTLECOIND_DATA_DIR", str(pathlib.Path.home() / ".TurtleCoin")))
TESTNET = _env_bool("TURTLECOIND_TESTNET")
LOAD_CHECKPOINTS = os.getenv("TURTLECOIND_LOAD_CHECKPOINTS") or None

#* --- RPC Interface ---
RPC_BIND_IP = os.getenv("TURTLECOIND_RPC_BIND_IP", "127.0.0.1")
RPC_BIND_PORT = int(os.getenv("TURTLECOIND_RPC_BIND_PORT", "11898"))
ENABLE_CORS = os.getenv("TURTLECOIND_ENABLE_CORS") or None  # Allowed origin, e.g. '*'
ENABLE_BLOCK_EXPLORER = _env_bool("TURTLECOIND_ENABLE_BLOCK_EXPLORER")

#* --- P2P Network ---
P2P_BIND_IP = os.getenv("TURTLECOIND_P2P_BIND_IP") or None
P2P_BIND_PORT = _env_int("TURTLECOIND_P2P_BIND_PORT")
P2P_EXTERNAL_PORT = _env_int("TURTLECOIND_P2P_EXTERNAL_PORT")
ALLOW_LOCAL_IP = _env_bool("TURTLECOIND_ALLOW_LOCAL_IP")
PEERS = _env_list("TURTLECOIND_PEERS")
PRIORITY_NODES = _env_list("TURTLECOIND_PRIORITY_NODES")
EXCLUSIVE_NODES = _env_list("TURTLECOIND_EXCLUSIVE_NODES")
SEED_NODE = os.getenv("TURTLECOIND_SEED_NODE") or None
HIDE_MY_PORT = _env_bool("TURTLECOIND_HIDE_MY_PORT")

#* --- Database Tuning ---
DB_THREADS = _env_int("TURTLECOIND_DB_THREADS")
DB_MAX_OPEN_FILES = _env_int("TURTLECOIND_DB_MAX_OPEN_FILES")
DB_WRITE_BUFFER_SIZE = _env_int("TURTLECOIND_DB_WRITE_BUFFER_SIZE")  # MB
DB_READ_CACHE_SIZE = _env_int("TURTLECOIND_DB_READ_CACHE_SIZE")      # MB

#* --- Health Checking ---
POLLING_INTERVAL = float(os.getenv("TURTLECOIND_POLLING_INTERVAL", "2"))  # seconds
TIMEOUT = float(os.getenv("TURTLECOIND_TIMEOUT", "2"))                    # seconds, per RPC call
MAX_POLLING_FAILURES = int(os.getenv("TURTLECOIND_MAX_POLLING_FAILURES", "3"))
CHECK_HEIGHT = _env_bool("TURTLECOIND_CHECK_HEIGHT", "True")
MAX_DEVIANCE = int(os.getenv("TURTLECOIND_MAX_DEVIANCE", "5"))            # blocks

#* --- Sanitation ---
CLEAR_DB_LOCK = _env_bool("TURTLECOIND_CLEAR_DB_LOCK", "True")
CLEAR_P2P_STATE = _env_bool("TURTLECOIND_CLEAR_P2P_STATE")
STALE_LOCK_RETRY_DELAY = 10  # seconds before start() is retried

#* --- Logging ---
VERBOSE_LOGGING = False
LOKI_ENABLED = _env_bool("LOKI_ENABLED")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    # Health checking
    "POLLING_INTERVAL", "TIMEOUT", "MAX_POLLING_FAILURES",
    "CHECK_HEIGHT", "MAX_DEVIANCE",
    # Sanitation
    "CLEAR_DB_LOCK", "CLEAR_P2P_STATE",
    # Logging
    "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
}
