import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import turtlecoind_ha.settings as default_settings
from turtlecoind_ha.local.errors import ConfigValidationError

log = logging.getLogger(__name__)

WILDCARD_BIND_IP = "0.0.0.0"
LOOPBACK_IP = "127.0.0.1"


class MergedSettings:
    """
    A singleton class that merges default settings with JSON overrides.

    This class provides a unified, attribute-based access point for all
    supervisor configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from `overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param overrides_path: Alternative location of the overrides file.
        """
        self._load_defaults()
        self.OVERRIDES_JSON_PATH: Path = overrides_path or default_settings.OVERRIDES_JSON_PATH
        self._load_overrides()

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from the settings.py module as defaults."""
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the `overrides.json` file.

        Only keys listed in `MODIFIABLE_SETTINGS` are applied; values are
        coerced to the type of the default they replace.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return

        log.info(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue

            original_value = getattr(self, key)
            try:
                if isinstance(original_value, bool):
                    value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
                elif original_value is not None:
                    value = type(original_value)(value)
            except (ValueError, TypeError) as e:
                log.error(f"Could not convert override '{key}'='{value}': {e}")
                continue
            setattr(self, key, value)
            log.debug(f"Overridden setting: {key} = {value}")

    def as_dict(self) -> Dict[str, Any]:
        """Returns every upper-case setting as a dictionary."""
        return {key: getattr(self, key) for key in dir(self) if key.isupper()}


@dataclass(frozen=True)
class NodeConfig:
    """Immutable configuration of one supervised TurtleCoind instance."""

    path: Path
    data_dir: Path
    testnet: bool = False
    enable_cors: Optional[str] = None
    enable_block_explorer: bool = False
    load_checkpoints: Optional[str] = None
    rpc_bind_ip: str = LOOPBACK_IP
    rpc_bind_port: int = 11898
    p2p_bind_ip: Optional[str] = None
    p2p_bind_port: Optional[int] = None
    p2p_external_port: Optional[int] = None
    allow_local_ip: bool = False
    peers: Tuple[str, ...] = field(default_factory=tuple)
    priority_nodes: Tuple[str, ...] = field(default_factory=tuple)
    exclusive_nodes: Tuple[str, ...] = field(default_factory=tuple)
    seed_node: Optional[str] = None
    hide_my_port: bool = False
    db_threads: Optional[int] = None
    db_max_open_files: Optional[int] = None
    db_write_buffer_size: Optional[int] = None
    db_read_cache_size: Optional[int] = None
    polling_interval: float = 2.0
    timeout: float = 2.0
    max_polling_failures: int = 3
    check_height: bool = True
    max_deviance: int = 5
    clear_db_lock: bool = True
    clear_p2p_state: bool = False
    stale_lock_retry_delay: float = 10.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        object.__setattr__(self, "data_dir", Path(self.data_dir))
        for name in ("peers", "priority_nodes", "exclusive_nodes"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))

        if self.polling_interval <= 0:
            raise ConfigValidationError(f"polling_interval must be positive, got {self.polling_interval}")
        if self.timeout <= 0:
            raise ConfigValidationError(f"timeout must be positive, got {self.timeout}")
        if self.max_polling_failures < 1:
            raise ConfigValidationError(f"max_polling_failures must be at least 1, got {self.max_polling_failures}")
        if self.max_deviance < 0:
            raise ConfigValidationError(f"max_deviance cannot be negative, got {self.max_deviance}")
        if self.stale_lock_retry_delay < 0:
            raise ConfigValidationError(f"stale_lock_retry_delay cannot be negative, got {self.stale_lock_retry_delay}")

    @property
    def rpc_query_ip(self) -> str:
        """The address health queries are sent to; a wildcard bind is reached via loopback."""
        return LOOPBACK_IP if self.rpc_bind_ip == WILDCARD_BIND_IP else self.rpc_bind_ip

    @property
    def down_window(self) -> float:
        """How long failures must persist before the daemon is declared down."""
        return self.polling_interval * self.max_polling_failures

    @property
    def shutdown_grace_period(self) -> float:
        return self.timeout * 2

    @classmethod
    def from_settings(cls, settings: Any) -> "NodeConfig":
        """
        Builds the configuration from a settings object (module or MergedSettings).

        :param settings: Any object exposing the upper-case settings as attributes.
        :return NodeConfig: The validated, immutable configuration.
        """
        return cls(
            path=settings.TURTLECOIND_PATH,
            data_dir=settings.DATA_DIR,
            testnet=settings.TESTNET,
            enable_cors=settings.ENABLE_CORS,
            enable_block_explorer=settings.ENABLE_BLOCK_EXPLORER,
            load_checkpoints=settings.LOAD_CHECKPOINTS,
            rpc_bind_ip=settings.RPC_BIND_IP,
            rpc_bind_port=settings.RPC_BIND_PORT,
            p2p_bind_ip=settings.P2P_BIND_IP,
            p2p_bind_port=settings.P2P_BIND_PORT,
            p2p_external_port=settings.P2P_EXTERNAL_PORT,
            allow_local_ip=settings.ALLOW_LOCAL_IP,
            peers=settings.PEERS,
            priority_nodes=settings.PRIORITY_NODES,
            exclusive_nodes=settings.EXCLUSIVE_NODES,
            seed_node=settings.SEED_NODE,
            hide_my_port=settings.HIDE_MY_PORT,
            db_threads=settings.DB_THREADS,
            db_max_open_files=settings.DB_MAX_OPEN_FILES,
            db_write_buffer_size=settings.DB_WRITE_BUFFER_SIZE,
            db_read_cache_size=settings.DB_READ_CACHE_SIZE,
            polling_interval=settings.POLLING_INTERVAL,
            timeout=settings.TIMEOUT,
            max_polling_failures=settings.MAX_POLLING_FAILURES,
            check_height=settings.CHECK_HEIGHT,
            max_deviance=settings.MAX_DEVIANCE,
            clear_db_lock=settings.CLEAR_DB_LOCK,
            clear_p2p_state=settings.CLEAR_P2P_STATE,
            stale_lock_retry_delay=settings.STALE_LOCK_RETRY_DELAY,
        )


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
