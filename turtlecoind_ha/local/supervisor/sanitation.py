import logging
from enum import Enum
from pathlib import Path
from typing import Callable

from turtlecoind_ha.local.config import NodeConfig
from turtlecoind_ha.local.errors import FatalConfigError, TransientStartupError

log = logging.getLogger(__name__)

DB_LOCK_RELATIVE_PATH = Path("DB") / "LOCK"
P2P_STATE_FILE_NAME = "p2pstate.bin"


class SanitationVerdict(Enum):
    PROCEED = "proceed"
    RETRY = "retry"


def db_lock_path(config: NodeConfig) -> Path:
    return config.data_dir / DB_LOCK_RELATIVE_PATH


def p2p_state_path(config: NodeConfig) -> Path:
    return config.data_dir / P2P_STATE_FILE_NAME


def check_binary(config: NodeConfig) -> None:
    """
    Validates that the daemon binary exists at its configured path.

    :raises FatalConfigError: If it does not.
    """
    if not config.path.is_file():
        raise FatalConfigError(f"TurtleCoind not found at '{config.path}'")
    log.debug(f"Config Check OK: Found TurtleCoind at '{config.path}'")


def clear_stale_lock(config: NodeConfig, info: Callable[[str], None], error: Callable[[Exception], None]) -> SanitationVerdict:
    """
    Handles a database lock left behind by a previous run.

    With auto-clear enabled the lock is deleted; either way the caller must
    retry start() after the configured delay.

    :param config: The node configuration.
    :param info: Receives informational messages for the `info` signal.
    :param error: Receives a TransientStartupError when the lock is kept.
    :return SanitationVerdict: RETRY if a lock was found, PROCEED otherwise.
    """
    lock_path = db_lock_path(config)
    if not lock_path.exists():
        return SanitationVerdict.PROCEED

    if config.clear_db_lock:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            log.debug(f"Database lock '{lock_path}' vanished before it could be removed.")
        except OSError as e:
            message = f"Could not remove stale database lock '{lock_path}': {e}"
            log.error(message)
            error(TransientStartupError(message))
            return SanitationVerdict.RETRY
        message = (f"Removed stale database lock '{lock_path}'. "
                   f"Restarting TurtleCoind in {config.stale_lock_retry_delay:g}s...")
        log.warning(message)
        info(message)
    else:
        message = (f"Database lock '{lock_path}' exists and auto-clearing is disabled. "
                   f"Retrying in {config.stale_lock_retry_delay:g}s...")
        log.warning(message)
        error(TransientStartupError(message))
    return SanitationVerdict.RETRY


def ensure_data_dir(config: NodeConfig, info: Callable[[str], None]) -> None:
    """Creates the data directory on the first run."""
    if config.data_dir.is_dir():
        return
    log.warning(f"Data directory '{config.data_dir}' does not exist. Creating it.")
    config.data_dir.mkdir(parents=True, exist_ok=True)
    info(f"Data directory '{config.data_dir}' was created. This looks like a first run; "
         "the initial synchronization with the network will take a while.")


def clear_p2p_state(config: NodeConfig, info: Callable[[str], None]) -> None:
    """Deletes the saved peer list so the daemon rediscovers peers on this launch."""
    if not config.clear_p2p_state:
        return
    state_path = p2p_state_path(config)
    if state_path.exists():
        state_path.unlink(missing_ok=True)
        info(f"Removed peer state '{state_path}' to force fresh peer discovery.")


def sanitize(config: NodeConfig, info: Callable[[str], None], error: Callable[[Exception], None]) -> SanitationVerdict:
    """
    Runs every pre-start check in order: binary, stale lock, data directory, peer state.

    :param config: The node configuration.
    :param info: Receives informational messages.
    :param error: Receives non-fatal startup errors.
    :return SanitationVerdict: Whether to spawn now or retry later.
    :raises FatalConfigError: If the daemon binary is missing.
    """
    check_binary(config)
    if clear_stale_lock(config, info, error) is SanitationVerdict.RETRY:
        return SanitationVerdict.RETRY
    ensure_data_dir(config, info)
    clear_p2p_state(config, info)
    return SanitationVerdict.PROCEED
