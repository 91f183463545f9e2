import asyncio
import logging
import setproctitle

from turtlecoind_ha.local.config import NodeConfig, effective_settings
from turtlecoind_ha.local.errors import FatalConfigError
from turtlecoind_ha.local.service import NodeService
from turtlecoind_ha.local.supervisor.process_utils import build_command
from turtlecoind_ha.local.supervisor.sanitation import check_binary, db_lock_path, p2p_state_path

log = logging.getLogger(__name__)

PROCESS_TITLE = "TurtleCoind-HA - Supervisor"


def load_node_config() -> NodeConfig:
    """Builds the node configuration from the merged settings."""
    return NodeConfig.from_settings(effective_settings)


def run_service() -> int:
    """
    Runs the supervisor in the foreground until interrupted.

    :return int: The exit status for the console.
    """
    setproctitle.setproctitle(PROCESS_TITLE)
    service = NodeService(load_node_config())
    log.info("=" * 20 + " TurtleCoind Supervisor Starting " + "=" * 20)
    try:
        return asyncio.run(service.run())
    except KeyboardInterrupt:
        log.info("Supervisor interrupted by user.")
        return 130


def check_configuration() -> bool:
    """
    Validates that the daemon binary exists and reports the state of the data directory.

    :return bool: True if the daemon can be launched, otherwise False.
    """
    log.info("Performing configuration and path validation...")
    config = load_node_config()
    try:
        check_binary(config)
        log.info(f"Config Check OK: Found TurtleCoind at '{config.path}'")
    except FatalConfigError as e:
        log.error(f"CONFIG CHECK FAILED: {e}")
        return False

    if config.data_dir.is_dir():
        log.info(f"Config Check OK: Data directory '{config.data_dir}' exists.")
    else:
        log.warning(f"Data directory '{config.data_dir}' does not exist yet. It will be created on start.")
    if db_lock_path(config).exists():
        action = "removed" if config.clear_db_lock else "left in place (auto-clear disabled)"
        log.warning(f"Stale database lock '{db_lock_path(config)}' found. It will be {action} on start.")
    if config.clear_p2p_state and p2p_state_path(config).exists():
        log.info(f"Peer state '{p2p_state_path(config)}' will be removed on start.")
    return True


def show_args() -> None:
    """Prints the command line the supervisor launches TurtleCoind with."""
    print(" ".join(build_command(load_node_config())))


def show_config() -> None:
    """Displays the effective settings and which of them can be overridden."""
    print("\n--- Current Supervisor Configuration ---")
    print(f"(Overrides file: {effective_settings.OVERRIDES_JSON_PATH})")
    for key, value in sorted(effective_settings.as_dict().items()):
        if key in ("MODIFIABLE_SETTINGS", "BASE_DIR", "OVERRIDES_JSON_PATH"):
            continue
        marker = "*" if key in effective_settings.MODIFIABLE_SETTINGS else " "
        print(f" {marker} {key} = {value}")
    print("---")
    print("Settings marked with '*' can be changed in the overrides file.")
    print("----------------------------------------\n")


def toggle_verbose_logging(enabled: bool) -> None:
    """Sets the console handler to DEBUG (enabled) or INFO."""
    effective_settings.VERBOSE_LOGGING = enabled
    new_level = logging.DEBUG if enabled else logging.INFO
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setLevel(new_level)
            break


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  run                    - Launch TurtleCoind and keep it healthy (default).")
    print("  check-config           - Validate the TurtleCoind binary path and data directory.")
    print("  args                   - Print the TurtleCoind command line.")
    print("  config                 - Show the effective configuration.")
    print("  help                   - Show this help message.")
    print("\nOptions:")
    print("  --verbose              - Show DEBUG log output in the console.")
    print()
