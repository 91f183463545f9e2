import logging
from typing import List

from turtlecoind_ha.local.console.handler import check_configuration, print_help, run_service, show_args, show_config

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single console command.

    :param command: The main command string (e.g., 'run', 'check-config').
    :param args: A list of arguments for the command.
    :return int: The exit status for the process.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "run": run_service,
        "check-config": lambda: 0 if check_configuration() else 1,
        "args": show_args,
        "config": show_config,
        "help": print_help,
    }

    if command not in command_map:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 2

    result = command_map[command]()
    return result if isinstance(result, int) else 0
