import sys
import logging

from turtlecoind_ha.log.setup import setup_logging
import turtlecoind_ha.local.console as console
from turtlecoind_ha.local.console.handler import toggle_verbose_logging

log = logging.getLogger("console")


def main(argv=None) -> int:
    """The main entry point for the supervisor console."""
    argv = list(sys.argv[1:] if argv is None else argv)

    setup_logging(logging.INFO)

    if "--verbose" in argv:
        argv.remove("--verbose")
        toggle_verbose_logging(True)

    command, args = (argv[0].lower(), argv[1:]) if argv else ("run", [])
    try:
        return console.execute_command(command, args)
    except Exception as e:
        log.critical(f"An unexpected error occurred in the console: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
