import sys
import logging

from turtlecoind_ha.local.config import effective_settings as config
from turtlecoind_ha.log.handler import LokiHandler

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """Formats supervisor records; TurtleCoind console lines (`proc.*` loggers) are passed through as printed."""

    def format(self, record):
        if record.name.startswith('proc.'):
            return record.getMessage()
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Installs the supervisor's log handlers on the root logger: stdout, and
    Grafana Loki when `LOKI_ENABLED` is set. Handlers from an earlier call
    are closed and replaced.

    :param console_level: Level for the stdout handler (e.g. logging.INFO).
    """
    root_logger = logging.getLogger()
    # Handlers filter by level; the root lets everything through.
    root_logger.setLevel(logging.DEBUG)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    #* --- Console ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    #* --- Loki (optional) ---
    if not config.LOKI_ENABLED:
        return
    try:
        loki_handler = LokiHandler(
            url=config.LOKI_URL,
            org_id=config.LOKI_ORG_ID,
            flush_interval=config.LOG_BUFFER_FLUSH_INTERVAL,
            batch_size=config.LOG_BUFFER_SIZE,
        )
    except (OSError, RuntimeError) as e:
        root_logger.error(f"Could not start the Grafana Loki handler: {e}")
        return
    loki_handler.setLevel(logging.INFO)
    loki_handler.setFormatter(MainFormatter(LOG_FORMAT))
    root_logger.addHandler(loki_handler)
    root_logger.info(f"Shipping logs to Grafana Loki at {config.LOKI_URL}.")
