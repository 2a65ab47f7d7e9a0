import logging
import sys

from workerpool.config import effective_settings as config
from workerpool.log.handler import LokiHandler

DEFAULT_FORMAT = '%(asctime)s.%(msecs)03d - %(levelname)-8s - [%(name)s] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class MainFormatter(logging.Formatter):
    """A formatter for regular logs that passes captured worker output through untouched."""

    def __init__(self) -> None:
        super().__init__(DEFAULT_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record):
        # Worker output captured by the launcher is already a full line.
        if record.name.startswith('proc.'):
            return record.getMessage()
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the application.
    This sets up a console handler and optionally Loki, clearing any
    previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(url=config.LOKI_URL, org_id=config.LOKI_ORG_ID)
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(logging.Formatter('%(message)s'))
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
