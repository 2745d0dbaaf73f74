import logging
import sys


class MainFormatter(logging.Formatter):
    """Formats orchestrator status lines with time, level and logger name."""

    FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'

    def __init__(self) -> None:
        super().__init__(self.FORMAT)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the application.
    This sets up the console handler, clearing any previously configured
    handlers to prevent duplication.

    Output of the supervised processes does not go through logging; it is
    passed through to the standard streams unchanged.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # Pool/connection chatter from requests is noise during readiness polling.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
