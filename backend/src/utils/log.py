"""Process-wide logging setup."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "google.auth")


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    level_value = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level_value, format=LOG_FORMAT)
    root.setLevel(level_value)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level_value, logging.WARNING))
