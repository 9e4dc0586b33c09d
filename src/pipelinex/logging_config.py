import logging
import sys


class ColoredFormatter(logging.Formatter):
    """Level-coloured formatter for terminal output."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset,
    }

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno) if self.color else None
        if not log_fmt:
            log_fmt = self.format_str
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(level=logging.WARNING):
    """Send `pipelinex` log records to stderr; stdout is reserved for command output."""
    logger = logging.getLogger("pipelinex")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColoredFormatter(color=sys.stderr.isatty()))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    logger.debug("Logging initialized at %s", logging.getLevelName(level))
