import logging
import sys

SUPERVISOR_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
STAGE_LOGGER_PREFIX = 'proc.'


class MainFormatter(logging.Formatter):
    """
    Formats supervisor records with timestamp and level, and stderr lines of
    pipeline stages (loggers named `proc.<stage>`) as `[stage] line`.
    """

    def __init__(self) -> None:
        super().__init__(SUPERVISOR_FORMAT)

    def format(self, record):
        if record.name.startswith(STAGE_LOGGER_PREFIX):
            return f"[{record.name[len(STAGE_LOGGER_PREFIX):]}] {record.getMessage()}"
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger with a single stderr handler, replacing any
    handlers from an earlier call. Stdout is left alone: it carries the
    pipeline data.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(console_level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(console_level)
    stderr_handler.setFormatter(MainFormatter())
    root_logger.addHandler(stderr_handler)


def resolve_level(name: str) -> int:
    """Maps a level name such as 'debug' to its logging constant, falling back to INFO."""
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO
