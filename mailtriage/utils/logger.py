import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _log_dir() -> str:
    override = os.environ.get("MAILTRIAGE_LOG_DIR")
    if override:
        return override
    return os.path.join(os.path.expanduser("~"), ".mailtriage", "logs")


def setup_logger(name="mailtriage", level=logging.INFO):
    """
    Configure the application logger: rotating file plus stderr.

    Module loggers (``mailtriage.core.*``) propagate to this one. Calling it
    twice does not duplicate handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if getattr(logger, "_mailtriage_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    # Max 5MB, keep 3 backups
    try:
        log_dir = _log_dir()
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "pipeline.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        sys.stderr.write(f"mailtriage: file logging disabled ({e})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    logger._mailtriage_configured = True
    return logger


def set_level(level_name: str) -> None:
    """Apply a level name from config (``"DEBUG"``, ``"INFO"``...)."""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        logger.setLevel(level)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record with the run correlation id."""

    def process(self, msg, kwargs):
        return f"[run={self.extra['run_id']}] {msg}", kwargs


def get_run_logger(run_id: str, name: str = "mailtriage.run") -> RunLoggerAdapter:
    return RunLoggerAdapter(logging.getLogger(name), {"run_id": run_id})


logger = setup_logger()
