import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/txbench.log")

# Third-party loggers and the level they are held to
QUIET = {
    "fastapi": "INFO",
    "uvicorn.access": "WARNING",
    "xrpl": "WARNING",
    "websockets": "WARNING",
    "httpx": "WARNING",
}

HANDLERS = ["console", "file"]


def build_logging_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "bench",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "bench",
            "filename": log_file,
            "mode": "a",
        }
    used = [h for h in HANDLERS if h in handlers]

    loggers = {name: {"level": lvl, "handlers": used, "propagate": False} for name, lvl in QUIET.items()}
    loggers["txbench"] = {"level": level, "handlers": used, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "bench": {
                "format": "%(asctime)s.%(msecs)03d %(levelname)-7s [%(name)s] %(message)s",
                "datefmt": "%H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": used},
    }


def setup_logging(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> None:
    """Route ``txbench.*`` to stdout and ``log_file`` (skipped when empty)."""
    logging.config.dictConfig(build_logging_config(level, log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
