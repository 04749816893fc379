"""
Logging setup shared by the relay modules.

One idempotent root configuration: a console handler, an optional file handler and a
single format. Modules obtain their logger through ``get_logger(__name__)``.
"""
import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_INITIALIZED = False


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None, force: bool = False) -> None:
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(DEFAULT_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))
    # uvicorn's access log is noisy for long lived websockets
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
