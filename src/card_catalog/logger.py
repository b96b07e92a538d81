import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "card_catalog"
CONSOLE_HANDLER = "card_catalog.console"
FILE_HANDLER = "card_catalog.file"


def setup_logging(log_dir: Optional[Union[Path, str]] = None, level: int = logging.INFO, console: bool = True) -> logging.Logger:
    """Attach console and ``app.log`` handlers to the package logger.

    Console output goes to stderr; stdout is left to command output such as
    ``recognize --json``. A repeat call replaces the handlers of the previous
    one, so the log directory follows the latest config.
    """
    log_dir = Path(log_dir) if log_dir else Path.cwd() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if handler.get_name() in (CONSOLE_HANDLER, FILE_HANDLER):
            logger.removeHandler(handler)
            handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.set_name(CONSOLE_HANDLER)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)-8s] %(message)s", datefmt="%H:%M:%S"))
        logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_dir / "app.log", encoding="utf-8")
    file_handler.set_name(FILE_HANDLER)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)-8s] %(name)s: %(message)s"))
    logger.addHandler(file_handler)
    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    return logging.getLogger(name)
