from __future__ import annotations

import logging
from pathlib import Path
from typing import Final


DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILE_NAME: Final[str] = "run.log"


def configure_logging(
    level: int | str = logging.INFO,
    log_dir: str | Path | None = None,
) -> None:
    """Configure standard library logging for the publisher CLI.

    If log_dir is provided, logs are also appended to '<log_dir>/run.log'
    so that a failed run can be inspected before it is resumed.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_dir) / LOG_FILE_NAME, encoding="utf-8"))

    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT, handlers=handlers, force=True)
