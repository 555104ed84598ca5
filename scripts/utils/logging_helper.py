"""Logging setup shared by the movement and zone-risk scripts."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: int = logging.INFO, log_file: Path | str | None = None) -> None:
    """Configure the root logger with a stdout handler and an optional file handler.

    Existing root handlers are removed so repeated calls (e.g. from tests or a
    notebook) do not duplicate output.

    Args:
        level: Root logging level.
        log_file: Optional path of a UTF-8 log file; parent folders are created.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(LOG_FORMAT)

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    root.addHandler(sh)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
        logging.info("Logging to: %s", log_path)
