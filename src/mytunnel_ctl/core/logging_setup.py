"""Logging configuration.

File logs always capture DEBUG so a failed run can be inspected afterwards;
the console only shows warnings unless `-v` is given.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from rich.logging import RichHandler

from mytunnel_ctl.core.storage import get_logs_dir

LOG_FILE = "mytunnel-ctl.log"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(*, verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = RichHandler(show_path=False, rich_tracebacks=verbose)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console)

    logs_dir = get_logs_dir()
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILE,
            maxBytes=1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError:
        logging.getLogger(__name__).warning("File logging disabled: cannot write to %s", logs_dir)
        return
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    root.addHandler(file_handler)
