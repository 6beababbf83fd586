# pyright: standard

"""rbackup: rbackup/__logger__.py
A common logger writing to the rich console and, optionally, the job log.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Initialize basic console and handler
cons = Console()
rich_handler = RichHandler(console=cons, show_path=False)
logger = logging.getLogger("rbackup")

LOG_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"


def create_logger(
    level: str = "INFO", log_file: str | Path | None = None, truncate: bool = False
) -> None:
    """Helper function to setup logging for one process.

    The job log is opened in append mode unless ``truncate`` is set, which
    starts it afresh. Calling again replaces the previous file handler.
    """
    # pylint: disable=global-statement
    global cons, rich_handler

    cons = Console(stderr=True)
    rich_handler = RichHandler(console=cons, show_path=False)
    handlers: list[logging.Handler] = [rich_handler]

    if log_file:
        file_handler = logging.FileHandler(
            log_file, mode="w" if truncate else "a", encoding="utf-8"
        )
        file_handler.setFormatter(
            logging.Formatter(LOG_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=handlers,
        force=True,
    )
    logger.setLevel(level)
