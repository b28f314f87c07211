import logging
import sys
from contextlib import suppress
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_installed = []


def setup_logging(level=logging.INFO, log_file=None) -> logging.Logger:
    """Log to stdout and, if ``log_file`` is given, to that file as well.

    Handlers are attached to the root logger once; calling again only
    updates the level.
    """
    root = logging.getLogger()
    root.setLevel(level)

    if _installed:
        return root

    formatter = logging.Formatter(LOG_FORMAT)

    # stdout so systemd/journalctl picks it up too
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    _installed.append(stream_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)
    return root


def shutdown_logging():
    """Flush and detach the handlers installed by ``setup_logging``."""
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        with suppress(OSError, ValueError):
            handler.flush()
            handler.close()
        root.removeHandler(handler)
