from __future__ import annotations

import logging
import sys


class _ThirdPartyFilter(logging.Filter):
    """Keep reminder_engine logs; only warnings and up from other libraries."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("reminder_engine"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: str | int = logging.INFO) -> None:
    """Configure one stderr handler on the root logger.

    Call once at process start, before the first log line.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    stream = logging.StreamHandler(sys.stderr)
    stream.setLevel(level)
    stream.setFormatter(formatter)
    stream.addFilter(_ThirdPartyFilter())
    root.addHandler(stream)

    logging.captureWarnings(True)
