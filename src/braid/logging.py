"""JSONL logging for braid, written to ``.braid/braid.log``.

One record per line. Sync code attaches context through ``extra=``::

    logger.info("Applied %s", action, extra={"installation": inst.id, "delivery_id": delivery})

Only the keys in ``CONTEXT_FIELDS`` are copied into the record; anything else
passed via ``extra=`` is ignored, so tokens and secrets cannot leak through it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "braid.log"
ROTATE_BYTES = 5 * 1024 * 1024
ROTATE_KEEP = 3
CONTEXT_FIELDS = ("installation", "delivery_id", "issue_id", "duration_ms", "error")

_lock = threading.Lock()


class _JsonlFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info is not None and record.exc_info[1] is not None:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def _file_handlers(logger: logging.Logger) -> list[RotatingFileHandler]:
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]


def setup_logging(braid_dir: Path, *, level: int = logging.INFO) -> logging.Logger:
    """Route the ``braid`` logger hierarchy to *braid_dir*/braid.log.

    Calling it again for the same directory is a no-op. Pointing it at a
    different directory closes the old handler first, so a long-lived process
    that switches projects never writes to two logs.
    """
    logger = logging.getLogger("braid")
    path = braid_dir / LOG_FILENAME
    wanted = os.path.abspath(str(path))

    with _lock:
        current = _file_handlers(logger)
        if any(h.baseFilename == wanted for h in current):
            return logger
        for stale in current:
            logger.removeHandler(stale)
            stale.close()

        handler = RotatingFileHandler(str(path), maxBytes=ROTATE_BYTES, backupCount=ROTATE_KEEP, encoding="utf-8")
        handler.setFormatter(_JsonlFormatter())
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
