"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from braid.logging import setup_logging


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


class TestSetupLogging:
    def test_writes_jsonl_with_extras(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logging.getLogger("braid.engine").info(
            "Processed issues.opened",
            extra={"installation": "acme", "delivery_id": "d-1", "duration_ms": 12.5},
        )
        _flush(logger)
        record = _records(tmp_path / "braid.log")[-1]
        assert record["msg"] == "Processed issues.opened"
        assert record["logger"] == "braid.engine"
        assert record["installation"] == "acme"
        assert record["delivery_id"] == "d-1"
        assert record["duration_ms"] == 12.5
        assert "issue_id" not in record

    def test_exception_message_recorded(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("Webhook handler failed", extra={"installation": "acme"})
        _flush(logger)
        record = _records(tmp_path / "braid.log")[-1]
        assert record["level"] == "ERROR"
        assert record["exception"] == "boom"

    def test_idempotent_setup(self, tmp_path: Path) -> None:
        logger1 = setup_logging(tmp_path)
        logger2 = setup_logging(tmp_path)
        assert logger1 is logger2
        assert len([h for h in logger1.handlers if isinstance(h, logging.FileHandler)]) == 1

    def test_switching_directory_replaces_handler(self, tmp_path: Path) -> None:
        first = tmp_path / "one"
        second = tmp_path / "two"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        logger = setup_logging(second)
        logger.info("moved")
        _flush(logger)
        handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(handlers) == 1
        assert handlers[0].baseFilename == str(second / "braid.log")
        assert _records(second / "braid.log")[-1]["msg"] == "moved"
