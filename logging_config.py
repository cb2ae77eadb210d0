from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _handler(path: Path, level: int) -> RotatingFileHandler:
    fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    fh.setLevel(level)
    return fh


def setup_logging(logs_dir: Optional[str] = None, level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        return

    console = logging.StreamHandler()
    console.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(console)

    if not logs_dir:
        return

    path = Path(logs_dir)
    path.mkdir(parents=True, exist_ok=True)
    root.addHandler(_handler(path / "app.log", logging.INFO))
    root.addHandler(_handler(path / "errors.log", logging.ERROR))

    ledger_handler = _handler(path / "ledger.log", logging.INFO)
    logging.getLogger("agri.ledger").addHandler(ledger_handler)
    logging.getLogger("agri.ledger").setLevel(logging.INFO)
