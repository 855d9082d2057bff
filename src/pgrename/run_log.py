"""Per-run log file: `[timestamp] [LEVEL] message`, one file per run."""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER_NAME = "pgrename"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


class _IsoFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")


def new_run_id() -> str:
    """Run-scoped identifier: UTC timestamp plus 8 random hex chars."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


class RunLog:
    """
    Attach an append-only log file to the pgrename logger for one run.

    Usage:
        with RunLog(log_dir) as run_log:
            logger.info("Step 1: Checking database state...")
        print(run_log.path)
    """

    def __init__(self, log_dir: Path, run_id: Optional[str] = None,
                 level: int = logging.DEBUG):
        self.log_dir = Path(log_dir)
        self.run_id = run_id or new_run_id()
        self.level = level
        self.path = self.log_dir / f"migration-log-{self.run_id}.txt"
        self._handler: Optional[logging.FileHandler] = None
        self._previous_level: Optional[int] = None

    def open(self) -> "RunLog":
        self.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        handler.setLevel(self.level)
        handler.setFormatter(_IsoFormatter(LOG_FORMAT))

        root = logging.getLogger(LOGGER_NAME)
        self._previous_level = root.level
        if root.level == logging.NOTSET or root.level > self.level:
            root.setLevel(self.level)
        root.addHandler(handler)
        self._handler = handler
        return self

    def close(self) -> None:
        if self._handler is None:
            return
        root = logging.getLogger(LOGGER_NAME)
        root.removeHandler(self._handler)
        self._handler.close()
        self._handler = None
        if self._previous_level is not None:
            root.setLevel(self._previous_level)

    def __enter__(self) -> "RunLog":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
