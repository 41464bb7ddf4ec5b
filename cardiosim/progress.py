from __future__ import annotations

import logging
from pathlib import Path

from .parallel import ProcessGroup, default_group


logger = logging.getLogger(__name__)

PROGRESS_FILENAME = "progress_status.txt"


class ProgressReporter:
    """Appends coarse progress lines to ``progress_status.txt`` on rank 0."""

    def __init__(self, directory: Path, start_time: float, end_time: float, group: ProcessGroup | None = None) -> None:
        self.group = group or default_group()
        self.start_time = float(start_time)
        self.end_time = float(end_time)
        self.path = Path(directory) / PROGRESS_FILENAME
        self._last_percent = -1
        self._handle = None
        if self.group.is_master:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8")
        self._write("Starting to solve")

    def _write(self, line: str) -> None:
        logger.debug("Progress: %s", line)
        if self._handle is not None:
            self._handle.write(line + "\n")
            self._handle.flush()

    def update(self, time: float) -> None:
        span = self.end_time - self.start_time
        fraction = 1.0 if span <= 0 else (time - self.start_time) / span
        percent = int(min(max(fraction, 0.0), 1.0) * 100)
        if percent > self._last_percent:
            self._last_percent = percent
            self._write(f"{percent}% completed")

    def print_finalising_message(self) -> None:
        self._write("Finalising")

    def close(self, completed: bool = True) -> None:
        if self._handle is None:
            return
        if completed:
            self._write("Completed")
        self._handle.close()
        self._handle = None
