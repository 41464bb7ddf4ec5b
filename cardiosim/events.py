from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator


logger = logging.getLogger(__name__)


class Event(str, Enum):
    EVERYTHING = "Total"
    READ_MESH = "ReadMesh"
    INITIALISE = "Initialise"
    COMMUNICATION = "Comms"
    SOLVE = "Solve"
    WRITE_OUTPUT = "Output"
    POST_PROC = "PostProc"
    DATA_CONVERSION = "DataConv"


class EventTimer:
    """Wall-clock totals per event, owned by a single problem."""

    def __init__(self) -> None:
        self._started: dict[Event, float] = {}
        self._totals: dict[Event, float] = {event: 0.0 for event in Event}

    def begin_event(self, event: Event) -> None:
        if event in self._started:
            raise RuntimeError(f"Event {event.value} has already been started.")
        self._started[event] = time.perf_counter()

    def end_event(self, event: Event) -> None:
        started = self._started.pop(event, None)
        if started is None:
            raise RuntimeError(f"Event {event.value} has not been started.")
        self._totals[event] += time.perf_counter() - started

    def is_running(self, event: Event) -> bool:
        return event in self._started

    @contextmanager
    def timed(self, event: Event) -> Iterator[None]:
        self.begin_event(event)
        try:
            yield
        finally:
            self.end_event(event)

    def elapsed(self, event: Event) -> float:
        total = self._totals[event]
        started = self._started.get(event)
        if started is not None:
            total += time.perf_counter() - started
        return total

    def reset(self) -> None:
        self._started.clear()
        for event in Event:
            self._totals[event] = 0.0

    def report(self) -> dict[str, float]:
        totals = {event.value: self.elapsed(event) for event in Event}
        logger.info("Timings: %s", ", ".join(f"{name}={secs:.3g}s" for name, secs in totals.items()))
        return totals
