from __future__ import annotations

import math
from typing import Iterable, Iterator

from .models import TIME_STEP_TOLERANCE, divides


class TimeStepper:
    """Walks from *start* to *end* in steps of *dt*, stopping at every additional time.

    Regular points are ``start + k * dt`` so no round-off accumulates.  The
    last regular interval is shortened to land on *end* exactly.  An
    additional time that coincides with a regular point (or with another
    additional time) is visited once; times outside ``(start, end)`` are
    ignored.
    """

    def __init__(
        self,
        start: float,
        end: float,
        dt: float,
        enforce_constant_time_step: bool = False,
        additional_times: Iterable[float] | None = None,
    ) -> None:
        start = float(start)
        end = float(end)
        dt = float(dt)
        if end < start:
            raise ValueError(f"The simulation end time {end} is before the start time {start}.")
        if dt <= 0:
            raise ValueError("Time step must be positive.")
        if enforce_constant_time_step and not divides(dt, end - start):
            raise ValueError(
                "TimeStepper estimates non-constant timesteps will need to be used: "
                "check that your problem has a divisible time interval and time step."
            )
        self.start = start
        self.end = end
        self.dt = dt
        self._tolerance = TIME_STEP_TOLERANCE * max(1.0, abs(start), abs(end))

        stops: list[float] = []
        for t in sorted(float(t) for t in additional_times or ()):
            if t <= start + self._tolerance or t >= end - self._tolerance:
                continue
            if stops and t - stops[-1] <= self._tolerance:
                continue
            stops.append(t)
        self.additional_times = tuple(stops)

        self._time = start
        self._stop_index = 0
        self._steps_taken = 0
        self._next_time = self._compute_next_time()

    def _regular_point(self, k: int) -> float:
        return self.start + k * self.dt

    def _compute_next_time(self) -> float:
        if self.is_time_at_end():
            return self.end
        k = math.floor((self._time - self.start) / self.dt + TIME_STEP_TOLERANCE) + 1
        candidate = self._regular_point(k)
        if candidate - self._time <= self._tolerance:
            candidate = self._regular_point(k + 1)
        if self._stop_index < len(self.additional_times):
            candidate = min(candidate, self.additional_times[self._stop_index])
        if candidate >= self.end - self._tolerance:
            candidate = self.end
        return candidate

    def get_time(self) -> float:
        return self._time

    def get_next_time(self) -> float:
        return self._next_time

    def get_next_time_step(self) -> float:
        return self._next_time - self._time

    def is_time_at_end(self) -> bool:
        return self._time >= self.end - self._tolerance

    def get_total_time_steps_taken(self) -> int:
        return self._steps_taken

    def advance_one_time_step(self) -> None:
        """Move to the next stopping time; raises once the end has been reached."""
        if self.is_time_at_end():
            raise RuntimeError("TimeStepper incremented beyond end time.")
        self._steps_taken += 1
        self._time = self._next_time
        while (
            self._stop_index < len(self.additional_times)
            and self.additional_times[self._stop_index] <= self._time + self._tolerance
        ):
            self._stop_index += 1
        self._next_time = self._compute_next_time()

    def estimate_time_steps(self) -> int:
        """Number of intervals still to take, counting additional stops."""
        regular = int(math.floor((self.end - self.start) / self.dt + 0.5))
        off_grid = sum(1 for t in self.additional_times if not divides(self.dt, t - self.start, self._tolerance))
        return max(regular, 1 if self.end > self.start else 0) + off_grid

    def intervals(self) -> Iterator[tuple[float, float]]:
        """Yield ``(current, next)`` pairs, advancing after each one."""
        while not self.is_time_at_end():
            yield self._time, self._next_time
            self.advance_one_time_step()
