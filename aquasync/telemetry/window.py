"""Fixed-capacity rolling windows of merged sensor rows."""

from __future__ import annotations

from typing import Iterable, Iterator, List

from ..core.models import DataPoint, SensorSample


class RollingWindow:
    """Ordered buffer of at most ``capacity`` rows, oldest first.

    Readings for different sensors that arrive as separate messages are
    coalesced into the latest row until a sensor repeats, at which point a
    new row is started. A producer that repeats the same sensor in a tight
    loop therefore yields one reading per row.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("Window capacity must be at least 1")
        self._capacity = capacity
        self._points: List[DataPoint] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[DataPoint]:
        return iter(self.snapshot())

    @property
    def latest(self) -> DataPoint | None:
        return self._points[-1].copy() if self._points else None

    def merge(self, point: DataPoint) -> None:
        if not point.kinds():
            raise ValueError("Data point carries no readings")

        if self._points:
            last = self._points[-1]
            if not point.kinds() <= last.kinds():
                self._points[-1] = last.merge(point)
                return

        self._points.append(point.copy())
        del self._points[: -self._capacity]

    def add_sample(self, sample: SensorSample) -> None:
        self.merge(DataPoint.from_sample(sample))

    def seed(self, points: Iterable[DataPoint]) -> None:
        """Prepend replayed rows, keeping the newest ``capacity`` overall."""

        replayed = [point.copy() for point in points]
        self._points = (replayed + self._points)[-self._capacity:]

    def snapshot(self) -> List[DataPoint]:
        return [point.copy() for point in self._points]

    def clear(self) -> None:
        self._points.clear()
