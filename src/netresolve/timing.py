"""Phase timing records for resolution diagnostics."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator


class Timepoints:
    """Ordered ``(path, timestamp)`` records.

    ``group`` nests the names of the points added inside it, so that a
    resolution produces entries such as
    ``("compute_system_network", "merge", "start")``.
    """

    def __init__(self) -> None:
        self.points: list[tuple[tuple[str, ...], float]] = []
        self._prefix: list[str] = []

    def add(self, *path: str) -> None:
        self.points.append((tuple(self._prefix) + path, time.monotonic()))

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        self.add(name, "start")
        self._prefix.append(name)
        try:
            yield
        finally:
            self._prefix.pop()
            self.add(name, "done")

    def merge(self, other: Timepoints) -> None:
        self.points.extend(other.points)
        self.points.sort(key=lambda point: point[1])
        other.points.clear()

    def clear(self) -> None:
        self.points.clear()

    def format(self) -> str:
        if not self.points:
            return ""
        origin = self.points[0][1]
        return "\n".join(
            f"{timestamp - origin:8.4f}s  {'/'.join(path)}" for path, timestamp in self.points
        )
