"""CSV rendering of rolling-window rows."""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Iterable, Optional

from ..core.models import DataPoint, format_time

CSV_HEADER = ("Time", "Turbidity", "TDS", "Temperature")


def _cell(value: Optional[float]) -> str:
    return "" if value is None else repr(value)


def render_csv(points: Iterable[DataPoint]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for point in points:
        writer.writerow(
            (
                format_time(point.time),
                _cell(point.turbidity),
                _cell(point.tds),
                _cell(point.temperature),
            )
        )
    return buffer.getvalue()


def export_csv(points: Iterable[DataPoint], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_csv(points), encoding="utf-8")
    return path
