"""Typed records shared by the telemetry and control pipelines."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .. import constants

LOGGER = logging.getLogger(__name__)

TimeValue = Union[datetime, str]


class SensorKind(str, Enum):
    TURBIDITY = "turbidity"
    TDS = "tds"
    TEMPERATURE = "temperature"

    @property
    def topic(self) -> str:
        return f"{constants.SENSOR_TOPIC_PREFIX}/{self.value}"

    @property
    def replica_path(self) -> str:
        return f"{constants.SENSOR_TOPIC_PREFIX}/{self.value}"

    @classmethod
    def from_segment(cls, segment: str) -> Optional["SensorKind"]:
        try:
            return cls(segment)
        except ValueError:
            return None


SENSOR_TOPICS: List[str] = [kind.topic for kind in SensorKind]


@dataclass(frozen=True, slots=True)
class SensorSample:
    """One decoded reading, stamped with the receive time."""

    kind: SensorKind
    value: float
    observed_at: datetime


@dataclass(slots=True)
class DataPoint:
    """A single rolling-window row.

    Fields that were never reported stay ``None`` so charts render a gap
    rather than a zero.
    """

    time: TimeValue
    turbidity: Optional[float] = None
    tds: Optional[float] = None
    temperature: Optional[float] = None

    @classmethod
    def from_sample(cls, sample: SensorSample) -> "DataPoint":
        point = cls(time=sample.observed_at)
        setattr(point, sample.kind.value, sample.value)
        return point

    def get(self, kind: SensorKind) -> Optional[float]:
        return getattr(self, kind.value)

    def kinds(self) -> frozenset[SensorKind]:
        return frozenset(kind for kind in SensorKind if self.get(kind) is not None)

    def merge(self, other: "DataPoint") -> "DataPoint":
        """Return the field-wise union, with ``other`` winning where it is defined."""

        merged = replace(self, time=other.time)
        for kind in other.kinds():
            setattr(merged, kind.value, other.get(kind))
        return merged

    def copy(self) -> "DataPoint":
        return replace(self)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "time": format_time(self.time),
            "turbidity": self.turbidity,
            "tds": self.tds,
            "temperature": self.temperature,
        }


def format_time(value: TimeValue) -> str:
    if isinstance(value, datetime):
        return value.astimezone().strftime("%H:%M:%S")
    return str(value)


@dataclass(frozen=True, slots=True)
class ControlState:
    """Operator-set control record mirrored to the replica.

    ``time_left`` is ``None`` when no countdown has been started.
    """

    hour: str = ""
    mode: str = ""
    time_left: Optional[int] = field(default=None)

    @classmethod
    def from_record(cls, record: Optional[Mapping[str, Any]]) -> "ControlState":
        if not isinstance(record, Mapping):
            return cls()
        return cls(
            hour=_coerce_text(record.get("hour")),
            mode=_coerce_text(record.get("mode")),
            time_left=_coerce_seconds(record.get("timeLeft")),
        )

    def as_record(self) -> Dict[str, Any]:
        return {"hour": self.hour, "mode": self.mode, "timeLeft": self.time_left}


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_seconds(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            LOGGER.warning("Ignoring non-integer timeLeft %r from replica", value)
            return None
        value = int(value)
    if not isinstance(value, int):
        LOGGER.warning("Ignoring malformed timeLeft %r from replica", value)
        return None
    if value < 0:
        LOGGER.warning("Ignoring negative timeLeft %r from replica", value)
        return None
    return value
