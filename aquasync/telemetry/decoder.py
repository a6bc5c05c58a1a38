"""Decoding of raw sensor messages into typed samples."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Union

from ..core.models import SensorKind, SensorSample

Clock = Callable[[], datetime]

_DECIMAL = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


class RejectReason(str, Enum):
    UNKNOWN_SENSOR_KIND = "unknown_sensor_kind"
    INVALID_VALUE = "invalid_value"


@dataclass(frozen=True, slots=True)
class Rejected:
    """A message that could not be turned into a sample."""

    reason: RejectReason
    topic: str
    detail: str = ""


DecodeResult = Union[SensorSample, Rejected]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode(
    topic: str, payload: bytes | str, *, clock: Optional[Clock] = None
) -> DecodeResult:
    """Decode ``payload`` received on ``topic``.

    The sensor kind is the second segment of the topic (``sensor/tds``) and
    the payload is a UTF-8 decimal literal. The source protocol carries no
    timestamp, so the sample is stamped with the receive time.
    """

    segments = topic.split("/")
    kind = SensorKind.from_segment(segments[1]) if len(segments) > 1 else None
    if kind is None:
        return Rejected(RejectReason.UNKNOWN_SENSOR_KIND, topic)

    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return Rejected(RejectReason.INVALID_VALUE, topic, "payload is not UTF-8")
    else:
        text = payload

    literal = text.strip()
    if not _DECIMAL.fullmatch(literal):
        return Rejected(RejectReason.INVALID_VALUE, topic, text[:32])
    value = float(literal)

    if not math.isfinite(value):
        return Rejected(RejectReason.INVALID_VALUE, topic, text[:32])

    return SensorSample(kind=kind, value=value, observed_at=(clock or _utcnow)())
