"""
Plain value records for PostgreSQL geometric and interval columns.

Application code receives these instead of driver-specific objects. Each record
knows how to read itself from the backend's text output (`parse`) and how to
render the literal accepted as input (`to_literal`).
"""
from __future__ import annotations

import re
from datetime import timedelta
from typing import List, Tuple

from pydantic import BaseModel, Field

_NUMBER = re.compile(r"[-+]?(?:Infinity|NaN|(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")

_INTERVAL_PART = re.compile(r"([-+]?\d+)\s+(years?|mons?|months?|days?)", re.IGNORECASE)
_INTERVAL_TIME = re.compile(r"([-+])?(\d+):(\d+):(\d+(?:\.\d+)?)")


def _numbers(text: str) -> List[float]:
    return [float(token) for token in _NUMBER.findall(text)]


def _pairs(values: List[float]) -> List["Point"]:
    return [Point(x=values[i], y=values[i + 1]) for i in range(0, len(values) - 1, 2)]


def _format_number(value: float) -> str:
    return repr(float(value))


class Point(BaseModel):
    """A `point` value."""

    x: float
    y: float

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Point":
        x, y = _numbers(text)[:2]
        return cls(x=x, y=y)

    def to_literal(self) -> str:
        return f"({_format_number(self.x)},{_format_number(self.y)})"


class Line(BaseModel):
    """An infinite `line`, stored as the coefficients of `ax + by + c = 0`."""

    a: float
    b: float
    c: float

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Line":
        a, b, c = _numbers(text)[:3]
        return cls(a=a, b=b, c=c)

    def to_literal(self) -> str:
        return "{" + ",".join(_format_number(v) for v in (self.a, self.b, self.c)) + "}"


class LineSegment(BaseModel):
    """An `lseg` value."""

    start: Point
    end: Point

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "LineSegment":
        start, end = _pairs(_numbers(text))[:2]
        return cls(start=start, end=end)

    def to_literal(self) -> str:
        return f"[{self.start.to_literal()},{self.end.to_literal()}]"


class Box(BaseModel):
    """A `box`; the backend always reports the upper right corner first."""

    high: Point
    low: Point

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Box":
        high, low = _pairs(_numbers(text))[:2]
        return cls(high=high, low=low)

    def to_literal(self) -> str:
        return f"{self.high.to_literal()},{self.low.to_literal()}"


class Path(BaseModel):
    """A `path`, open (`[...]`) or closed (`(...)`)."""

    points: Tuple[Point, ...]
    closed: bool = False

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Path":
        return cls(points=tuple(_pairs(_numbers(text))), closed=text.lstrip().startswith("("))

    def to_literal(self) -> str:
        body = ",".join(point.to_literal() for point in self.points)
        return f"({body})" if self.closed else f"[{body}]"


class Polygon(BaseModel):
    """A `polygon`."""

    points: Tuple[Point, ...]

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Polygon":
        return cls(points=tuple(_pairs(_numbers(text))))

    def to_literal(self) -> str:
        return "(" + ",".join(point.to_literal() for point in self.points) + ")"


class Circle(BaseModel):
    """A `circle`."""

    center: Point
    radius: float

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Circle":
        x, y, radius = _numbers(text)[:3]
        return cls(center=Point(x=x, y=y), radius=radius)

    def to_literal(self) -> str:
        return f"<{self.center.to_literal()},{_format_number(self.radius)}>"


class Interval(BaseModel):
    """
    An `interval` split into its calendar and clock fields.

    Months and years are kept apart from days because their length depends on
    the date they are applied to, which `timedelta` cannot express.
    """

    years: int = 0
    months: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: float = Field(0.0)

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "Interval":
        """Parse the backend's default (`postgres`) interval output style."""
        fields = {"years": 0, "months": 0, "days": 0}
        for amount, unit in _INTERVAL_PART.findall(text):
            unit = unit.lower()
            if unit.startswith("year"):
                fields["years"] += int(amount)
            elif unit.startswith("mon"):
                fields["months"] += int(amount)
            else:
                fields["days"] += int(amount)
        hours = minutes = 0
        seconds = 0.0
        match = _INTERVAL_TIME.search(text)
        if match:
            sign = -1 if match.group(1) == "-" else 1
            hours = sign * int(match.group(2))
            minutes = sign * int(match.group(3))
            seconds = sign * float(match.group(4))
        return cls(hours=hours, minutes=minutes, seconds=seconds, **fields)

    @classmethod
    def from_timedelta(cls, value: timedelta) -> "Interval":
        seconds = value.seconds + value.microseconds / 1_000_000
        hours, rest = divmod(seconds, 3600)
        minutes, seconds = divmod(rest, 60)
        return cls(days=value.days, hours=int(hours), minutes=int(minutes), seconds=seconds)

    def to_timedelta(self) -> timedelta:
        """Convert to `timedelta`, counting a year as 365 days and a month as 30."""
        return timedelta(
            days=self.years * 365 + self.months * 30 + self.days,
            hours=self.hours,
            minutes=self.minutes,
            seconds=self.seconds,
        )

    def to_literal(self) -> str:
        return (
            f"{self.years} years {self.months} mons {self.days} days "
            f"{self.hours} hours {self.minutes} mins {self.seconds!r} secs"
        )


__all__ = ["Point", "Line", "LineSegment", "Box", "Path", "Polygon", "Circle", "Interval"]
