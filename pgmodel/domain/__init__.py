"""
Domain package for pgmodel.

Model lifecycle states and the value records used for geometric and interval
columns. Mapping descriptors live in `pgmodel.domain.mapping`, which depends
on the codec registry and is therefore not imported here.
"""

from pgmodel.domain.state import State
from pgmodel.domain.values import Box, Circle, Interval, Line, LineSegment, Path, Point, Polygon

__all__ = [
    "Box",
    "Circle",
    "Interval",
    "Line",
    "LineSegment",
    "Path",
    "Point",
    "Polygon",
    "State",
]
