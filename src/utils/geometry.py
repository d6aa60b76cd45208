"""
Measurement Geometry

This module provides the pure geometry used by the measurement and ROI tools:
- Distances, angles and Cobb angles
- Polygon, ellipse, circle and rectangle area/perimeter
- Point-in-shape tests and hit testing
- Pixel value statistics

None of these functions raise on degenerate input: they return None, False
or 0 instead so callers can branch on the result.

Inputs:
    - Points in image pixel coordinates
    - Pixel value sequences

Outputs:
    - Lengths, angles, areas, perimeters
    - Containment flags
    - Statistics tuples

Requirements:
    - numpy for statistics
    - math (standard library)
"""

import math
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np


class Point(NamedTuple):
    """A point in image pixel coordinates (x = column, y = row)."""
    x: float
    y: float


class EllipseParameters(NamedTuple):
    """Center, semi-axes and major-axis rotation (degrees) of a 4-point ellipse."""
    center: Point
    semi_major: float
    semi_minor: float
    rotation_degrees: float


class CircleParameters(NamedTuple):
    """Center and radius of a center/edge circle."""
    center: Point
    radius: float


class PixelStatistics(NamedTuple):
    """Summary statistics of a set of pixel values."""
    mean: float
    std_dev: float
    minimum: float
    maximum: float
    count: int


# Bounding box as (min_x, min_y, max_x, max_y)
BoundingBox = Tuple[float, float, float, float]


def distance(a: Point, b: Point) -> float:
    """
    Euclidean distance between two points.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in pixels
    """
    dx = b.x - a.x
    dy = b.y - a.y
    return math.sqrt(dx * dx + dy * dy)


def midpoint(a: Point, b: Point) -> Point:
    """Midpoint of the segment a-b."""
    return Point((a.x + b.x) / 2.0, (a.y + b.y) / 2.0)


def _angle_between_vectors(v1x: float, v1y: float, v2x: float, v2y: float) -> Optional[float]:
    mag1 = math.sqrt(v1x * v1x + v1y * v1y)
    mag2 = math.sqrt(v2x * v2x + v2y * v2y)
    if mag1 == 0 or mag2 == 0:
        return None
    cos_angle = (v1x * v2x + v1y * v2y) / (mag1 * mag2)
    # Rounding can push the cosine just outside [-1, 1]
    cos_angle = max(-1.0, min(1.0, cos_angle))
    return math.degrees(math.acos(cos_angle))


def angle(vertex: Point, p1: Point, p2: Point) -> Optional[float]:
    """
    Angle at a vertex between the rays to p1 and p2.

    Args:
        vertex: Common endpoint of both rays
        p1: First ray endpoint
        p2: Second ray endpoint

    Returns:
        Angle in degrees in [0, 180], or None if either ray has zero length
    """
    return _angle_between_vectors(
        p1.x - vertex.x, p1.y - vertex.y,
        p2.x - vertex.x, p2.y - vertex.y,
    )


def cobb_angle(line1_start: Point, line1_end: Point,
               line2_start: Point, line2_end: Point) -> Optional[float]:
    """
    Cobb angle between two line segments.

    The lines do not need to share a vertex; only their directions matter.
    The result is the acute angle between the two lines.

    Args:
        line1_start: Start of the first line
        line1_end: End of the first line
        line2_start: Start of the second line
        line2_end: End of the second line

    Returns:
        Angle in degrees in [0, 90], or None if either line is degenerate
    """
    raw = _angle_between_vectors(
        line1_end.x - line1_start.x, line1_end.y - line1_start.y,
        line2_end.x - line2_start.x, line2_end.y - line2_start.y,
    )
    if raw is None:
        return None
    return min(raw, 180.0 - raw)


def polygon_area(points: Sequence[Point]) -> Optional[float]:
    """
    Area of a polygon using the shoelace formula.

    The polygon is closed implicitly (last vertex connects to the first).

    Args:
        points: Polygon vertices

    Returns:
        Area in pixels², or None for fewer than 3 vertices
    """
    n = len(points)
    if n < 3:
        return None
    total = 0.0
    for i in range(n):
        j = (i + 1) % n
        total += points[i].x * points[j].y - points[j].x * points[i].y
    return abs(total) / 2.0


def polygon_perimeter(points: Sequence[Point]) -> Optional[float]:
    """
    Closed perimeter of a polygon, including the edge back to the first vertex.

    Args:
        points: Polygon vertices

    Returns:
        Perimeter in pixels, or None for fewer than 2 vertices
    """
    n = len(points)
    if n < 2:
        return None
    return sum(distance(points[i], points[(i + 1) % n]) for i in range(n))


def polyline_length(points: Sequence[Point]) -> Optional[float]:
    """Open length of a polyline, or None for fewer than 2 vertices."""
    if len(points) < 2:
        return None
    return sum(distance(points[i - 1], points[i]) for i in range(1, len(points)))


def ellipse_parameters(points: Sequence[Point]) -> Optional[EllipseParameters]:
    """
    Ellipse parameters from four axis endpoints.

    Points 0-1 are the ends of the major axis, points 2-3 the ends of the
    minor axis. The center is the mean of all four points.

    Args:
        points: Four points [major1, major2, minor1, minor2]

    Returns:
        EllipseParameters, or None unless exactly 4 points are given
    """
    if len(points) != 4:
        return None
    cx = sum(p.x for p in points) / 4.0
    cy = sum(p.y for p in points) / 4.0
    semi_major = distance(points[0], points[1]) / 2.0
    semi_minor = distance(points[2], points[3]) / 2.0
    rotation = math.degrees(math.atan2(points[1].y - points[0].y, points[1].x - points[0].x))
    return EllipseParameters(Point(cx, cy), semi_major, semi_minor, rotation)


def ellipse_area(semi_major: float, semi_minor: float) -> float:
    """Area of an ellipse: pi * a * b."""
    return math.pi * semi_major * semi_minor


def ellipse_perimeter(semi_major: float, semi_minor: float) -> float:
    """Ramanujan's approximation of an ellipse perimeter."""
    a = semi_major
    b = semi_minor
    return math.pi * (3.0 * (a + b) - math.sqrt((3.0 * a + b) * (a + 3.0 * b)))


def circle_parameters(center: Point, edge: Point) -> CircleParameters:
    """Circle defined by its center and a point on the circumference."""
    return CircleParameters(center, distance(center, edge))


def circle_area(center: Point, edge: Point) -> float:
    r = distance(center, edge)
    return math.pi * r * r


def circle_perimeter(center: Point, edge: Point) -> float:
    return 2.0 * math.pi * distance(center, edge)


def _rectangle_size(top_left: Point, bottom_right: Point) -> Tuple[float, float]:
    # Corners may be given in any order
    return abs(bottom_right.x - top_left.x), abs(bottom_right.y - top_left.y)


def rectangle_area(top_left: Point, bottom_right: Point) -> float:
    width, height = _rectangle_size(top_left, bottom_right)
    return width * height


def rectangle_perimeter(top_left: Point, bottom_right: Point) -> float:
    width, height = _rectangle_size(top_left, bottom_right)
    return 2.0 * (width + height)


def point_in_rectangle(point: Point, top_left: Point, bottom_right: Point) -> bool:
    """Inclusive bounding-box test."""
    min_x = min(top_left.x, bottom_right.x)
    max_x = max(top_left.x, bottom_right.x)
    min_y = min(top_left.y, bottom_right.y)
    max_y = max(top_left.y, bottom_right.y)
    return min_x <= point.x <= max_x and min_y <= point.y <= max_y


def point_in_circle(point: Point, center: Point, edge: Point) -> bool:
    """True if the point lies on or inside the circle."""
    return distance(point, center) <= distance(center, edge)


def point_in_polygon(point: Point, polygon: Sequence[Point]) -> bool:
    """
    Even-odd (ray casting) containment test.

    Args:
        point: Test point
        polygon: Polygon vertices

    Returns:
        True if inside, False otherwise or for fewer than 3 vertices
    """
    n = len(polygon)
    if n < 3:
        return False
    inside = False
    j = n - 1
    for i in range(n):
        pi = polygon[i]
        pj = polygon[j]
        if (pi.y > point.y) != (pj.y > point.y):
            intersect_x = (pj.x - pi.x) * (point.y - pi.y) / (pj.y - pi.y) + pi.x
            if point.x < intersect_x:
                inside = not inside
        j = i
    return inside


def point_in_ellipse(point: Point, ellipse_points: Sequence[Point]) -> bool:
    """
    Containment test for a 4-point ellipse, honouring its rotation.

    Args:
        point: Test point
        ellipse_points: Four points [major1, major2, minor1, minor2]

    Returns:
        True if the point lies on or inside the ellipse
    """
    params = ellipse_parameters(ellipse_points)
    if params is None or params.semi_major <= 0 or params.semi_minor <= 0:
        return False
    radians = math.radians(params.rotation_degrees)
    cos_a = math.cos(-radians)
    sin_a = math.sin(-radians)
    px = point.x - params.center.x
    py = point.y - params.center.y
    rx = px * cos_a - py * sin_a
    ry = px * sin_a + py * cos_a
    a = params.semi_major
    b = params.semi_minor
    return (rx * rx) / (a * a) + (ry * ry) / (b * b) <= 1.0


def bounding_box(points: Sequence[Point]) -> Optional[BoundingBox]:
    """(min_x, min_y, max_x, max_y) of a point set, or None if empty."""
    if not points:
        return None
    xs = [p.x for p in points]
    ys = [p.y for p in points]
    return min(xs), min(ys), max(xs), max(ys)


def distance_to_segment(point: Point, seg_start: Point, seg_end: Point) -> float:
    """Shortest distance from a point to the segment seg_start-seg_end."""
    dx = seg_end.x - seg_start.x
    dy = seg_end.y - seg_start.y
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return distance(point, seg_start)
    t = ((point.x - seg_start.x) * dx + (point.y - seg_start.y) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return distance(point, Point(seg_start.x + t * dx, seg_start.y + t * dy))


def is_near_polyline(point: Point, points: Sequence[Point], tolerance: float) -> bool:
    """True if the point is within tolerance of any segment of the polyline."""
    if len(points) < 2:
        return False
    return any(
        distance_to_segment(point, points[i - 1], points[i]) <= tolerance
        for i in range(1, len(points))
    )


def pixel_statistics(values: Iterable[float]) -> PixelStatistics:
    """
    Mean, population standard deviation, min and max of pixel values.

    Args:
        values: Pixel values (any iterable or numpy array)

    Returns:
        PixelStatistics; all zeros for empty input, std_dev 0 for one sample
    """
    arr = np.asarray(list(values) if not isinstance(values, np.ndarray) else values,
                     dtype=np.float64).ravel()
    if arr.size == 0:
        return PixelStatistics(0.0, 0.0, 0.0, 0.0, 0)
    return PixelStatistics(
        mean=float(np.mean(arr)),
        std_dev=float(np.std(arr)),
        minimum=float(np.min(arr)),
        maximum=float(np.max(arr)),
        count=int(arr.size),
    )


def as_points(coords: Iterable[Tuple[float, float]]) -> List[Point]:
    """Convert (x, y) pairs into Points."""
    return [Point(float(x), float(y)) for x, y in coords]
