"""
Measurement Items

Immutable records describing placed measurements and ROIs, plus the
per-tool tables (required point counts, display labels).

Records are frozen; "editing" one produces a copy that keeps the same id
and creation time (see MeasurementEntry.with_label and friends).

Inputs:
    - Tool type and collected points
    - Image key (SOP Instance UID) and frame number

Outputs:
    - MeasurementEntry / ROIEntry records
    - Measurement result records

Requirements:
    - utils.geometry.Point
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

from utils.geometry import Point


class ToolType(str, Enum):
    """Measurement and annotation tools."""
    LENGTH = "LENGTH"
    ANGLE = "ANGLE"
    COBB_ANGLE = "COBB_ANGLE"
    BIDIRECTIONAL = "BIDIRECTIONAL"
    MARKER = "MARKER"
    ARROW_ANNOTATION = "ARROW_ANNOTATION"
    TEXT_ANNOTATION = "TEXT_ANNOTATION"
    CIRCULAR_ROI = "CIRCULAR_ROI"
    RECTANGULAR_ROI = "RECTANGULAR_ROI"
    ELLIPTICAL_ROI = "ELLIPTICAL_ROI"
    FREEHAND_ROI = "FREEHAND_ROI"
    POLYGONAL_ROI = "POLYGONAL_ROI"


# Points needed to complete each tool; None means variable (finished explicitly)
REQUIRED_POINTS: Dict[ToolType, Optional[int]] = {
    ToolType.LENGTH: 2,
    ToolType.ANGLE: 3,
    ToolType.COBB_ANGLE: 4,
    ToolType.BIDIRECTIONAL: 4,
    ToolType.MARKER: 1,
    ToolType.ARROW_ANNOTATION: 2,
    ToolType.TEXT_ANNOTATION: 1,
    ToolType.CIRCULAR_ROI: 2,
    ToolType.RECTANGULAR_ROI: 2,
    ToolType.ELLIPTICAL_ROI: 4,
    ToolType.FREEHAND_ROI: None,
    ToolType.POLYGONAL_ROI: None,
}

# Minimum vertices before a freehand/polygonal ROI can be finished
MIN_FREEFORM_POINTS = 3

TOOL_LABELS: Dict[ToolType, str] = {
    ToolType.LENGTH: "Length",
    ToolType.ANGLE: "Angle",
    ToolType.COBB_ANGLE: "Cobb Angle",
    ToolType.BIDIRECTIONAL: "Bidirectional",
    ToolType.MARKER: "Marker",
    ToolType.ARROW_ANNOTATION: "Arrow",
    ToolType.TEXT_ANNOTATION: "Text",
    ToolType.CIRCULAR_ROI: "Circular ROI",
    ToolType.RECTANGULAR_ROI: "Rectangular ROI",
    ToolType.ELLIPTICAL_ROI: "Elliptical ROI",
    ToolType.FREEHAND_ROI: "Freehand ROI",
    ToolType.POLYGONAL_ROI: "Polygonal ROI",
}

ROI_TOOLS = frozenset({
    ToolType.CIRCULAR_ROI,
    ToolType.RECTANGULAR_ROI,
    ToolType.ELLIPTICAL_ROI,
    ToolType.FREEHAND_ROI,
    ToolType.POLYGONAL_ROI,
})


def required_points(tool_type: ToolType) -> Optional[int]:
    """Number of points a tool needs, or None for variable-point tools."""
    return REQUIRED_POINTS[tool_type]


def is_roi_tool(tool_type: ToolType) -> bool:
    return tool_type in ROI_TOOLS


def tool_label(tool_type: ToolType) -> str:
    return TOOL_LABELS[tool_type]


def is_complete(tool_type: ToolType, point_count: int, finalized: bool = False,
                min_freeform_points: int = MIN_FREEFORM_POINTS) -> bool:
    """
    Whether a drawing with point_count points is a finished measurement.

    Fixed-arity tools are complete exactly when the arity is met. Variable
    tools are complete only once explicitly finalized with enough vertices.

    Args:
        tool_type: Tool being drawn
        point_count: Points collected so far
        finalized: Whether the user explicitly finished the shape
        min_freeform_points: Minimum vertices for variable tools

    Returns:
        True if the measurement can be committed
    """
    required = REQUIRED_POINTS[tool_type]
    if required is None:
        return finalized and point_count >= min_freeform_points
    return point_count == required


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class AnnotationStyle:
    """
    Visual style of a measurement or annotation.

    Colors and opacity are clamped to [0, 1], line width to >= 0.5 and
    font size to >= 6.
    """
    line_width: float = 2.0
    color_red: float = 1.0
    color_green: float = 1.0
    color_blue: float = 0.0
    opacity: float = 1.0
    font_size: float = 12.0

    def __post_init__(self):
        object.__setattr__(self, "line_width", max(0.5, float(self.line_width)))
        object.__setattr__(self, "color_red", _clamp(float(self.color_red), 0.0, 1.0))
        object.__setattr__(self, "color_green", _clamp(float(self.color_green), 0.0, 1.0))
        object.__setattr__(self, "color_blue", _clamp(float(self.color_blue), 0.0, 1.0))
        object.__setattr__(self, "opacity", _clamp(float(self.opacity), 0.0, 1.0))
        object.__setattr__(self, "font_size", max(6.0, float(self.font_size)))

    def rgb255(self) -> Tuple[int, int, int]:
        return (
            int(round(self.color_red * 255)),
            int(round(self.color_green * 255)),
            int(round(self.color_blue * 255)),
        )


DEFAULT_STYLE = AnnotationStyle()
ACTIVE_STYLE = AnnotationStyle(line_width=2.5, color_red=0.0, color_green=1.0, color_blue=0.0)
WARNING_STYLE = AnnotationStyle(color_red=1.0, color_green=0.0, color_blue=0.0)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MeasurementEntry:
    """
    A placed measurement or annotation.

    Attributes:
        tool_type: Tool that produced the entry
        points: Defining points in image pixel coordinates
        label: Display label
        style: Visual style
        is_visible: Whether the entry is drawn
        is_locked: Whether the entry may be edited
        image_key: SOP Instance UID of the image
        frame_number: Frame within a multi-frame image
        id: Unique identifier, preserved across edits
        created_at: Creation time, preserved across edits
    """
    tool_type: ToolType
    points: Tuple[Point, ...]
    label: str = ""
    style: AnnotationStyle = DEFAULT_STYLE
    is_visible: bool = True
    is_locked: bool = False
    image_key: str = ""
    frame_number: int = 0
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        object.__setattr__(self, "tool_type", ToolType(self.tool_type))
        object.__setattr__(self, "points", tuple(Point(float(p[0]), float(p[1])) for p in self.points))

    @property
    def is_roi(self) -> bool:
        return is_roi_tool(self.tool_type)

    @property
    def has_valid_arity(self) -> bool:
        """True if the point count matches the tool's arity (or minimum for variable tools)."""
        required = REQUIRED_POINTS[self.tool_type]
        if required is None:
            return len(self.points) >= MIN_FREEFORM_POINTS
        return len(self.points) == required

    def with_visibility(self, visible: bool) -> "MeasurementEntry":
        return replace(self, is_visible=visible)

    def with_locked(self, locked: bool) -> "MeasurementEntry":
        return replace(self, is_locked=locked)

    def with_label(self, label: str) -> "MeasurementEntry":
        return replace(self, label=label)

    def with_style(self, style: AnnotationStyle) -> "MeasurementEntry":
        return replace(self, style=style)

    def with_points(self, points: Iterable[Point]) -> "MeasurementEntry":
        return replace(self, points=tuple(points))

    def with_frame(self, frame_number: int) -> "MeasurementEntry":
        return replace(self, frame_number=frame_number)


@dataclass(frozen=True)
class ROIStatistics:
    """Snapshot of ROI pixel statistics and geometry."""
    mean: float = 0.0
    std_dev: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    area_pixels: float = 0.0
    area_mm2: Optional[float] = None
    perimeter_pixels: float = 0.0
    perimeter_mm: Optional[float] = None
    pixel_count: int = 0

    def format(self) -> str:
        """Multi-line summary for overlays."""
        lines = [
            f"Mean: {self.mean:.1f}",
            f"Std Dev: {self.std_dev:.1f}",
            f"Min: {self.minimum:.1f}",
            f"Max: {self.maximum:.1f}",
            f"Pixels: {self.pixel_count}",
        ]
        if self.area_mm2 is not None:
            lines.append(f"Area: {self.area_mm2:.1f} mm²")
        if self.perimeter_mm is not None:
            lines.append(f"Perimeter: {self.perimeter_mm:.1f} mm")
        return "\n".join(lines)


@dataclass(frozen=True)
class ROIEntry(MeasurementEntry):
    """A region of interest with its statistics snapshot."""
    statistics: ROIStatistics = ROIStatistics()

    def with_statistics(self, statistics: ROIStatistics) -> "ROIEntry":
        return replace(self, statistics=statistics)


AnyEntry = Union[MeasurementEntry, ROIEntry]


def make_entry(tool_type: ToolType, points: Sequence[Point], image_key: str = "",
               frame_number: int = 0, label: Optional[str] = None,
               style: AnnotationStyle = DEFAULT_STYLE) -> AnyEntry:
    """
    Build a new record for a finished drawing.

    ROI tools produce an ROIEntry with empty statistics; the caller fills
    them in (see tools.roi_manager.compute_roi_statistics).

    Args:
        tool_type: Tool that produced the drawing
        points: Collected points
        image_key: SOP Instance UID of the image
        frame_number: Frame number
        label: Display label; defaults to the tool label
        style: Visual style

    Returns:
        MeasurementEntry or ROIEntry with a fresh id
    """
    cls = ROIEntry if is_roi_tool(tool_type) else MeasurementEntry
    return cls(
        tool_type=tool_type,
        points=tuple(points),
        label=tool_label(tool_type) if label is None else label,
        style=style,
        image_key=image_key,
        frame_number=frame_number,
    )


@dataclass(frozen=True)
class LinearMeasurementResult:
    length_pixels: float
    length_mm: Optional[float]
    start_point: Point
    end_point: Point


@dataclass(frozen=True)
class AngleMeasurementResult:
    angle_degrees: float
    vertex: Point
    point1: Point
    point2: Point


@dataclass(frozen=True)
class CobbAngleMeasurementResult:
    angle_degrees: float
    line1_start: Point
    line1_end: Point
    line2_start: Point
    line2_end: Point


@dataclass(frozen=True)
class BidirectionalMeasurementResult:
    """Long axis and perpendicular short axis (RECIST)."""
    long_axis_pixels: float
    short_axis_pixels: float
    long_axis_mm: Optional[float]
    short_axis_mm: Optional[float]
    long_axis_start: Point
    long_axis_end: Point
    short_axis_start: Point
    short_axis_end: Point
