"""
Measurement Tool

This module turns collected points into measurements:
- Length, angle, Cobb angle and bidirectional (RECIST) calculations
- Display formatting
- The drawing state machine: select a tool, collect points, commit a
  finished measurement into the AnnotationStore as a single add
- Per-image calibration and the edit helpers (visibility, lock, label,
  point moves) used by the surrounding UI

Inputs:
    - Points in image pixel coordinates
    - Calibration per image
    - Tool selection, finish/cancel signals

Outputs:
    - Measurement results (pixels and mm)
    - Entries added to / updated in the AnnotationStore

Requirements:
    - utils.geometry, utils.dicom_utils
    - tools.measurement_items, tools.roi_manager
    - core.annotation_store
"""

from typing import Dict, List, Optional, Tuple, Union

import numpy as np
from pydicom.dataset import Dataset

from core.annotation_store import AnnotationStore
from tools.measurement_items import (
    DEFAULT_STYLE,
    MIN_FREEFORM_POINTS,
    AngleMeasurementResult,
    AnnotationStyle,
    AnyEntry,
    BidirectionalMeasurementResult,
    CobbAngleMeasurementResult,
    LinearMeasurementResult,
    ROIEntry,
    ROIStatistics,
    ToolType,
    is_complete,
    make_entry,
    required_points,
    tool_label,
)
from tools.roi_manager import ROIManager
from utils import geometry
from utils.debug_log import annotation_debug
from utils.dicom_utils import (
    UNCALIBRATED,
    Calibration,
    calibration_from_dataset,
    calibration_from_manual,
    format_distance,
    physical_distance,
)
from utils.geometry import Point

MeasurementResult = Union[
    LinearMeasurementResult,
    AngleMeasurementResult,
    CobbAngleMeasurementResult,
    BidirectionalMeasurementResult,
]


def measure_length(start: Point, end: Point,
                   calibration: Calibration = UNCALIBRATED) -> LinearMeasurementResult:
    """
    Length between two points.

    Args:
        start: Start point
        end: End point
        calibration: Calibration for the mm value

    Returns:
        LinearMeasurementResult; length_mm is None when uncalibrated
    """
    return LinearMeasurementResult(
        length_pixels=geometry.distance(start, end),
        length_mm=physical_distance(end.x - start.x, end.y - start.y, calibration),
        start_point=start,
        end_point=end,
    )


def measure_angle(vertex: Point, point1: Point, point2: Point) -> Optional[AngleMeasurementResult]:
    """Angle at vertex, or None if degenerate."""
    degrees = geometry.angle(vertex, point1, point2)
    if degrees is None:
        return None
    return AngleMeasurementResult(degrees, vertex, point1, point2)


def measure_cobb_angle(line1_start: Point, line1_end: Point,
                       line2_start: Point, line2_end: Point) -> Optional[CobbAngleMeasurementResult]:
    """Cobb angle between two lines, or None if either line is degenerate."""
    degrees = geometry.cobb_angle(line1_start, line1_end, line2_start, line2_end)
    if degrees is None:
        return None
    return CobbAngleMeasurementResult(degrees, line1_start, line1_end, line2_start, line2_end)


def measure_bidirectional(long_start: Point, long_end: Point,
                          short_start: Point, short_end: Point,
                          calibration: Calibration = UNCALIBRATED) -> BidirectionalMeasurementResult:
    """
    Bidirectional measurement: long axis plus perpendicular short axis.

    Args:
        long_start: Long axis start
        long_end: Long axis end
        short_start: Short axis start
        short_end: Short axis end
        calibration: Calibration for the mm values

    Returns:
        BidirectionalMeasurementResult
    """
    return BidirectionalMeasurementResult(
        long_axis_pixels=geometry.distance(long_start, long_end),
        short_axis_pixels=geometry.distance(short_start, short_end),
        long_axis_mm=physical_distance(long_end.x - long_start.x, long_end.y - long_start.y, calibration),
        short_axis_mm=physical_distance(short_end.x - short_start.x, short_end.y - short_start.y, calibration),
        long_axis_start=long_start,
        long_axis_end=long_end,
        short_axis_start=short_start,
        short_axis_end=short_end,
    )


def measure_entry(entry: AnyEntry, calibration: Calibration = UNCALIBRATED) -> Optional[MeasurementResult]:
    """
    Compute the result of a non-ROI measurement entry.

    Angle entries store their points as [ray1 end, vertex, ray2 end].

    Returns:
        The result record, or None for annotations without a numeric result
        and for entries whose points do not fit the tool
    """
    p = entry.points
    tool = entry.tool_type
    if tool is ToolType.LENGTH:
        return measure_length(p[0], p[1], calibration) if len(p) == 2 else None
    if tool is ToolType.ANGLE:
        return measure_angle(p[1], p[0], p[2]) if len(p) == 3 else None
    if tool is ToolType.COBB_ANGLE:
        return measure_cobb_angle(p[0], p[1], p[2], p[3]) if len(p) == 4 else None
    if tool is ToolType.BIDIRECTIONAL:
        return measure_bidirectional(p[0], p[1], p[2], p[3], calibration) if len(p) == 4 else None
    return None


def format_length(result: LinearMeasurementResult, unit: str = "mm") -> str:
    return format_distance(result.length_pixels, result.length_mm, unit)


def format_angle(degrees: float) -> str:
    return f"{degrees:.1f}°"


class MeasurementTool:
    """
    Drawing state machine for measurement and ROI tools.

    Features:
    - Tool selection and point collection
    - Auto-commit when a fixed-arity tool has its points
    - Explicit finish for freehand/polygonal ROIs
    - Per-image calibration with ROI statistics refresh
    - Edit helpers routed through the store's undo log
    """

    def __init__(self, store: Optional[AnnotationStore] = None, config_manager=None):
        """
        Initialize the measurement tool.

        Args:
            store: AnnotationStore to commit into; a new one is created if omitted
            config_manager: Optional ConfigManager for style and unit settings
        """
        self.config_manager = config_manager
        self.store = store if store is not None else AnnotationStore(config_manager=config_manager)
        self.roi_manager = ROIManager(config_manager)
        self.selected_tool: Optional[ToolType] = None
        self.active_points: List[Point] = []
        self.current_image_key = ""
        self.current_frame_number = 0
        self.calibrations: Dict[str, Calibration] = {}
        # Key format: (image_key, frame_number)
        self.pixel_arrays: Dict[Tuple[str, int], np.ndarray] = {}
        if config_manager is not None:
            self.display_unit = config_manager.get_display_unit()
            self.default_style = config_manager.get_default_style()
            self.min_freeform_points = int(config_manager.get("freeform_min_points", MIN_FREEFORM_POINTS))
        else:
            self.display_unit = "mm"
            self.default_style = DEFAULT_STYLE
            self.min_freeform_points = MIN_FREEFORM_POINTS

    # ------------------------------------------------------------------
    # Image context and calibration
    # ------------------------------------------------------------------

    def set_current_image(self, image_key: str, frame_number: int = 0) -> None:
        """
        Set the image and frame new measurements are placed on.
        Any drawing in progress is cancelled.
        """
        self.cancel_drawing()
        self.current_image_key = image_key
        self.current_frame_number = frame_number

    def get_calibration(self, image_key: Optional[str] = None) -> Calibration:
        key = self.current_image_key if image_key is None else image_key
        return self.calibrations.get(key, UNCALIBRATED)

    def set_calibration(self, calibration: Calibration, image_key: Optional[str] = None) -> int:
        """
        Set the calibration of an image and refresh its ROI statistics.

        Calibration is not an edit: it is not recorded in the undo log and
        does not clear redo.

        Args:
            calibration: New calibration
            image_key: Image to calibrate; defaults to the current image

        Returns:
            Number of ROIs whose statistics changed
        """
        key = self.current_image_key if image_key is None else image_key
        self.calibrations[key] = calibration
        return self._refresh_rois(key)

    def _refresh_rois(self, image_key: str) -> int:
        frames = {frame: arr for (img, frame), arr in self.pixel_arrays.items() if img == image_key}
        return self.roi_manager.refresh_statistics(
            self.store, image_key, self.get_calibration(image_key), frames)

    def set_calibration_from_dataset(self, dataset: Dataset, image_key: Optional[str] = None) -> Calibration:
        """Resolve calibration from a pydicom Dataset and apply it to an image."""
        if image_key is None:
            image_key = str(dataset.get("SOPInstanceUID", "") or self.current_image_key)
        calibration = calibration_from_dataset(dataset)
        self.set_calibration(calibration, image_key)
        return calibration

    def set_manual_calibration(self, pixel_distance: float, known_distance_mm: float) -> Calibration:
        """Manual two-point calibration of the current image."""
        calibration = calibration_from_manual(pixel_distance, known_distance_mm)
        self.set_calibration(calibration)
        return calibration

    def set_pixel_array(self, pixel_array: Optional[np.ndarray],
                        image_key: Optional[str] = None, frame_number: Optional[int] = None) -> None:
        """Provide (or clear) the pixel data used for ROI statistics."""
        key = (self.current_image_key if image_key is None else image_key,
               self.current_frame_number if frame_number is None else frame_number)
        if pixel_array is None:
            self.pixel_arrays.pop(key, None)
        else:
            self.pixel_arrays[key] = pixel_array

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    @property
    def is_drawing(self) -> bool:
        return len(self.active_points) > 0

    def select_tool(self, tool: ToolType) -> None:
        self.cancel_drawing()
        self.selected_tool = ToolType(tool)

    def deselect_tool(self) -> None:
        self.cancel_drawing()
        self.selected_tool = None

    def cancel_drawing(self) -> None:
        """Discard the points of the measurement in progress."""
        self.active_points.clear()

    def add_point(self, point: Point) -> Optional[AnyEntry]:
        """
        Add a point to the measurement in progress.

        Fixed-arity tools commit as soon as their last point arrives.

        Args:
            point: Point in image coordinates

        Returns:
            The committed entry if this point completed the measurement, else None
        """
        if self.selected_tool is None:
            return None
        self.active_points.append(Point(float(point[0]), float(point[1])))
        if required_points(self.selected_tool) is not None and \
                is_complete(self.selected_tool, len(self.active_points)):
            return self._commit()
        return None

    def finish_freeform(self) -> Optional[AnyEntry]:
        """
        Finish a freehand or polygonal ROI.

        Returns:
            The committed entry, or None if the tool is not variable-arity or
            too few points were collected (the drawing stays in progress)
        """
        tool = self.selected_tool
        if tool is None or required_points(tool) is not None:
            return None
        if not is_complete(tool, len(self.active_points), finalized=True,
                           min_freeform_points=self.min_freeform_points):
            return None
        return self._commit()

    def _commit(self) -> Optional[AnyEntry]:
        tool = self.selected_tool
        if tool is None or not self.active_points:
            return None
        entry = make_entry(
            tool,
            self.active_points,
            image_key=self.current_image_key,
            frame_number=self.current_frame_number,
            label=tool_label(tool),
            style=self.default_style,
        )
        if isinstance(entry, ROIEntry):
            entry = self.roi_manager.with_statistics(
                entry,
                self.get_calibration(),
                self.pixel_arrays.get((self.current_image_key, self.current_frame_number)),
            )
        self.active_points.clear()
        self.store.add(entry)
        annotation_debug(f"committed {tool.value} with {len(entry.points)} point(s)")
        return entry

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def toggle_visibility(self, entry_id: str) -> Optional[AnyEntry]:
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        updated = entry.with_visibility(not entry.is_visible)
        self.store.update(updated)
        return updated

    def toggle_lock(self, entry_id: str) -> Optional[AnyEntry]:
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        updated = entry.with_locked(not entry.is_locked)
        self.store.update(updated)
        return updated

    def update_label(self, entry_id: str, label: str) -> Optional[AnyEntry]:
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        updated = entry.with_label(label)
        self.store.update(updated)
        return updated

    def update_style(self, entry_id: str, style: AnnotationStyle) -> Optional[AnyEntry]:
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        updated = entry.with_style(style)
        self.store.update(updated)
        return updated

    def move_point(self, entry_id: str, index: int, point: Point) -> Optional[AnyEntry]:
        """
        Move one defining point of an entry.

        Locked entries and out-of-range indices are left untouched. ROI
        statistics are recomputed for the new shape; without pixel data for
        the frame the pixel values are cleared (pixel_count 0).

        Returns:
            The updated entry, or None if nothing changed
        """
        entry = self.store.get(entry_id)
        if entry is None or entry.is_locked:
            return None
        if not 0 <= index < len(entry.points):
            return None
        points = list(entry.points)
        points[index] = Point(float(point[0]), float(point[1]))
        updated = entry.with_points(points)
        if isinstance(updated, ROIEntry):
            pixel_array = self.pixel_arrays.get((updated.image_key, updated.frame_number))
            if pixel_array is None:
                # Pixel statistics of the old shape no longer apply
                updated = updated.with_statistics(ROIStatistics())
            updated = self.roi_manager.with_statistics(
                updated, self.get_calibration(updated.image_key), pixel_array)
        self.store.update(updated)
        return updated

    def delete(self, entry_id: str) -> Optional[AnyEntry]:
        return self.store.remove(entry_id)

    # ------------------------------------------------------------------
    # Queries and history passthrough
    # ------------------------------------------------------------------

    def current_measurements(self) -> List[AnyEntry]:
        return self.store.all_for_image(self.current_image_key)

    def visible_measurements(self) -> List[AnyEntry]:
        return self.store.visible_for_image_and_frame(self.current_image_key, self.current_frame_number)

    def find_entry_at(self, point: Point) -> Optional[AnyEntry]:
        """
        Topmost visible entry under a point on the current image and frame.

        Lines (length, angle, Cobb, bidirectional, arrow) are hit within the
        hit test tolerance; markers and text anchors within the tolerance of
        their point; ROIs by containment or closeness to their outline.

        Args:
            point: Point in image coordinates

        Returns:
            The most recently added matching entry, or None
        """
        tolerance = self.roi_manager.hit_test_tolerance
        point = Point(float(point[0]), float(point[1]))
        for entry in reversed(self.visible_measurements()):
            if isinstance(entry, ROIEntry):
                if self.roi_manager.contains_or_near(entry, point):
                    return entry
                continue
            p = entry.points
            if entry.tool_type in (ToolType.COBB_ANGLE, ToolType.BIDIRECTIONAL):
                # Two separate segments
                hit = geometry.is_near_polyline(point, p[0:2], tolerance) or \
                    geometry.is_near_polyline(point, p[2:4], tolerance)
            elif len(p) == 1:
                hit = geometry.distance(point, p[0]) <= tolerance
            else:
                hit = geometry.is_near_polyline(point, p, tolerance)
            if hit:
                return entry
        return None

    def result_for(self, entry: AnyEntry) -> Optional[MeasurementResult]:
        return measure_entry(entry, self.get_calibration(entry.image_key))

    def undo(self) -> bool:
        """Undo the last edit, then re-derive ROI statistics for the current calibrations."""
        done = self.store.undo()
        if done:
            self._refresh_all_rois()
        return done

    def redo(self) -> bool:
        """Redo the last undone edit, then re-derive ROI statistics."""
        done = self.store.redo()
        if done:
            self._refresh_all_rois()
        return done

    def _refresh_all_rois(self) -> None:
        # Restored entries carry statistics from the calibration in force when they were recorded
        for image_key in self.store.image_keys():
            self._refresh_rois(image_key)
