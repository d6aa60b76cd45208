"""
ROI Manager

This module computes ROI geometry and statistics:
- Area and perimeter per ROI shape (circle, rectangle, ellipse, polygon/freehand)
- Point containment and hit testing
- Pixel masks and pixel value statistics over a numpy image
- Statistics refresh for every ROI of an image after a calibration change

Inputs:
    - ROIEntry records
    - Calibration
    - Pixel arrays (numpy)

Outputs:
    - ROIStatistics snapshots
    - Boolean masks

Requirements:
    - numpy for masks and statistics
    - utils.geometry, utils.dicom_utils
"""

import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from tools.measurement_items import ROIEntry, ROIStatistics, ToolType
from utils import geometry
from utils.dicom_utils import Calibration, UNCALIBRATED, physical_area, physical_perimeter
from utils.geometry import Point

# Image pixels
DEFAULT_HIT_TEST_TOLERANCE = 5.0


def roi_area_pixels(entry: ROIEntry) -> Optional[float]:
    """
    Geometric area of an ROI in pixels².

    Args:
        entry: ROI entry

    Returns:
        Area, or None if the points do not describe the shape
    """
    points = entry.points
    tool = entry.tool_type
    if tool is ToolType.CIRCULAR_ROI:
        if len(points) != 2:
            return None
        return geometry.circle_area(points[0], points[1])
    if tool is ToolType.RECTANGULAR_ROI:
        if len(points) != 2:
            return None
        return geometry.rectangle_area(points[0], points[1])
    if tool is ToolType.ELLIPTICAL_ROI:
        params = geometry.ellipse_parameters(points)
        if params is None:
            return None
        return geometry.ellipse_area(params.semi_major, params.semi_minor)
    if tool in (ToolType.FREEHAND_ROI, ToolType.POLYGONAL_ROI):
        return geometry.polygon_area(points)
    return None


def roi_perimeter_pixels(entry: ROIEntry) -> Optional[float]:
    """Perimeter of an ROI in pixels, or None if the points do not describe the shape."""
    points = entry.points
    tool = entry.tool_type
    if tool is ToolType.CIRCULAR_ROI:
        if len(points) != 2:
            return None
        return geometry.circle_perimeter(points[0], points[1])
    if tool is ToolType.RECTANGULAR_ROI:
        if len(points) != 2:
            return None
        return geometry.rectangle_perimeter(points[0], points[1])
    if tool is ToolType.ELLIPTICAL_ROI:
        params = geometry.ellipse_parameters(points)
        if params is None:
            return None
        return geometry.ellipse_perimeter(params.semi_major, params.semi_minor)
    if tool in (ToolType.FREEHAND_ROI, ToolType.POLYGONAL_ROI):
        return geometry.polygon_perimeter(points)
    return None


def roi_contains_point(entry: ROIEntry, point: Point) -> bool:
    """True if the point lies inside the ROI shape."""
    points = entry.points
    tool = entry.tool_type
    if tool is ToolType.CIRCULAR_ROI:
        return len(points) == 2 and geometry.point_in_circle(point, points[0], points[1])
    if tool is ToolType.RECTANGULAR_ROI:
        return len(points) == 2 and geometry.point_in_rectangle(point, points[0], points[1])
    if tool is ToolType.ELLIPTICAL_ROI:
        return geometry.point_in_ellipse(point, points)
    if tool in (ToolType.FREEHAND_ROI, ToolType.POLYGONAL_ROI):
        return geometry.point_in_polygon(point, points)
    return False


def _polygon_mask(xs: np.ndarray, ys: np.ndarray, polygon: Sequence[Point]) -> np.ndarray:
    """Vectorized even-odd test of grid coordinates against a polygon."""
    inside = np.zeros(np.broadcast(xs, ys).shape, dtype=bool)
    n = len(polygon)
    j = n - 1
    for i in range(n):
        pi = polygon[i]
        pj = polygon[j]
        if pi.y != pj.y:
            crosses = (pi.y > ys) != (pj.y > ys)
            intersect_x = (pj.x - pi.x) * (ys - pi.y) / (pj.y - pi.y) + pi.x
            inside ^= crosses & (xs < intersect_x)
        j = i
    return inside


def roi_mask(entry: ROIEntry, width: int, height: int) -> np.ndarray:
    """
    Boolean mask of the pixels whose coordinates fall inside the ROI.

    Pixel (row r, column c) is tested at image coordinate (x=c, y=r).

    Args:
        entry: ROI entry
        width: Image width (columns)
        height: Image height (rows)

    Returns:
        Mask of shape (height, width)
    """
    mask = np.zeros((height, width), dtype=bool)
    box = geometry.bounding_box(entry.points)
    if box is None or width <= 0 or height <= 0:
        return mask

    if entry.tool_type is ToolType.CIRCULAR_ROI and len(entry.points) == 2:
        # The circle extends beyond the bounding box of its two defining points
        r = geometry.distance(entry.points[0], entry.points[1])
        cx, cy = entry.points[0]
        box = (cx - r, cy - r, cx + r, cy + r)
    elif entry.tool_type is ToolType.ELLIPTICAL_ROI:
        params = geometry.ellipse_parameters(entry.points)
        if params is not None:
            r = max(params.semi_major, params.semi_minor)
            box = (params.center.x - r, params.center.y - r, params.center.x + r, params.center.y + r)

    x1 = max(0, int(math.floor(box[0])))
    y1 = max(0, int(math.floor(box[1])))
    x2 = min(width, int(math.ceil(box[2])) + 1)
    y2 = min(height, int(math.ceil(box[3])) + 1)
    if x1 >= x2 or y1 >= y2:
        return mask

    y_indices, x_indices = np.ogrid[y1:y2, x1:x2]
    xs = x_indices.astype(np.float64)
    ys = y_indices.astype(np.float64)
    points = entry.points
    tool = entry.tool_type

    if tool is ToolType.RECTANGULAR_ROI and len(points) == 2:
        sub = (xs >= box[0]) & (xs <= box[2]) & (ys >= box[1]) & (ys <= box[3])
    elif tool is ToolType.CIRCULAR_ROI and len(points) == 2:
        r = geometry.distance(points[0], points[1])
        sub = (xs - points[0].x) ** 2 + (ys - points[0].y) ** 2 <= r * r
    elif tool is ToolType.ELLIPTICAL_ROI:
        params = geometry.ellipse_parameters(points)
        if params is None or params.semi_major <= 0 or params.semi_minor <= 0:
            return mask
        radians = math.radians(params.rotation_degrees)
        cos_a = math.cos(-radians)
        sin_a = math.sin(-radians)
        px = xs - params.center.x
        py = ys - params.center.y
        rx = px * cos_a - py * sin_a
        ry = px * sin_a + py * cos_a
        a = params.semi_major
        b = params.semi_minor
        sub = (rx * rx) / (a * a) + (ry * ry) / (b * b) <= 1.0
    elif tool in (ToolType.FREEHAND_ROI, ToolType.POLYGONAL_ROI) and len(points) >= 3:
        sub = _polygon_mask(xs, ys, points)
    else:
        return mask

    mask[y1:y2, x1:x2] = np.broadcast_to(sub, (y2 - y1, x2 - x1))
    return mask


def roi_pixel_values(entry: ROIEntry, pixel_array: np.ndarray) -> np.ndarray:
    """Pixel values inside the ROI (first channel only for multi-channel arrays)."""
    if pixel_array.ndim > 2:
        pixel_array = pixel_array[..., 0]
    height, width = pixel_array.shape[:2]
    return pixel_array[roi_mask(entry, width, height)]


def compute_roi_statistics(entry: ROIEntry,
                           calibration: Calibration = UNCALIBRATED,
                           pixel_array: Optional[np.ndarray] = None,
                           values: Optional[Sequence[float]] = None,
                           rescale_slope: Optional[float] = None,
                           rescale_intercept: Optional[float] = None) -> ROIStatistics:
    """
    Calculate statistics for an ROI.

    Geometry (area, perimeter) always comes from the ROI shape. Pixel
    statistics come from values if given, else from pixel_array; with
    neither, the entry's previous pixel statistics are kept so a
    calibration change only refreshes the physical values.

    Args:
        entry: ROI entry
        calibration: Calibration for mm/mm² values
        pixel_array: Optional image pixel array
        values: Optional explicit pixel values inside the ROI
        rescale_slope: Optional rescale slope applied to pixel values
        rescale_intercept: Optional rescale intercept applied to pixel values

    Returns:
        ROIStatistics snapshot
    """
    area_pixels = roi_area_pixels(entry) or 0.0
    perimeter_pixels = roi_perimeter_pixels(entry) or 0.0

    if values is None and pixel_array is not None:
        values = roi_pixel_values(entry, pixel_array)

    if values is not None:
        arr = np.asarray(values, dtype=np.float64)
        if rescale_slope is not None and rescale_intercept is not None:
            arr = arr * float(rescale_slope) + float(rescale_intercept)
        stats = geometry.pixel_statistics(arr)
        mean, std_dev, minimum, maximum, count = stats
    else:
        previous = entry.statistics
        mean, std_dev = previous.mean, previous.std_dev
        minimum, maximum, count = previous.minimum, previous.maximum, previous.pixel_count

    return ROIStatistics(
        mean=mean,
        std_dev=std_dev,
        minimum=minimum,
        maximum=maximum,
        area_pixels=area_pixels,
        area_mm2=physical_area(area_pixels, calibration),
        perimeter_pixels=perimeter_pixels,
        perimeter_mm=physical_perimeter(perimeter_pixels, calibration),
        pixel_count=count,
    )


class ROIManager:
    """
    Keeps ROI statistics in step with shape and calibration changes.

    Features:
    - Recompute statistics for a single ROI
    - Refresh every ROI of an image as one undoable step
    - Find the ROI under a point
    """

    def __init__(self, config_manager=None):
        """
        Initialize the ROI manager.

        Args:
            config_manager: Optional ConfigManager for hit test tolerance
        """
        self.config_manager = config_manager
        if config_manager is not None:
            self.hit_test_tolerance = config_manager.get_hit_test_tolerance()
        else:
            self.hit_test_tolerance = DEFAULT_HIT_TEST_TOLERANCE

    def with_statistics(self, entry: ROIEntry, calibration: Calibration,
                        pixel_array: Optional[np.ndarray] = None) -> ROIEntry:
        """Copy of entry with freshly computed statistics."""
        return entry.with_statistics(compute_roi_statistics(entry, calibration, pixel_array))

    def refresh_statistics(self, store, image_key: str, calibration: Calibration,
                           pixel_arrays: Optional[Dict[int, np.ndarray]] = None) -> int:
        """
        Recompute statistics of every ROI on an image.

        Statistics are derived from the shape and the calibration in force,
        so changed ROIs are written back with store.refresh and leave the
        undo and redo stacks untouched.

        Args:
            store: AnnotationStore holding the ROIs
            image_key: SOP Instance UID
            calibration: Calibration now in effect
            pixel_arrays: Optional {frame_number: pixel_array}

        Returns:
            Number of ROIs whose statistics changed
        """
        updated: List[ROIEntry] = []
        for roi in store.rois_for_image(image_key):
            pixel_array = (pixel_arrays or {}).get(roi.frame_number)
            refreshed = self.with_statistics(roi, calibration, pixel_array)
            if refreshed.statistics != roi.statistics:
                updated.append(refreshed)
        return store.refresh(updated)

    def contains_or_near(self, entry: ROIEntry, point: Point) -> bool:
        """True if the point is inside the ROI or within the hit tolerance of its outline."""
        if roi_contains_point(entry, point):
            return True
        points = entry.points
        tool = entry.tool_type
        if tool is ToolType.CIRCULAR_ROI and len(points) == 2:
            radius = geometry.distance(points[0], points[1])
            return abs(geometry.distance(point, points[0]) - radius) <= self.hit_test_tolerance
        if tool is ToolType.RECTANGULAR_ROI and len(points) == 2:
            x1, y1, x2, y2 = geometry.bounding_box(points)
            outline = [Point(x1, y1), Point(x2, y1), Point(x2, y2), Point(x1, y2), Point(x1, y1)]
            return geometry.is_near_polyline(point, outline, self.hit_test_tolerance)
        if tool in (ToolType.FREEHAND_ROI, ToolType.POLYGONAL_ROI) and points:
            return geometry.is_near_polyline(point, list(points) + [points[0]], self.hit_test_tolerance)
        return False

    def find_roi_at(self, store, image_key: str, frame_number: int, point: Point) -> Optional[ROIEntry]:
        """
        Topmost visible ROI containing a point, or None.

        Args:
            store: AnnotationStore to search
            image_key: SOP Instance UID
            frame_number: Displayed frame
            point: Point in image coordinates

        Returns:
            The most recently added ROI that contains the point
        """
        candidates = [
            e for e in store.visible_for_image_and_frame(image_key, frame_number)
            if isinstance(e, ROIEntry)
        ]
        for roi in reversed(candidates):
            if roi_contains_point(roi, point):
                return roi
        return None
