"""
DICOM Calibration Utilities

This module resolves pixel-to-physical calibration for measurements:
- Pixel spacing string parsing (DICOM DS multi-value "row\\column")
- Source priority: Pixel Spacing > Imager Pixel Spacing > Nominal Scanned
- Manual two-point calibration
- Radiographic magnification correction
- Distance/area conversions and display formatting

Inputs:
    - Pixel spacing strings from the metadata collaborator
    - pydicom.Dataset objects (optional convenience path)
    - Pixel distances and known physical distances

Outputs:
    - Calibration values
    - Converted and formatted distances

Requirements:
    - pydicom library
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from pydicom.dataset import Dataset
from pydicom.multival import MultiValue

from utils.debug_log import annotation_debug


class CalibrationSource(str, Enum):
    """Where a calibration came from."""
    PIXEL_SPACING = "PIXEL_SPACING"                  # (0028,0030)
    IMAGER_PIXEL_SPACING = "IMAGER_PIXEL_SPACING"    # (0018,1164)
    NOMINAL_SCANNED = "NOMINAL_SCANNED"              # (0018,2010)
    MANUAL = "MANUAL"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Calibration:
    """
    Pixel spacing calibration in mm/pixel.

    A calibration is valid only when both spacings are positive; the
    uncalibrated instance has both spacings 0 and source UNKNOWN.
    """
    row_spacing_mm: float = 0.0
    col_spacing_mm: float = 0.0
    source: CalibrationSource = CalibrationSource.UNKNOWN

    @property
    def is_calibrated(self) -> bool:
        return self.row_spacing_mm > 0 and self.col_spacing_mm > 0

    @property
    def average_spacing(self) -> float:
        return (self.row_spacing_mm + self.col_spacing_mm) / 2.0

    def as_tuple(self) -> Optional[Tuple[float, float]]:
        """(row_spacing, column_spacing) or None when uncalibrated."""
        if not self.is_calibrated:
            return None
        return (self.row_spacing_mm, self.col_spacing_mm)


UNCALIBRATED = Calibration()

# Conversion factors from mm for display units
_MM_PER_UNIT = {
    "mm": 1.0,
    "cm": 10.0,
    "in": 25.4,
}


def parse_pixel_spacing(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """
    Parse a DICOM pixel spacing string.

    The value must hold exactly two backslash-separated decimal tokens
    ("row\\column"), each positive and finite. Whitespace around tokens
    is ignored.

    Args:
        value: Pixel spacing string, e.g. "0.5\\0.5"

    Returns:
        Tuple of (row_spacing, column_spacing) in mm, or None if invalid
    """
    if not isinstance(value, str):
        return None
    tokens = value.split("\\")
    if len(tokens) != 2:
        return None
    try:
        row = float(tokens[0].strip())
        col = float(tokens[1].strip())
    except ValueError:
        return None
    if not (math.isfinite(row) and math.isfinite(col)):
        return None
    if row <= 0 or col <= 0:
        return None
    return (row, col)


def _calibration_from_string(value: Optional[str], source: CalibrationSource) -> Calibration:
    spacing = parse_pixel_spacing(value)
    if spacing is None:
        return UNCALIBRATED
    return Calibration(spacing[0], spacing[1], source)


def calibration_from_pixel_spacing(value: Optional[str]) -> Calibration:
    """Calibration from a Pixel Spacing (0028,0030) string, or UNCALIBRATED."""
    return _calibration_from_string(value, CalibrationSource.PIXEL_SPACING)


def calibration_from_imager_pixel_spacing(value: Optional[str]) -> Calibration:
    """Calibration from an Imager Pixel Spacing (0018,1164) string, or UNCALIBRATED."""
    return _calibration_from_string(value, CalibrationSource.IMAGER_PIXEL_SPACING)


def calibration_from_nominal_scanned_pixel_spacing(value: Optional[str]) -> Calibration:
    """Calibration from a Nominal Scanned Pixel Spacing (0018,2010) string, or UNCALIBRATED."""
    return _calibration_from_string(value, CalibrationSource.NOMINAL_SCANNED)


def resolve_calibration(pixel_spacing: Optional[str] = None,
                        imager_pixel_spacing: Optional[str] = None,
                        nominal_scanned_pixel_spacing: Optional[str] = None) -> Calibration:
    """
    Resolve the best calibration from the available DICOM spacing values.

    Checks sources in priority order:
    1. Pixel Spacing (0028,0030) - primary
    2. Imager Pixel Spacing (0018,1164) - fallback
    3. Nominal Scanned Pixel Spacing (0018,2010) - fallback

    The first value that parses validly wins; absent or malformed values
    fall through to the next source.

    Args:
        pixel_spacing: Pixel Spacing string, if available
        imager_pixel_spacing: Imager Pixel Spacing string, if available
        nominal_scanned_pixel_spacing: Nominal Scanned Pixel Spacing string, if available

    Returns:
        Best available Calibration, or UNCALIBRATED
    """
    candidates = (
        (pixel_spacing, calibration_from_pixel_spacing),
        (imager_pixel_spacing, calibration_from_imager_pixel_spacing),
        (nominal_scanned_pixel_spacing, calibration_from_nominal_scanned_pixel_spacing),
    )
    for value, factory in candidates:
        if value is None:
            continue
        calibration = factory(value)
        if calibration.is_calibrated:
            return calibration
        annotation_debug(f"Ignoring unusable spacing value {value!r}")
    return UNCALIBRATED


def calibration_from_manual(pixel_distance: float, known_distance_mm: float) -> Calibration:
    """
    Create an isotropic calibration from a known physical distance.

    Args:
        pixel_distance: Distance in pixels between two reference points
        known_distance_mm: Physical distance between them in mm

    Returns:
        Manual Calibration, or UNCALIBRATED if either input is not positive
    """
    if not (pixel_distance > 0 and known_distance_mm > 0):
        return UNCALIBRATED
    spacing = known_distance_mm / pixel_distance
    return Calibration(spacing, spacing, CalibrationSource.MANUAL)


def apply_magnification_correction(calibration: Calibration, factor: float) -> Calibration:
    """
    Correct a calibration for radiographic magnification (0018,1114).

    Args:
        calibration: Base calibration
        factor: Magnification factor (> 1.0 means magnified)

    Returns:
        Corrected calibration; the input unchanged if factor <= 0 or uncalibrated
    """
    if not (factor > 0) or not calibration.is_calibrated:
        return calibration
    return Calibration(
        calibration.row_spacing_mm / factor,
        calibration.col_spacing_mm / factor,
        calibration.source,
    )


def _dataset_value_as_string(dataset: Dataset, keyword: str) -> Optional[str]:
    """Render a DS multi-value element back into its backslash-separated form."""
    value: Any = dataset.get(keyword)
    if value is None:
        return None
    if isinstance(value, (MultiValue, list, tuple)):
        return "\\".join(str(v) for v in value)
    return str(value)


def calibration_from_dataset(dataset: Dataset) -> Calibration:
    """
    Resolve calibration directly from a pydicom Dataset.

    Reads Pixel Spacing, Imager Pixel Spacing and Nominal Scanned Pixel
    Spacing and resolves them in priority order. When the winning source is
    Imager Pixel Spacing, Estimated Radiographic Magnification Factor is
    applied as well, since that spacing is measured at the detector.

    Args:
        dataset: pydicom Dataset

    Returns:
        Calibration, or UNCALIBRATED if no usable spacing is present
    """
    calibration = resolve_calibration(
        _dataset_value_as_string(dataset, "PixelSpacing"),
        _dataset_value_as_string(dataset, "ImagerPixelSpacing"),
        _dataset_value_as_string(dataset, "NominalScannedPixelSpacing"),
    )
    if calibration.source is CalibrationSource.IMAGER_PIXEL_SPACING:
        factor = dataset.get("EstimatedRadiographicMagnificationFactor")
        if factor is not None:
            try:
                calibration = apply_magnification_correction(calibration, float(factor))
            except (TypeError, ValueError):
                annotation_debug(f"Ignoring invalid magnification factor {factor!r}")
    return calibration


def physical_distance(dx: float, dy: float, calibration: Calibration) -> Optional[float]:
    """
    Direction-aware physical length of a pixel displacement.

    distance = sqrt((dx * column_spacing)^2 + (dy * row_spacing)^2)

    Args:
        dx: Displacement along X (columns) in pixels
        dy: Displacement along Y (rows) in pixels
        calibration: Calibration to apply

    Returns:
        Length in mm, or None when uncalibrated
    """
    if not calibration.is_calibrated:
        return None
    dx_mm = dx * calibration.col_spacing_mm
    dy_mm = dy * calibration.row_spacing_mm
    return math.sqrt(dx_mm * dx_mm + dy_mm * dy_mm)


def physical_area(area_pixels: float, calibration: Calibration) -> Optional[float]:
    """Area in mm² (pixels² * row_spacing * column_spacing), or None when uncalibrated."""
    if not calibration.is_calibrated:
        return None
    return area_pixels * calibration.row_spacing_mm * calibration.col_spacing_mm


def physical_perimeter(perimeter_pixels: float, calibration: Calibration) -> Optional[float]:
    """Perimeter in mm using the average spacing, or None when uncalibrated."""
    if not calibration.is_calibrated:
        return None
    return perimeter_pixels * calibration.average_spacing


def pixels_to_mm(pixels: float, calibration: Calibration, dimension: int = 0) -> Optional[float]:
    """
    Convert a pixel distance along one axis to millimeters.

    Args:
        pixels: Distance in pixels
        calibration: Calibration to apply
        dimension: 0 for row (Y), 1 for column (X)

    Returns:
        Distance in mm, or None if uncalibrated or dimension is invalid
    """
    if not calibration.is_calibrated:
        return None
    if dimension == 0:
        return pixels * calibration.row_spacing_mm
    elif dimension == 1:
        return pixels * calibration.col_spacing_mm
    return None


def mm_to_pixels(mm: float, calibration: Calibration, dimension: int = 0) -> Optional[float]:
    """Inverse of pixels_to_mm."""
    if not calibration.is_calibrated:
        return None
    if dimension == 0:
        return mm / calibration.row_spacing_mm
    elif dimension == 1:
        return mm / calibration.col_spacing_mm
    return None


def convert_mm(mm: float, unit: str = "mm") -> float:
    """Convert a value in mm to "mm", "cm" or "in". Unknown units return mm."""
    return mm / _MM_PER_UNIT.get(unit, 1.0)


def format_distance(pixels: float, mm: Optional[float] = None, unit: str = "mm") -> str:
    """
    Format a distance as a display string.

    Args:
        pixels: Distance in pixels
        mm: Physical distance in mm, if calibrated
        unit: Display unit ("mm", "cm" or "in")

    Returns:
        Formatted string (e.g., "10.5 mm" or "25.0 px")
    """
    if mm is not None:
        unit = unit if unit in _MM_PER_UNIT else "mm"
        return f"{convert_mm(mm, unit):.1f} {unit}"
    return f"{pixels:.1f} px"


def format_area(area_pixels: float, area_mm2: Optional[float] = None, unit: str = "mm") -> str:
    """Format an area; falls back to px² when uncalibrated."""
    if area_mm2 is not None:
        if unit == "cm":
            return f"{area_mm2 / 100.0:.2f} cm²"
        if unit == "in":
            return f"{area_mm2 / 645.16:.3f} in²"
        return f"{area_mm2:.1f} mm²"
    return f"{area_pixels:.0f} px²"


def calibration_source_label(source: CalibrationSource) -> str:
    labels = {
        CalibrationSource.PIXEL_SPACING: "Pixel Spacing",
        CalibrationSource.IMAGER_PIXEL_SPACING: "Imager Pixel Spacing",
        CalibrationSource.NOMINAL_SCANNED: "Nominal Scanned",
        CalibrationSource.MANUAL: "Manual",
        CalibrationSource.UNKNOWN: "Unknown",
    }
    return labels[source]


def format_calibration(calibration: Calibration) -> str:
    """Human-readable calibration description."""
    if not calibration.is_calibrated:
        return "Uncalibrated"
    source = calibration_source_label(calibration.source)
    if calibration.row_spacing_mm == calibration.col_spacing_mm:
        return f"{calibration.row_spacing_mm:.4f} mm/px ({source})"
    return f"{calibration.row_spacing_mm:.4f} × {calibration.col_spacing_mm:.4f} mm/px ({source})"


def calibration_indicator(calibration: Calibration) -> str:
    """Short overlay indicator text."""
    if not calibration.is_calibrated:
        return "Uncalibrated"
    indicators = {
        CalibrationSource.PIXEL_SPACING: "Calibrated (PS)",
        CalibrationSource.IMAGER_PIXEL_SPACING: "Calibrated (IPS)",
        CalibrationSource.NOMINAL_SCANNED: "Calibrated (NPS)",
        CalibrationSource.MANUAL: "Manual Calibration",
        CalibrationSource.UNKNOWN: "Unknown",
    }
    return indicators[calibration.source]
