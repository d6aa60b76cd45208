"""
Measurement Export Service

Flattens measurement and ROI entries into report-ready forms:
- DICOM SR coded concepts and UCUM units per tool (TID 1500 / CID 7470)
- String-valued dictionaries and JSON text
- CSV text with a fixed header row
- Numeric SR measurement rows for a structured report writer

Inputs:
    - MeasurementEntry / ROIEntry records
    - Calibration (single, or per image key)

Outputs:
    - List of dicts, JSON string, CSV string
    - SR measurement rows

Requirements:
    - pydicom (pydicom.sr.coding.Code) for SR concepts
    - csv, json (standard library)
"""

import csv
import io
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydicom.sr.coding import Code

from tools.measurement_items import (
    AngleMeasurementResult,
    AnyEntry,
    BidirectionalMeasurementResult,
    CobbAngleMeasurementResult,
    LinearMeasurementResult,
    ROIEntry,
    ToolType,
)
from tools.measurement_tool import measure_entry
from tools.roi_manager import compute_roi_statistics
from utils.debug_log import debug_log
from utils.dicom_utils import UNCALIBRATED, Calibration

# SR concept names (PS3.16 CID 7470, TID 1500)
MEASUREMENT_GROUP = Code("125007", "DCM", "Measurement Group")
LENGTH = Code("410668003", "SCT", "Length")
ANGLE = Code("364499001", "SCT", "Angle")
AREA = Code("42798000", "SCT", "Area")
PERIMETER = Code("131191004", "SCT", "Perimeter")
MEAN = Code("373098007", "SCT", "Mean")
STANDARD_DEVIATION = Code("386136009", "SCT", "Standard Deviation")
MINIMUM = Code("255605001", "SCT", "Minimum")
MAXIMUM = Code("56851009", "SCT", "Maximum")

# UCUM unit codes
UCUM_MM = "mm"
UCUM_MM2 = "mm2"
UCUM_DEGREES = "deg"
UCUM_NO_UNITS = "1"

SR_CONCEPTS: Dict[ToolType, Code] = {
    ToolType.LENGTH: LENGTH,
    ToolType.BIDIRECTIONAL: LENGTH,
    ToolType.ANGLE: ANGLE,
    ToolType.COBB_ANGLE: ANGLE,
    ToolType.CIRCULAR_ROI: AREA,
    ToolType.RECTANGULAR_ROI: AREA,
    ToolType.ELLIPTICAL_ROI: AREA,
    ToolType.FREEHAND_ROI: AREA,
    ToolType.POLYGONAL_ROI: AREA,
    ToolType.MARKER: MEASUREMENT_GROUP,
    ToolType.ARROW_ANNOTATION: MEASUREMENT_GROUP,
    ToolType.TEXT_ANNOTATION: MEASUREMENT_GROUP,
}

UCUM_UNITS: Dict[ToolType, str] = {
    ToolType.LENGTH: UCUM_MM,
    ToolType.BIDIRECTIONAL: UCUM_MM,
    ToolType.ANGLE: UCUM_DEGREES,
    ToolType.COBB_ANGLE: UCUM_DEGREES,
    ToolType.CIRCULAR_ROI: UCUM_MM2,
    ToolType.RECTANGULAR_ROI: UCUM_MM2,
    ToolType.ELLIPTICAL_ROI: UCUM_MM2,
    ToolType.FREEHAND_ROI: UCUM_MM2,
    ToolType.POLYGONAL_ROI: UCUM_MM2,
    ToolType.MARKER: "",
    ToolType.ARROW_ANNOTATION: "",
    ToolType.TEXT_ANNOTATION: "",
}

CSV_HEADER = [
    "ID", "Type", "Label", "ImageKey", "Frame", "PointCount",
    "Point0_X", "Point0_Y", "Point1_X", "Point1_Y",
    "LengthPx", "LengthMM", "AngleDeg",
]

DEFAULT_PRECISION = 4

# A single calibration for every entry, or one per image key
CalibrationArg = Union[Calibration, Mapping[str, Calibration]]


def sr_concept(tool_type: ToolType) -> Code:
    """SR concept name for a tool."""
    return SR_CONCEPTS[ToolType(tool_type)]


def ucum_unit(tool_type: ToolType) -> str:
    """UCUM unit of a tool's primary value; empty for non-numeric annotations."""
    return UCUM_UNITS[ToolType(tool_type)]


def precision_from_config(config_manager) -> int:
    """Export precision from a ConfigManager, or the default when none is given."""
    if config_manager is None:
        return DEFAULT_PRECISION
    return int(config_manager.get("export_float_precision", DEFAULT_PRECISION))


def _calibration_for(entry: AnyEntry, calibration: CalibrationArg) -> Calibration:
    if isinstance(calibration, Calibration):
        return calibration
    return calibration.get(entry.image_key, UNCALIBRATED)


def _fmt(value: float, precision: int) -> str:
    return f"{value:.{precision}f}"


def measurement_to_dict(entry: AnyEntry, calibration: CalibrationArg = UNCALIBRATED,
                        precision: int = DEFAULT_PRECISION) -> Dict[str, str]:
    """
    Flatten one entry into a string-valued dictionary.

    Points appear as point{i}_x / point{i}_y. Derived values are added per
    tool; physical values only when the image is calibrated.

    Args:
        entry: Entry to flatten
        calibration: Calibration, or {image_key: Calibration}
        precision: Decimal places for numeric values

    Returns:
        Dictionary of field name to string value
    """
    cal = _calibration_for(entry, calibration)
    result: Dict[str, str] = {
        "id": entry.id,
        "type": entry.tool_type.value,
        "label": entry.label,
        "imageKey": entry.image_key,
        "frameNumber": str(entry.frame_number),
        "pointCount": str(len(entry.points)),
    }
    for i, point in enumerate(entry.points):
        result[f"point{i}_x"] = _fmt(point.x, precision)
        result[f"point{i}_y"] = _fmt(point.y, precision)

    measured = measure_entry(entry, cal)
    if isinstance(measured, LinearMeasurementResult):
        result["lengthPixels"] = _fmt(measured.length_pixels, precision)
        if measured.length_mm is not None:
            result["lengthMM"] = _fmt(measured.length_mm, precision)
    elif isinstance(measured, AngleMeasurementResult):
        result["angleDegrees"] = _fmt(measured.angle_degrees, precision)
    elif isinstance(measured, CobbAngleMeasurementResult):
        result["cobbAngleDegrees"] = _fmt(measured.angle_degrees, precision)
    elif isinstance(measured, BidirectionalMeasurementResult):
        result["longAxisPixels"] = _fmt(measured.long_axis_pixels, precision)
        result["shortAxisPixels"] = _fmt(measured.short_axis_pixels, precision)
        if measured.long_axis_mm is not None:
            result["longAxisMM"] = _fmt(measured.long_axis_mm, precision)
        if measured.short_axis_mm is not None:
            result["shortAxisMM"] = _fmt(measured.short_axis_mm, precision)

    if isinstance(entry, ROIEntry):
        # Geometry follows the calibration being exported; pixel stats are the stored snapshot
        stats = compute_roi_statistics(entry, cal)
        result["areaPixels"] = _fmt(stats.area_pixels, precision)
        if stats.area_mm2 is not None:
            result["areaMM2"] = _fmt(stats.area_mm2, precision)
        result["perimeterPixels"] = _fmt(stats.perimeter_pixels, precision)
        if stats.perimeter_mm is not None:
            result["perimeterMM"] = _fmt(stats.perimeter_mm, precision)
        result["mean"] = _fmt(stats.mean, precision)
        result["stdDev"] = _fmt(stats.std_dev, precision)
        result["min"] = _fmt(stats.minimum, precision)
        result["max"] = _fmt(stats.maximum, precision)
        result["pixelCount"] = str(stats.pixel_count)

    return result


def measurements_to_json(entries: Iterable[AnyEntry], calibration: CalibrationArg = UNCALIBRATED,
                         precision: int = DEFAULT_PRECISION) -> List[Dict[str, str]]:
    """List of flattened entries; empty input gives an empty list."""
    return [measurement_to_dict(entry, calibration, precision) for entry in entries]


def measurements_to_json_string(entries: Iterable[AnyEntry], calibration: CalibrationArg = UNCALIBRATED,
                                precision: int = DEFAULT_PRECISION, indent: Optional[int] = 2) -> str:
    """JSON text of measurements_to_json."""
    records = measurements_to_json(entries, calibration, precision)
    debug_log("measurement_export_service.measurements_to_json_string",
              "Exporting JSON", {"count": len(records)})
    return json.dumps(records, indent=indent, ensure_ascii=False)


def measurement_to_csv_row(entry: AnyEntry, calibration: CalibrationArg = UNCALIBRATED,
                           precision: int = DEFAULT_PRECISION) -> List[str]:
    """
    CSV fields of one entry, in CSV_HEADER order.

    Only the first two points are listed. LengthPx/LengthMM are filled for
    length measurements and AngleDeg for angle measurements.
    """
    cal = _calibration_for(entry, calibration)
    points = entry.points
    p0x = _fmt(points[0].x, precision) if len(points) > 0 else ""
    p0y = _fmt(points[0].y, precision) if len(points) > 0 else ""
    p1x = _fmt(points[1].x, precision) if len(points) > 1 else ""
    p1y = _fmt(points[1].y, precision) if len(points) > 1 else ""

    length_px = ""
    length_mm = ""
    angle_deg = ""
    measured = measure_entry(entry, cal)
    if isinstance(measured, LinearMeasurementResult):
        length_px = _fmt(measured.length_pixels, precision)
        if measured.length_mm is not None:
            length_mm = _fmt(measured.length_mm, precision)
    elif isinstance(measured, AngleMeasurementResult):
        angle_deg = _fmt(measured.angle_degrees, precision)

    return [
        entry.id,
        entry.tool_type.value,
        entry.label,
        entry.image_key,
        str(entry.frame_number),
        str(len(points)),
        p0x, p0y, p1x, p1y,
        length_px, length_mm, angle_deg,
    ]


def measurements_to_csv(entries: Iterable[AnyEntry], calibration: CalibrationArg = UNCALIBRATED,
                        precision: int = DEFAULT_PRECISION) -> str:
    """
    CSV text with a header row and one row per entry.

    Fields containing commas, quotes or line breaks are quoted by the csv
    module. Rows are separated by "\\n" with no trailing newline, so empty
    input gives the header line alone.

    Args:
        entries: Entries to export
        calibration: Calibration, or {image_key: Calibration}
        precision: Decimal places for numeric values

    Returns:
        CSV string
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    count = 0
    for entry in entries:
        writer.writerow(measurement_to_csv_row(entry, calibration, precision))
        count += 1
    debug_log("measurement_export_service.measurements_to_csv", "Exporting CSV", {"count": count})
    return buffer.getvalue().rstrip("\n")


def _sr_item(entry: AnyEntry, concept: Code, value: float, unit: str,
             label: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "imageKey": entry.image_key,
        "frameNumber": entry.frame_number,
        "concept": concept,
        "value": value,
        "unit": unit,
        "label": entry.label if label is None else label,
    }


def sr_measurement_items(entries: Iterable[AnyEntry],
                         calibration: CalibrationArg = UNCALIBRATED) -> List[Dict[str, Any]]:
    """
    Numeric measurement rows for a TID 1500 Measurement Report writer.

    Lengths, areas and perimeters are reported in mm / mm2 and are
    omitted when the image is uncalibrated. Angles are always reported.
    ROI pixel statistics are reported without units. Annotations without a
    numeric value (markers, arrows, text) produce no rows.

    Args:
        entries: Entries to report
        calibration: Calibration, or {image_key: Calibration}

    Returns:
        List of {id, imageKey, frameNumber, concept, value, unit, label}
    """
    items: List[Dict[str, Any]] = []
    for entry in entries:
        cal = _calibration_for(entry, calibration)
        measured = measure_entry(entry, cal)
        if isinstance(measured, LinearMeasurementResult):
            if measured.length_mm is not None:
                items.append(_sr_item(entry, LENGTH, measured.length_mm, UCUM_MM))
        elif isinstance(measured, (AngleMeasurementResult, CobbAngleMeasurementResult)):
            items.append(_sr_item(entry, ANGLE, measured.angle_degrees, UCUM_DEGREES))
        elif isinstance(measured, BidirectionalMeasurementResult):
            if measured.long_axis_mm is not None:
                items.append(_sr_item(entry, LENGTH, measured.long_axis_mm, UCUM_MM,
                                      f"{entry.label} (long axis)"))
            if measured.short_axis_mm is not None:
                items.append(_sr_item(entry, LENGTH, measured.short_axis_mm, UCUM_MM,
                                      f"{entry.label} (short axis)"))

        if isinstance(entry, ROIEntry):
            stats = compute_roi_statistics(entry, cal)
            if stats.area_mm2 is not None:
                items.append(_sr_item(entry, AREA, stats.area_mm2, UCUM_MM2))
            if stats.perimeter_mm is not None:
                items.append(_sr_item(entry, PERIMETER, stats.perimeter_mm, UCUM_MM))
            if stats.pixel_count > 0:
                items.append(_sr_item(entry, MEAN, stats.mean, UCUM_NO_UNITS))
                items.append(_sr_item(entry, STANDARD_DEVIATION, stats.std_dev, UCUM_NO_UNITS))
                items.append(_sr_item(entry, MINIMUM, stats.minimum, UCUM_NO_UNITS))
                items.append(_sr_item(entry, MAXIMUM, stats.maximum, UCUM_NO_UNITS))
    return items
