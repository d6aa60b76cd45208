"""
Unit tests for measurement computation and the drawing tool (tools.measurement_tool).

Tests measure_* functions, formatting, measure_entry dispatch and the
MeasurementTool state machine: auto-commit, freeform finish, cancel,
calibration refresh, edits and hit testing.
Runnable with pytest or unittest.
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import numpy as np
from pydicom.dataset import Dataset

from core.annotation_store import AnnotationStore
from tools.measurement_items import ROIEntry, ToolType, make_entry
from tools.measurement_tool import (
    MeasurementTool,
    format_angle,
    format_length,
    measure_angle,
    measure_bidirectional,
    measure_cobb_angle,
    measure_entry,
    measure_length,
)
from utils.dicom_utils import UNCALIBRATED, Calibration, CalibrationSource
from utils.geometry import Point

HALF_MM = Calibration(0.5, 0.5, CalibrationSource.PIXEL_SPACING)


class TestMeasureFunctions(unittest.TestCase):
    """Tests for the measure_* functions."""

    def test_length_calibrated(self):
        result = measure_length(Point(0, 0), Point(100, 0), HALF_MM)
        self.assertAlmostEqual(result.length_pixels, 100.0)
        self.assertAlmostEqual(result.length_mm, 50.0)

    def test_length_uncalibrated(self):
        result = measure_length(Point(0, 0), Point(3, 4))
        self.assertAlmostEqual(result.length_pixels, 5.0)
        self.assertIsNone(result.length_mm)

    def test_length_anisotropic(self):
        cal = Calibration(1.0, 0.5, CalibrationSource.PIXEL_SPACING)
        self.assertAlmostEqual(measure_length(Point(0, 0), Point(10, 0), cal).length_mm, 5.0)
        self.assertAlmostEqual(measure_length(Point(0, 0), Point(0, 10), cal).length_mm, 10.0)

    def test_angle(self):
        result = measure_angle(Point(0, 0), Point(10, 0), Point(0, 10))
        self.assertAlmostEqual(result.angle_degrees, 90.0)
        self.assertIsNone(measure_angle(Point(0, 0), Point(0, 0), Point(0, 10)))

    def test_cobb(self):
        result = measure_cobb_angle(Point(0, 0), Point(10, 0), Point(0, 5), Point(10, 15))
        self.assertAlmostEqual(result.angle_degrees, 45.0)

    def test_bidirectional(self):
        result = measure_bidirectional(Point(0, 0), Point(20, 0), Point(10, -4), Point(10, 4), HALF_MM)
        self.assertAlmostEqual(result.long_axis_pixels, 20.0)
        self.assertAlmostEqual(result.short_axis_pixels, 8.0)
        self.assertAlmostEqual(result.long_axis_mm, 10.0)
        self.assertAlmostEqual(result.short_axis_mm, 4.0)

    def test_formatting(self):
        self.assertEqual(format_length(measure_length(Point(0, 0), Point(100, 0), HALF_MM)), "50.0 mm")
        self.assertEqual(format_length(measure_length(Point(0, 0), Point(100, 0))), "100.0 px")
        self.assertEqual(format_angle(45.04), "45.0°")

    def test_measure_entry_angle_uses_middle_vertex(self):
        entry = make_entry(ToolType.ANGLE, [(10, 0), (0, 0), (0, 10)])
        self.assertAlmostEqual(measure_entry(entry).angle_degrees, 90.0)

    def test_measure_entry_non_numeric(self):
        self.assertIsNone(measure_entry(make_entry(ToolType.MARKER, [(1, 1)])))
        self.assertIsNone(measure_entry(make_entry(ToolType.CIRCULAR_ROI, [(1, 1), (2, 2)])))

    def test_measure_entry_wrong_arity(self):
        self.assertIsNone(measure_entry(make_entry(ToolType.LENGTH, [(1, 1)])))


class TestMeasurementToolDrawing(unittest.TestCase):
    """Tests for tool selection, point collection and commit."""

    def setUp(self):
        self.store = AnnotationStore()
        self.tool = MeasurementTool(self.store)
        self.tool.set_current_image("img", 2)

    def test_no_tool_selected(self):
        self.assertIsNone(self.tool.add_point(Point(1, 1)))
        self.assertFalse(self.tool.is_drawing)

    def test_length_auto_commits(self):
        self.tool.select_tool(ToolType.LENGTH)
        self.assertIsNone(self.tool.add_point(Point(0, 0)))
        self.assertTrue(self.tool.is_drawing)
        entry = self.tool.add_point(Point(10, 0))
        self.assertIsNotNone(entry)
        self.assertFalse(self.tool.is_drawing)
        self.assertEqual(entry.image_key, "img")
        self.assertEqual(entry.frame_number, 2)
        self.assertEqual(entry.label, "Length")
        # Completion is exactly one add
        self.assertEqual(self.store.undo_count, 1)
        self.assertEqual(self.tool.current_measurements(), [entry])

    def test_partial_drawing_not_stored(self):
        self.tool.select_tool(ToolType.ANGLE)
        self.tool.add_point(Point(0, 0))
        self.tool.add_point(Point(5, 0))
        self.assertEqual(len(self.store), 0)
        self.tool.cancel_drawing()
        self.assertFalse(self.tool.is_drawing)
        self.assertEqual(len(self.store), 0)

    def test_switching_tool_cancels(self):
        self.tool.select_tool(ToolType.LENGTH)
        self.tool.add_point(Point(0, 0))
        self.tool.select_tool(ToolType.MARKER)
        self.assertFalse(self.tool.is_drawing)
        marker = self.tool.add_point(Point(3, 3))
        self.assertEqual(marker.tool_type, ToolType.MARKER)

    def test_freeform_needs_explicit_finish(self):
        self.tool.select_tool(ToolType.POLYGONAL_ROI)
        for p in [(0, 0), (10, 0)]:
            self.assertIsNone(self.tool.add_point(Point(*p)))
        self.assertIsNone(self.tool.finish_freeform())
        self.assertTrue(self.tool.is_drawing)
        self.tool.add_point(Point(10, 10))
        roi = self.tool.finish_freeform()
        self.assertIsInstance(roi, ROIEntry)
        self.assertAlmostEqual(roi.statistics.area_pixels, 50.0)
        self.assertEqual(len(self.store), 1)

    def test_finish_freeform_ignored_for_fixed_tools(self):
        self.tool.select_tool(ToolType.COBB_ANGLE)
        for p in [(0, 0), (1, 0), (2, 0)]:
            self.tool.add_point(Point(*p))
        self.assertIsNone(self.tool.finish_freeform())
        self.assertEqual(len(self.store), 0)

    def test_roi_commit_uses_pixel_array_and_calibration(self):
        self.tool.set_calibration(HALF_MM)
        self.tool.set_pixel_array(np.full((32, 32), 9, dtype=np.int16))
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        roi = self.tool.add_point(Point(4, 4))
        self.assertEqual(roi.statistics.mean, 9.0)
        self.assertEqual(roi.statistics.pixel_count, 25)
        self.assertAlmostEqual(roi.statistics.area_mm2, 4.0)

    def test_undo_redo_passthrough(self):
        self.tool.select_tool(ToolType.MARKER)
        self.tool.add_point(Point(1, 1))
        self.assertTrue(self.tool.undo())
        self.assertEqual(self.tool.current_measurements(), [])
        self.assertTrue(self.tool.redo())
        self.assertEqual(len(self.tool.current_measurements()), 1)


class TestMeasurementToolCalibration(unittest.TestCase):
    """Tests for per-image calibration handling."""

    def setUp(self):
        self.store = AnnotationStore()
        self.tool = MeasurementTool(self.store)
        self.tool.set_current_image("img")

    def test_default_uncalibrated(self):
        self.assertIs(self.tool.get_calibration(), UNCALIBRATED)

    def test_calibration_refreshes_rois(self):
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        roi = self.tool.add_point(Point(10, 10))
        self.assertIsNone(roi.statistics.area_mm2)
        self.assertEqual(self.tool.set_calibration(HALF_MM), 1)
        self.assertAlmostEqual(self.store.get(roi.id).statistics.area_mm2, 25.0)

    def _draw_rectangle(self):
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        return self.tool.add_point(Point(10, 10))

    def test_calibration_is_not_an_undo_step(self):
        self._draw_rectangle()
        self.tool.select_tool(ToolType.LENGTH)
        self.tool.add_point(Point(0, 0))
        length = self.tool.add_point(Point(5, 0))
        self.tool.undo()
        undo_count = self.store.undo_count
        self.tool.set_calibration(HALF_MM)
        self.assertTrue(self.store.can_redo)
        self.assertEqual(self.store.undo_count, undo_count)
        self.assertTrue(self.tool.redo())
        self.assertIn(length.id, self.store)

    def test_undo_after_calibration_keeps_statistics_in_step(self):
        roi = self._draw_rectangle()
        self.tool.move_point(roi.id, 1, Point(20, 10))
        self.tool.set_calibration(HALF_MM)
        self.assertAlmostEqual(self.store.get(roi.id).statistics.area_mm2, 50.0)
        self.assertTrue(self.tool.undo())
        restored = self.store.get(roi.id)
        self.assertEqual(restored.points[1], Point(10, 10))
        self.assertAlmostEqual(restored.statistics.area_mm2, 25.0)
        self.assertTrue(self.tool.redo())
        self.assertAlmostEqual(self.store.get(roi.id).statistics.area_mm2, 50.0)

    def test_undo_after_recalibration_uses_current_calibration(self):
        self.tool.set_calibration(HALF_MM)
        roi = self._draw_rectangle()
        self.tool.update_label(roi.id, "Lesion")
        self.tool.set_calibration(Calibration(1.0, 1.0, CalibrationSource.MANUAL))
        self.tool.undo()
        restored = self.store.get(roi.id)
        self.assertEqual(restored.label, "Rectangular ROI")
        self.assertAlmostEqual(restored.statistics.area_mm2,
                               restored.statistics.area_pixels * self.tool.get_calibration().row_spacing_mm ** 2)

    def test_manual_calibration(self):
        cal = self.tool.set_manual_calibration(200.0, 20.0)
        self.assertEqual(cal.source, CalibrationSource.MANUAL)
        self.assertAlmostEqual(self.tool.get_calibration().row_spacing_mm, 0.1)

    def test_calibration_from_dataset(self):
        ds = Dataset()
        ds.SOPInstanceUID = "1.2.3.4"
        ds.PixelSpacing = [0.3, 0.3]
        cal = self.tool.set_calibration_from_dataset(ds)
        self.assertEqual(cal.source, CalibrationSource.PIXEL_SPACING)
        self.assertIs(self.tool.get_calibration("1.2.3.4"), cal)
        self.assertIs(self.tool.get_calibration("img"), UNCALIBRATED)

    def test_result_for_uses_image_calibration(self):
        self.tool.set_calibration(HALF_MM)
        self.tool.select_tool(ToolType.LENGTH)
        self.tool.add_point(Point(0, 0))
        entry = self.tool.add_point(Point(100, 0))
        self.assertAlmostEqual(self.tool.result_for(entry).length_mm, 50.0)


class TestMeasurementToolEdits(unittest.TestCase):
    """Tests for visibility, lock, label, move, delete and hit testing."""

    def setUp(self):
        self.store = AnnotationStore()
        self.tool = MeasurementTool(self.store)
        self.tool.set_current_image("img")
        self.tool.select_tool(ToolType.LENGTH)
        self.tool.add_point(Point(0, 0))
        self.entry = self.tool.add_point(Point(10, 0))

    def test_toggle_visibility(self):
        hidden = self.tool.toggle_visibility(self.entry.id)
        self.assertFalse(hidden.is_visible)
        self.assertEqual(self.tool.visible_measurements(), [])
        self.tool.undo()
        self.assertEqual(len(self.tool.visible_measurements()), 1)

    def test_toggle_lock_blocks_move(self):
        self.tool.toggle_lock(self.entry.id)
        self.assertIsNone(self.tool.move_point(self.entry.id, 1, Point(20, 0)))
        self.assertEqual(self.store.get(self.entry.id).points[1], Point(10, 0))

    def test_move_point(self):
        moved = self.tool.move_point(self.entry.id, 1, Point(20, 0))
        self.assertEqual(moved.points[1], Point(20, 0))
        self.assertEqual(moved.id, self.entry.id)
        self.assertIsNone(self.tool.move_point(self.entry.id, 5, Point(1, 1)))

    def test_move_point_recomputes_roi(self):
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        roi = self.tool.add_point(Point(10, 10))
        moved = self.tool.move_point(roi.id, 1, Point(20, 10))
        self.assertAlmostEqual(moved.statistics.area_pixels, 200.0)

    def test_move_point_without_pixels_clears_pixel_values(self):
        self.tool.set_pixel_array(np.full((32, 32), 7, dtype=np.int16))
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        roi = self.tool.add_point(Point(4, 4))
        self.assertEqual(roi.statistics.pixel_count, 25)
        self.tool.set_pixel_array(None)
        moved = self.tool.move_point(roi.id, 1, Point(8, 4))
        self.assertEqual(moved.statistics.pixel_count, 0)
        self.assertEqual(moved.statistics.mean, 0.0)
        self.assertAlmostEqual(moved.statistics.area_pixels, 32.0)

    def test_move_point_with_pixels_recomputes_values(self):
        self.tool.set_pixel_array(np.full((32, 32), 7, dtype=np.int16))
        self.tool.select_tool(ToolType.RECTANGULAR_ROI)
        self.tool.add_point(Point(0, 0))
        roi = self.tool.add_point(Point(4, 4))
        moved = self.tool.move_point(roi.id, 1, Point(8, 4))
        self.assertEqual(moved.statistics.pixel_count, 45)
        self.assertEqual(moved.statistics.mean, 7.0)

    def test_update_label(self):
        self.tool.update_label(self.entry.id, "Femur")
        self.assertEqual(self.store.get(self.entry.id).label, "Femur")
        self.assertIsNone(self.tool.update_label("missing", "x"))

    def test_delete(self):
        self.assertEqual(self.tool.delete(self.entry.id).id, self.entry.id)
        self.assertEqual(len(self.store), 0)

    def test_find_entry_at(self):
        self.assertEqual(self.tool.find_entry_at(Point(5, 3)).id, self.entry.id)
        self.assertIsNone(self.tool.find_entry_at(Point(5, 30)))


if __name__ == "__main__":
    unittest.main()
