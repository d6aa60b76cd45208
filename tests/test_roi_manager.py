"""
Unit tests for ROI geometry and statistics (tools.roi_manager).

Tests area/perimeter dispatch, containment, numpy masks, statistics
(including rescale), the calibration refresh and hit testing.
Runnable with pytest or unittest.
"""

import math
import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import numpy as np

from core.annotation_store import AnnotationStore
from tools.measurement_items import ROIStatistics, ToolType, make_entry
from tools.roi_manager import (
    ROIManager,
    compute_roi_statistics,
    roi_area_pixels,
    roi_contains_point,
    roi_mask,
    roi_perimeter_pixels,
    roi_pixel_values,
)
from utils.dicom_utils import UNCALIBRATED, Calibration, CalibrationSource
from utils.geometry import Point

HALF_MM = Calibration(0.5, 0.5, CalibrationSource.PIXEL_SPACING)


class TestROIGeometry(unittest.TestCase):
    """Tests for area, perimeter and containment per shape."""

    def test_rectangle(self):
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(10, 10), (0, 0)])
        self.assertAlmostEqual(roi_area_pixels(roi), 100.0)
        self.assertAlmostEqual(roi_perimeter_pixels(roi), 40.0)
        self.assertTrue(roi_contains_point(roi, Point(5, 5)))
        self.assertFalse(roi_contains_point(roi, Point(11, 5)))

    def test_circle(self):
        roi = make_entry(ToolType.CIRCULAR_ROI, [(0, 0), (0, 10)])
        self.assertAlmostEqual(roi_area_pixels(roi), math.pi * 100.0)
        self.assertAlmostEqual(roi_perimeter_pixels(roi), 2 * math.pi * 10.0)
        self.assertTrue(roi_contains_point(roi, Point(6, 6)))
        self.assertFalse(roi_contains_point(roi, Point(8, 8)))

    def test_ellipse(self):
        roi = make_entry(ToolType.ELLIPTICAL_ROI, [(0, 0), (20, 0), (10, -5), (10, 5)])
        self.assertAlmostEqual(roi_area_pixels(roi), math.pi * 50.0)
        self.assertTrue(roi_contains_point(roi, Point(10, 4)))

    def test_polygon(self):
        roi = make_entry(ToolType.POLYGONAL_ROI, [(0, 0), (100, 0), (100, 100), (0, 100)])
        self.assertAlmostEqual(roi_area_pixels(roi), 10000.0)
        self.assertAlmostEqual(roi_perimeter_pixels(roi), 400.0)

    def test_degenerate_shapes(self):
        roi = make_entry(ToolType.FREEHAND_ROI, [(0, 0), (1, 1)])
        self.assertIsNone(roi_area_pixels(roi))
        self.assertFalse(roi_contains_point(roi, Point(0.5, 0.5)))
        bad_ellipse = make_entry(ToolType.ELLIPTICAL_ROI, [(0, 0), (1, 1)])
        self.assertIsNone(roi_area_pixels(bad_ellipse))
        self.assertIsNone(roi_perimeter_pixels(bad_ellipse))


class TestROIMask(unittest.TestCase):
    """Tests for roi_mask and roi_pixel_values."""

    def test_rectangle_mask_is_inclusive(self):
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(1, 1), (3, 2)])
        mask = roi_mask(roi, width=6, height=5)
        self.assertEqual(mask.shape, (5, 6))
        self.assertEqual(int(mask.sum()), 6)
        self.assertTrue(mask[1, 1])
        self.assertTrue(mask[2, 3])
        self.assertFalse(mask[3, 3])

    def test_circle_mask_extends_around_center(self):
        roi = make_entry(ToolType.CIRCULAR_ROI, [(5, 5), (5, 6)])
        mask = roi_mask(roi, width=10, height=10)
        # Center plus its four neighbours
        self.assertEqual(int(mask.sum()), 5)
        self.assertTrue(mask[5, 4])
        self.assertTrue(mask[4, 5])

    def test_polygon_mask_matches_point_test(self):
        roi = make_entry(ToolType.POLYGONAL_ROI, [(1.5, 1.5), (8.5, 1.5), (8.5, 6.5), (1.5, 6.5)])
        mask = roi_mask(roi, width=10, height=10)
        for row in range(10):
            for col in range(10):
                self.assertEqual(bool(mask[row, col]), roi_contains_point(roi, Point(col, row)))
        self.assertEqual(int(mask.sum()), 7 * 5)

    def test_ellipse_mask_matches_point_test(self):
        roi = make_entry(ToolType.ELLIPTICAL_ROI, [(2, 2), (12, 12), (8, 6), (6, 8)])
        mask = roi_mask(roi, width=16, height=16)
        for row in range(16):
            for col in range(16):
                self.assertEqual(bool(mask[row, col]), roi_contains_point(roi, Point(col, row)))

    def test_mask_clipped_to_image(self):
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(-5, -5), (1, 1)])
        mask = roi_mask(roi, width=4, height=4)
        self.assertEqual(int(mask.sum()), 4)

    def test_outside_image(self):
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(50, 50), (60, 60)])
        self.assertEqual(int(roi_mask(roi, 10, 10).sum()), 0)

    def test_pixel_values(self):
        image = np.arange(25, dtype=np.int16).reshape(5, 5)
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(0, 0), (1, 1)])
        self.assertEqual(sorted(roi_pixel_values(roi, image).tolist()), [0, 1, 5, 6])

    def test_pixel_values_multichannel_uses_first_channel(self):
        image = np.zeros((4, 4, 3), dtype=np.uint8)
        image[..., 0] = 7
        roi = make_entry(ToolType.RECTANGULAR_ROI, [(0, 0), (1, 1)])
        self.assertEqual(roi_pixel_values(roi, image).tolist(), [7, 7, 7, 7])


class TestROIStatistics(unittest.TestCase):
    """Tests for compute_roi_statistics."""

    def setUp(self):
        self.roi = make_entry(ToolType.RECTANGULAR_ROI, [(0, 0), (10, 10)])

    def test_explicit_values(self):
        stats = compute_roi_statistics(self.roi, HALF_MM, values=[2, 4, 4, 4, 5, 5, 7, 9])
        self.assertAlmostEqual(stats.mean, 5.0)
        self.assertAlmostEqual(stats.std_dev, 2.0)
        self.assertEqual(stats.minimum, 2.0)
        self.assertEqual(stats.maximum, 9.0)
        self.assertEqual(stats.pixel_count, 8)
        self.assertAlmostEqual(stats.area_pixels, 100.0)
        self.assertAlmostEqual(stats.area_mm2, 25.0)
        self.assertAlmostEqual(stats.perimeter_mm, 20.0)

    def test_uncalibrated_has_no_physical_values(self):
        stats = compute_roi_statistics(self.roi, UNCALIBRATED, values=[1, 2])
        self.assertIsNone(stats.area_mm2)
        self.assertIsNone(stats.perimeter_mm)

    def test_pixel_array(self):
        image = np.full((20, 20), 3, dtype=np.uint16)
        stats = compute_roi_statistics(self.roi, pixel_array=image)
        self.assertEqual(stats.pixel_count, 121)
        self.assertEqual(stats.mean, 3.0)
        self.assertEqual(stats.std_dev, 0.0)

    def test_rescale(self):
        stats = compute_roi_statistics(self.roi, values=[0, 100], rescale_slope=2.0, rescale_intercept=-1024.0)
        self.assertEqual(stats.minimum, -1024.0)
        self.assertEqual(stats.maximum, -824.0)

    def test_without_pixels_keeps_previous_snapshot(self):
        previous = ROIStatistics(mean=42.0, std_dev=1.0, minimum=40.0, maximum=44.0, pixel_count=9)
        roi = self.roi.with_statistics(previous)
        stats = compute_roi_statistics(roi, HALF_MM)
        self.assertEqual(stats.mean, 42.0)
        self.assertEqual(stats.pixel_count, 9)
        self.assertAlmostEqual(stats.area_mm2, 25.0)


class TestROIManager(unittest.TestCase):
    """Tests for ROIManager refresh and hit testing."""

    def setUp(self):
        self.store = AnnotationStore()
        self.manager = ROIManager()
        self.roi = make_entry(ToolType.RECTANGULAR_ROI, [(0, 0), (10, 10)], image_key="img")
        self.length = make_entry(ToolType.LENGTH, [(0, 0), (5, 5)], image_key="img")
        self.store.add(self.roi)
        self.store.add(self.length)

    def test_refresh_statistics_leaves_history_alone(self):
        self.store.undo()
        before = (self.store.undo_count, self.store.redo_count)
        changed = self.manager.refresh_statistics(self.store, "img", HALF_MM)
        self.assertEqual(changed, 1)
        self.assertAlmostEqual(self.store.get(self.roi.id).statistics.area_mm2, 25.0)
        self.assertEqual((self.store.undo_count, self.store.redo_count), before)

    def test_refresh_without_change(self):
        self.manager.refresh_statistics(self.store, "img", HALF_MM)
        self.assertEqual(self.manager.refresh_statistics(self.store, "img", HALF_MM), 0)

    def test_refresh_with_pixel_arrays(self):
        image = np.full((16, 16), 5, dtype=np.int16)
        self.manager.refresh_statistics(self.store, "img", UNCALIBRATED, {0: image})
        self.assertEqual(self.store.get(self.roi.id).statistics.mean, 5.0)

    def test_find_roi_at_prefers_topmost(self):
        top = make_entry(ToolType.CIRCULAR_ROI, [(5, 5), (5, 8)], image_key="img")
        self.store.add(top)
        self.assertEqual(self.manager.find_roi_at(self.store, "img", 0, Point(5, 5)).id, top.id)
        self.assertEqual(self.manager.find_roi_at(self.store, "img", 0, Point(1, 1)).id, self.roi.id)
        self.assertIsNone(self.manager.find_roi_at(self.store, "img", 0, Point(50, 50)))

    def test_find_roi_skips_hidden(self):
        self.store.update(self.roi.with_visibility(False))
        self.assertIsNone(self.manager.find_roi_at(self.store, "img", 0, Point(1, 1)))

    def test_contains_or_near_outline(self):
        self.assertTrue(self.manager.contains_or_near(self.roi, Point(13, 5)))
        self.assertFalse(self.manager.contains_or_near(self.roi, Point(16, 5)))


if __name__ == "__main__":
    unittest.main()
