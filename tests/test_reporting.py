import csv
import os
import shutil
import tempfile
import unittest

import numpy as np

from kfit.fitting import FitResult
from kfit.reporting import (
    calculate_roi_statistics,
    format_roi_statistics_to_string,
    save_fit_results_csv,
)
from kfit.solver import FitStatus


class TestRoiStatistics(unittest.TestCase):
    def setUp(self):
        self.data_map_slice_valid = np.array([
            [1.0, 2.0, 3.0],
            [4.0, 5.0, 6.0],
            [7.0, 8.0, 9.0]
        ], dtype=float)

        self.roi_mask_slice_A = np.array([
            [True, True, False],
            [True, False, False],
            [False, False, False]
        ], dtype=bool)

        self.data_map_with_nans = self.data_map_slice_valid.copy()
        self.data_map_with_nans[0, 0] = np.nan

    def test_statistics_on_slice(self):
        stats = calculate_roi_statistics(self.data_map_slice_valid, self.roi_mask_slice_A)
        self.assertEqual(stats["N"], 3)
        self.assertEqual(stats["N_valid"], 3)
        self.assertAlmostEqual(stats["Mean"], 7.0 / 3.0)
        self.assertAlmostEqual(stats["StdDev"], np.std([1.0, 2.0, 4.0]))
        self.assertAlmostEqual(stats["Median"], 2.0)
        self.assertEqual(stats["Min"], 1.0)
        self.assertEqual(stats["Max"], 4.0)

    def test_statistics_ignore_nan(self):
        stats = calculate_roi_statistics(self.data_map_with_nans, self.roi_mask_slice_A)
        self.assertEqual(stats["N"], 3)
        self.assertEqual(stats["N_valid"], 2)
        self.assertAlmostEqual(stats["Mean"], 3.0)

    def test_statistics_on_volume(self):
        data_map = np.arange(24, dtype=np.float32).reshape(2, 3, 4)
        mask = data_map >= 20
        stats = calculate_roi_statistics(data_map, mask)
        self.assertEqual(stats["N"], 4)
        self.assertAlmostEqual(stats["Mean"], 21.5)

    def test_empty_roi(self):
        stats = calculate_roi_statistics(self.data_map_slice_valid, np.zeros((3, 3), dtype=bool))
        self.assertEqual(stats["N"], 0)
        self.assertEqual(stats["N_valid"], 0)
        self.assertTrue(np.isnan(stats["Mean"]))

    def test_all_nan_roi(self):
        mask = np.zeros((3, 3), dtype=bool)
        mask[0, 0] = True
        stats = calculate_roi_statistics(self.data_map_with_nans, mask)
        self.assertEqual(stats["N"], 1)
        self.assertEqual(stats["N_valid"], 0)
        self.assertTrue(np.isnan(stats["Max"]))

    def test_shape_mismatch(self):
        with self.assertRaises(ValueError):
            calculate_roi_statistics(self.data_map_slice_valid, np.ones((2, 2), dtype=bool))
        with self.assertRaises(ValueError):
            calculate_roi_statistics([1.0, 2.0], np.ones(2, dtype=bool))

    def test_format_statistics(self):
        stats = calculate_roi_statistics(self.data_map_slice_valid, self.roi_mask_slice_A)
        text = format_roi_statistics_to_string(stats, "K1", "Liver")
        self.assertIn("Statistics for Liver on parameter map 'K1':", text)
        self.assertIn("  N: 3", text)
        self.assertIn("  Mean: 2.3333", text)

    def test_format_no_data(self):
        self.assertEqual(
            format_roi_statistics_to_string(None, "K1"),
            "No valid data points found in ROI for parameter map 'K1'."
        )


class TestSaveFitResults(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.filepath = os.path.join(self.test_dir, "fit_results.csv")
        self.result = FitResult(
            params=np.array([[0.1, 0.2], [0.5, 0.6], [0.3, 0.05]], order='F'),
            curves=np.zeros((4, 2), order='F'),
            status=np.array([FitStatus.CONVERGED, FitStatus.SKIPPED], dtype=np.int8),
            iterations=np.array([12, 0]),
            cost=np.array([1.5e-3, np.nan]),
            num_threads=2,
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_save_fit_results(self):
        save_fit_results_csv(["liver", "spleen"], ["vb", "K1", "k2"], self.result, self.filepath)
        with open(self.filepath, newline='') as f:
            rows = list(csv.DictReader(f))
        self.assertEqual(len(rows), 2)
        self.assertEqual(list(rows[0].keys()), ["Name", "vb", "K1", "k2", "Status", "Iterations", "Cost"])
        self.assertEqual(rows[0]["Name"], "liver")
        self.assertAlmostEqual(float(rows[0]["K1"]), 0.5)
        self.assertEqual(rows[0]["Status"], "CONVERGED")
        self.assertEqual(rows[0]["Iterations"], "12")
        self.assertEqual(rows[1]["Status"], "SKIPPED")
        self.assertTrue(np.isnan(float(rows[1]["Cost"])))

    def test_name_mismatch(self):
        with self.assertRaisesRegex(ValueError, "unit names"):
            save_fit_results_csv(["liver"], ["vb", "K1", "k2"], self.result, self.filepath)
        with self.assertRaisesRegex(ValueError, "parameter names"):
            save_fit_results_csv(["liver", "spleen"], ["vb", "K1"], self.result, self.filepath)


if __name__ == '__main__':
    unittest.main()
