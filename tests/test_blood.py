import os
import shutil
import tempfile
import unittest

import numpy as np

from kfit.blood import (
    F18_DECAY_CONSTANT,
    INPUT_PARAMETER_METADATA,
    POPULATION_INPUTS,
    extract_input_from_roi,
    feng_input,
    generate_population_input,
    load_input_function,
    resample_to_frames,
    save_input_function,
)


class TestInputFunctionFiles(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.csv_file = os.path.join(self.test_dir, "input.csv")
        self.txt_file = os.path.join(self.test_dir, "input.txt")

        with open(self.csv_file, "w") as f:
            f.write("0,0\n")
            f.write("1,10\n")
            f.write("2,5\n")

        with open(self.txt_file, "w") as f:
            f.write("Time Plasma WholeBlood\n")
            f.write("0 0 0\n")
            f.write("1 10 9\n")
            f.write("2 5 4.5\n")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_load_two_columns(self):
        times, plasma, whole_blood = load_input_function(self.csv_file)
        np.testing.assert_array_equal(times, [0, 1, 2])
        np.testing.assert_array_equal(plasma, [0, 10, 5])
        np.testing.assert_array_equal(whole_blood, plasma)

    def test_load_three_columns_with_header(self):
        times, plasma, whole_blood = load_input_function(self.txt_file)
        np.testing.assert_array_equal(times, [0, 1, 2])
        np.testing.assert_array_equal(plasma, [0, 10, 5])
        np.testing.assert_array_equal(whole_blood, [0, 9, 4.5])

    def test_load_file_not_found(self):
        with self.assertRaises(FileNotFoundError):
            load_input_function(os.path.join(self.test_dir, "missing.csv"))

    def test_load_invalid_files(self):
        bad_file = os.path.join(self.test_dir, "bad.csv")
        contents = {
            "": "empty",
            "Time,Plasma\n": "No numeric data",
            "1,2,3,4\n": "must have 2 or 3 columns",
            "1,2\n3\n": "Expected 2 columns",
            "1,2\n3,abc\n": "Non-numeric data",
        }
        for content, message in contents.items():
            with self.subTest(message=message):
                with open(bad_file, "w") as f:
                    f.write(content)
                with self.assertRaisesRegex(ValueError, message):
                    load_input_function(bad_file)

    def test_save_and_load(self):
        out_file = os.path.join(self.test_dir, "saved.csv")
        times = np.array([0.0, 0.5, 1.0])
        plasma = np.array([0.0, 3.0, 2.0])
        whole_blood = np.array([0.0, 2.5, 1.8])
        save_input_function(times, plasma, whole_blood, out_file)
        with open(out_file) as f:
            self.assertEqual(f.readline().strip(), "Time,Plasma,WholeBlood")
        loaded = load_input_function(out_file)
        for expected, actual in zip((times, plasma, whole_blood), loaded):
            np.testing.assert_allclose(actual, expected)

    def test_save_mismatched_lengths(self):
        with self.assertRaisesRegex(ValueError, "same length"):
            save_input_function([0, 1], [0, 1, 2], [0, 1], os.path.join(self.test_dir, "x.csv"))


class TestResampleToFrames(unittest.TestCase):
    def test_linear_interpolation_and_extrapolation(self):
        times = np.array([1.0, 2.0, 4.0])
        values = np.array([2.0, 4.0, 0.0])
        resampled = resample_to_frames(times, values, np.array([0.5, 1.5, 3.0, 10.0]))
        np.testing.assert_allclose(resampled, [0.0, 3.0, 2.0, 0.0])

    def test_last_value_held(self):
        resampled = resample_to_frames([0.0, 1.0], [1.0, 3.0], [5.0])
        np.testing.assert_allclose(resampled, [3.0])

    def test_errors(self):
        with self.assertRaises(ValueError):
            resample_to_frames([0.0], [1.0], [0.5])
        with self.assertRaises(ValueError):
            resample_to_frames([0.0, 1.0], [1.0], [0.5])


class TestPopulationInput(unittest.TestCase):
    def setUp(self):
        self.time = np.linspace(0, 60, 601)

    def test_feng_input_shape(self):
        cp = feng_input(self.time)
        self.assertEqual(cp.shape, self.time.shape)
        self.assertTrue(np.all(cp[self.time <= 0.7353] == 0.0))
        peak = np.argmax(cp)
        self.assertLess(self.time[peak], 2.0)
        self.assertTrue(np.all(np.diff(cp[self.time > 5.0]) < 0))

    def test_feng_input_scaling(self):
        np.testing.assert_allclose(feng_input(self.time, D_scaler=2.0), 2.0 * feng_input(self.time))

    def test_feng_input_errors(self):
        with self.assertRaises(TypeError):
            feng_input([0.0, 1.0])
        with self.assertRaises(ValueError):
            feng_input(self.time, L1=-1.0)

    def test_metadata_defaults_match_function(self):
        self.assertIn("feng", POPULATION_INPUTS)
        defaults = {name: default for name, default, _, _, _ in INPUT_PARAMETER_METADATA["feng"]}
        np.testing.assert_allclose(generate_population_input("feng", self.time, defaults), feng_input(self.time))
        for name, default, min_val, max_val, _ in INPUT_PARAMETER_METADATA["feng"]:
            self.assertLessEqual(min_val, default)
            self.assertLessEqual(default, max_val)

    def test_generate_population_input_errors(self):
        with self.assertRaisesRegex(ValueError, "Unknown population input model"):
            generate_population_input("parker", self.time)
        with self.assertRaisesRegex(ValueError, "Error calling input model"):
            generate_population_input("feng", self.time, {"bogus": 1.0})

    def test_f18_decay_constant(self):
        self.assertAlmostEqual(np.exp(-F18_DECAY_CONSTANT * 109.77), 0.5)


class TestExtractInputFromRoi(unittest.TestCase):
    def test_mean_over_roi(self):
        data = np.zeros((2, 2, 1, 3))
        data[0, 0, 0] = [1.0, 2.0, 3.0]
        data[1, 0, 0] = [3.0, 4.0, np.nan]
        mask = np.zeros((2, 2, 1), dtype=bool)
        mask[0, 0, 0] = mask[1, 0, 0] = True
        np.testing.assert_allclose(extract_input_from_roi(data, mask), [2.0, 3.0, 3.0])

    def test_errors(self):
        with self.assertRaisesRegex(ValueError, "4D"):
            extract_input_from_roi(np.zeros((2, 2, 3)), np.ones((2, 2), dtype=bool))
        with self.assertRaisesRegex(ValueError, "spatial dimensions"):
            extract_input_from_roi(np.zeros((2, 2, 1, 3)), np.ones((2, 2, 2), dtype=bool))
        with self.assertRaisesRegex(ValueError, "empty"):
            extract_input_from_roi(np.zeros((2, 2, 1, 3)), np.zeros((2, 2, 1), dtype=bool))


if __name__ == '__main__':
    unittest.main()
