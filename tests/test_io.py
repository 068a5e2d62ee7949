import os
import shutil
import tempfile
import unittest

import nibabel as nib
import numpy as np

from kfit.io import (
    load_frame_times,
    load_mask,
    load_nifti_file,
    load_pet_series,
    load_region_tacs,
    load_weights,
    save_nifti_map,
    save_region_tacs,
)


# Helper function to create a dummy NIfTI file
def create_dummy_nifti(filename, data_shape, affine=np.eye(4), dtype=np.float32):
    """Creates a dummy NIfTI file for testing."""
    data = np.random.rand(*data_shape).astype(dtype)
    if np.issubdtype(dtype, np.integer):
        data = np.random.randint(0, 2, size=data_shape).astype(dtype)
    nib.save(nib.Nifti1Image(data, affine), filename)
    return filename


def write_text(filename, content):
    with open(filename, 'w') as f:
        f.write(content)
    return filename


class TestNiftiIO(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.nifti_3d_file = create_dummy_nifti(os.path.join(self.test_dir, "dummy_3d.nii.gz"), (5, 5, 5))
        self.nifti_4d_file = create_dummy_nifti(os.path.join(self.test_dir, "dummy_4d.nii.gz"), (5, 5, 5, 10))
        self.mask_file_int = create_dummy_nifti(
            os.path.join(self.test_dir, "dummy_mask_int.nii.gz"), (5, 5, 5), dtype=np.int16
        )
        self.invalid_nifti_format_file = write_text(
            os.path.join(self.test_dir, "invalid_format.nii.gz"), "This is not a nifti file"
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_load_nifti_valid(self):
        img = load_nifti_file(self.nifti_3d_file)
        self.assertIsInstance(img, nib.Nifti1Image)
        self.assertEqual(img.shape, (5, 5, 5))

    def test_load_nifti_non_existent(self):
        with self.assertRaises(FileNotFoundError):
            load_nifti_file(os.path.join(self.test_dir, "non_existent.nii.gz"))

    def test_load_nifti_invalid_format_file(self):
        with self.assertRaises(ValueError):
            load_nifti_file(self.invalid_nifti_format_file)

    def test_load_pet_series_valid_4d(self):
        data, affine, header = load_pet_series(self.nifti_4d_file)
        self.assertEqual(data.shape, (5, 5, 5, 10))
        self.assertIsInstance(data, np.ndarray)
        self.assertEqual(affine.shape, (4, 4))
        self.assertIsNotNone(header)

    def test_load_pet_series_rejects_3d(self):
        with self.assertRaisesRegex(ValueError, "4D"):
            load_pet_series(self.nifti_3d_file)

    def test_load_mask(self):
        mask_data, _, _ = load_mask(self.mask_file_int, reference_shape=(5, 5, 5))
        self.assertEqual(mask_data.shape, (5, 5, 5))
        self.assertEqual(mask_data.dtype, bool)
        expected = nib.load(self.mask_file_int).get_fdata() != 0
        np.testing.assert_array_equal(mask_data, expected)

    def test_load_mask_errors(self):
        with self.assertRaises(ValueError):
            load_mask(self.nifti_4d_file)
        with self.assertRaisesRegex(ValueError, "do not match"):
            load_mask(self.mask_file_int, reference_shape=(6, 5, 5))
        with self.assertRaises(FileNotFoundError):
            load_mask(os.path.join(self.test_dir, "non_existent_mask.nii.gz"))

    def test_save_nifti_map_3d_data_4d_ref(self):
        data_to_save = np.random.rand(5, 5, 5)
        output_path = os.path.join(self.test_dir, "K1.nii.gz")
        save_nifti_map(data_to_save, self.nifti_4d_file, output_path)

        loaded_img = nib.load(output_path)
        self.assertEqual(loaded_img.shape, (5, 5, 5))
        self.assertEqual(loaded_img.get_data_dtype(), np.float32)
        np.testing.assert_array_almost_equal(loaded_img.get_fdata(), data_to_save, decimal=5)
        np.testing.assert_array_equal(loaded_img.affine, nib.load(self.nifti_4d_file).affine)

    def test_save_nifti_map_keeps_nan(self):
        data_to_save = np.full((5, 5, 5), np.nan)
        data_to_save[0, 0, 0] = 1.5
        output_path = os.path.join(self.test_dir, "vb.nii.gz")
        save_nifti_map(data_to_save, self.nifti_3d_file, output_path)
        loaded = nib.load(output_path).get_fdata()
        self.assertEqual(loaded[0, 0, 0], 1.5)
        self.assertTrue(np.isnan(loaded[1, 1, 1]))

    def test_save_nifti_map_errors(self):
        output_path = os.path.join(self.test_dir, "out.nii.gz")
        with self.assertRaises(FileNotFoundError):
            save_nifti_map(np.zeros((5, 5, 5)), os.path.join(self.test_dir, "missing.nii.gz"), output_path)
        with self.assertRaisesRegex(ValueError, "3D or 4D"):
            save_nifti_map(np.zeros((5, 5)), self.nifti_3d_file, output_path)
        with self.assertRaisesRegex(ValueError, "Spatial dimensions"):
            save_nifti_map(np.zeros((4, 5, 5)), self.nifti_3d_file, output_path)


class TestTableIO(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _path(self, name):
        return os.path.join(self.test_dir, name)

    def test_load_frame_mid_times(self):
        path = write_text(self._path("frames.txt"), "0.5\n1.5\n2.5\n")
        mids, duration = load_frame_times(path)
        np.testing.assert_array_equal(mids, [0.5, 1.5, 2.5])
        self.assertIsNone(duration)

    def test_load_frame_start_end_times(self):
        path = write_text(self._path("frames.csv"), "start,end\n0,2\n2,4\n4,6\n")
        mids, duration = load_frame_times(path)
        np.testing.assert_array_equal(mids, [1.0, 3.0, 5.0])
        self.assertEqual(duration, 2.0)

    def test_load_frame_times_errors(self):
        unequal = write_text(self._path("unequal.csv"), "0,1\n1,3\n")
        with self.assertRaisesRegex(ValueError, "same duration"):
            load_frame_times(unequal)
        reversed_frame = write_text(self._path("reversed.csv"), "1,0\n2,1\n")
        with self.assertRaisesRegex(ValueError, "after start"):
            load_frame_times(reversed_frame)
        three_columns = write_text(self._path("three.csv"), "0,1,2\n")
        with self.assertRaisesRegex(ValueError, "1 \\(mid\\) or 2"):
            load_frame_times(three_columns)
        with self.assertRaises(FileNotFoundError):
            load_frame_times(self._path("missing.csv"))

    def test_load_region_tacs_with_header(self):
        path = write_text(self._path("tacs.csv"), "liver, spleen\n1.0,2.0\n3.0,4.0\n5.0,6.0\n")
        names, tacs = load_region_tacs(path)
        self.assertEqual(names, ["liver", "spleen"])
        np.testing.assert_array_equal(tacs, [[1, 2], [3, 4], [5, 6]])

    def test_load_region_tacs_without_header(self):
        path = write_text(self._path("tacs.txt"), "1 2 3\n4 5 6\n")
        names, tacs = load_region_tacs(path)
        self.assertEqual(names, ["region_1", "region_2", "region_3"])
        self.assertEqual(tacs.shape, (2, 3))

    def test_load_region_tacs_errors(self):
        empty = write_text(self._path("empty.csv"), "")
        with self.assertRaisesRegex(ValueError, "empty"):
            load_region_tacs(empty)
        ragged = write_text(self._path("ragged.csv"), "1,2\n3\n")
        with self.assertRaisesRegex(ValueError, "Expected 2 columns"):
            load_region_tacs(ragged)
        header_mismatch = write_text(self._path("header.csv"), "a,b,c\n1,2\n")
        with self.assertRaisesRegex(ValueError, "Header"):
            load_region_tacs(header_mismatch)

    def test_load_weights(self):
        path = write_text(self._path("weights.txt"), "1\n0.5\n0\n")
        np.testing.assert_array_equal(load_weights(path), [[1.0], [0.5], [0.0]])
        negative = write_text(self._path("negative.txt"), "1\n-0.5\n")
        with self.assertRaisesRegex(ValueError, "non-negative"):
            load_weights(negative)

    def test_save_and_load_region_tacs(self):
        path = self._path("fitted.csv")
        tacs = np.array([[1.0, 2.0], [3.0, 4.0]])
        save_region_tacs(["a", "b"], tacs, path, frame_times=[0.5, 1.5])
        with open(path) as f:
            self.assertEqual(f.readline().strip(), "Time,a,b")
        names, loaded = load_region_tacs(path)
        self.assertEqual(names, ["Time", "a", "b"])
        np.testing.assert_array_equal(loaded, [[0.5, 1.0, 2.0], [1.5, 3.0, 4.0]])

    def test_save_region_tacs_errors(self):
        with self.assertRaisesRegex(ValueError, "region names"):
            save_region_tacs(["a"], np.ones((2, 2)), self._path("x.csv"))
        with self.assertRaisesRegex(ValueError, "frame times"):
            save_region_tacs(["a", "b"], np.ones((2, 2)), self._path("x.csv"), frame_times=[1.0])


if __name__ == '__main__':
    unittest.main()
