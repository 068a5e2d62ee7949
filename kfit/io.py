import csv
import os

import nibabel as nib
import numpy as np

"""
This module provides utility functions for input/output operations: loading
and saving NIfTI images (dynamic PET series, masks, parametric maps) and
reading and writing the small text tables that accompany a kinetic analysis
(frame timing, region TACs, frame weights).

The functions handle:
- Loading generic NIfTI files.
- Specialized loading for 4D PET series and 3D masks, including basic
  validation (dimensions, boolean conversion for masks).
- Saving 3D or 4D NumPy arrays as NIfTI files, using a reference NIfTI image
  to preserve affine transformation and header information.
- Reading frame mid-times, region TAC tables and weight tables from CSV or
  whitespace-delimited text, and writing region TAC tables.
"""


def load_nifti_file(filepath: str):
    """
    Loads a NIfTI file.

    Args:
        filepath (str): Path to the NIfTI file.

    Returns:
        nibabel.nifti1.Nifti1Image: The loaded NIfTI image object.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid NIfTI file.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"NIfTI file not found at: {filepath}")
    try:
        return nib.load(filepath)
    except Exception as e:
        raise ValueError(f"Invalid NIfTI file: {filepath}. Error: {e}")


def load_pet_series(filepath: str):
    """
    Loads a 4D dynamic PET NIfTI series (x, y, z, frames).

    Returns:
        tuple: (data, affine, header) with `data` as a float64 NumPy array.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid 4D NIfTI file.
    """
    img = load_nifti_file(filepath)
    if img.ndim != 4:
        raise ValueError("PET series must be a 4D NIfTI image.")
    return img.get_fdata(), img.affine, img.header


def load_mask(filepath: str, reference_shape: tuple = None):
    """
    Loads a 3D mask NIfTI file and converts it to a boolean array.

    Non-zero values mark voxels inside the mask.

    Args:
        filepath (str): Path to the 3D NIfTI mask file.
        reference_shape (tuple, optional): Spatial shape (nx, ny, nz) the mask
                                           must match, e.g. the first three
                                           dimensions of the PET series.
                                           Not checked when None.

    Returns:
        tuple: (mask, affine, header) with `mask` as a boolean NumPy array.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid 3D NIfTI file or if dimensions
                    do not match reference_shape.
    """
    img = load_nifti_file(filepath)
    if img.ndim != 3:
        raise ValueError("Mask must be a 3D NIfTI image.")
    if reference_shape is not None and img.shape != tuple(reference_shape):
        raise ValueError("Mask dimensions do not match the reference image dimensions.")
    return img.get_fdata().astype(bool), img.affine, img.header


def save_nifti_map(data_map: np.ndarray, original_nifti_ref_path: str, output_filepath: str):
    """
    Saves a 3D or 4D data map as a NIfTI file, using a reference NIfTI file
    to provide the affine transformation and header information.

    The data type of the saved map is set to float32.

    Args:
        data_map (np.ndarray): 3D or 4D array (e.g. a K1 map or the fitted curves).
        original_nifti_ref_path (str): Path to the NIfTI file (usually the PET
                                       series) whose affine and header are reused.
        output_filepath (str): Path of the NIfTI file to write.

    Raises:
        FileNotFoundError: If the reference file does not exist.
        ValueError: If `data_map` is not 3D or 4D, or its spatial dimensions
                    do not match the reference image.
        IOError: If the file cannot be written.
    """
    if not os.path.exists(original_nifti_ref_path):
        raise FileNotFoundError(f"Reference NIfTI file not found at: {original_nifti_ref_path}")
    try:
        ref_nifti_img = nib.load(original_nifti_ref_path)
    except Exception as e:
        raise ValueError(f"Could not load reference NIfTI file: {original_nifti_ref_path}. Error: {e}")

    if data_map.ndim not in (3, 4):
        raise ValueError(f"data_map must be a 3D or 4D array. Got {data_map.ndim} dimensions.")
    if data_map.shape[:3] != ref_nifti_img.shape[:3]:
        raise ValueError(
            f"Spatial dimensions of data_map {data_map.shape[:3]} do not match "
            f"reference NIfTI spatial dimensions {ref_nifti_img.shape[:3]}."
        )

    # set_data_shape fixes dim[0] when a 3D map is saved against a 4D reference
    new_header = ref_nifti_img.header.copy()
    new_header.set_data_dtype(np.float32)
    new_header.set_data_shape(data_map.shape)
    new_nifti_image = nib.Nifti1Image(data_map.astype(np.float32), ref_nifti_img.affine, header=new_header)

    try:
        nib.save(new_nifti_image, output_filepath)
        print(f"NIfTI map saved to: {output_filepath}")
    except Exception as e:
        raise IOError(f"Could not save NIfTI map to {output_filepath}. Error: {e}")


def _read_table(filepath: str, description: str) -> tuple[list[str] | None, np.ndarray]:
    """Reads a numeric CSV/text table with an optional header row. Returns (header, data)."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"{description} file not found at: {filepath}")

    with open(filepath, 'r', newline='') as f:
        if filepath.lower().endswith(".csv"):
            rows = [[cell.strip() for cell in row] for row in csv.reader(f) if row]
        else:
            rows = [line.split() for line in f if line.strip()]
    if not rows:
        raise ValueError(f"{description} file is empty: {filepath}")

    header = None
    try:
        [float(cell) for cell in rows[0]]
    except ValueError:
        header, rows = rows[0], rows[1:]
    if not rows:
        raise ValueError(f"No numeric data found in {description.lower()} file: {filepath}")

    num_columns = len(rows[0])
    values = []
    for line_num, row in enumerate(rows, start=1):
        if len(row) != num_columns:
            raise ValueError(
                f"Incorrect format in {description.lower()} file: {filepath} at data row {line_num}. "
                f"Expected {num_columns} columns, got {len(row)}."
            )
        try:
            values.append([float(cell) for cell in row])
        except ValueError:
            raise ValueError(f"Non-numeric data found in {description.lower()} file: {filepath} at data row {line_num}.")
    if header is not None and len(header) != num_columns:
        raise ValueError(f"Header of {filepath} has {len(header)} names but the data has {num_columns} columns.")
    return header, np.array(values, dtype=np.float64)


def load_frame_times(filepath: str) -> tuple[np.ndarray, float | None]:
    """
    Loads PET frame timing from a text/CSV file.

    One column is read as frame mid-times. Two columns are read as frame start
    and end times; mid-times are then computed and the common frame duration
    is returned as well.

    Args:
        filepath (str): Path to the frame timing file.

    Returns:
        tuple[np.ndarray, float | None]: (mid_times, frame_duration). The
            duration is None when the file holds mid-times only.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file has more than two columns, an end time is not
                    after its start time, or the frames have unequal durations.
    """
    _, data = _read_table(filepath, "Frame times")
    if data.shape[1] == 1:
        return data[:, 0], None
    if data.shape[1] != 2:
        raise ValueError(f"Frame times file {filepath} must have 1 (mid) or 2 (start, end) columns, got {data.shape[1]}.")

    start, end = data[:, 0], data[:, 1]
    durations = end - start
    if np.any(durations <= 0):
        raise ValueError(f"Frame end times must be after start times in {filepath}.")
    if not np.allclose(durations, durations[0], rtol=1e-6):
        raise ValueError(f"All frames must have the same duration; found durations {np.unique(durations)} in {filepath}.")
    return 0.5 * (start + end), float(durations[0])


def load_region_tacs(filepath: str) -> tuple[list[str], np.ndarray]:
    """
    Loads region TACs from a table with one column per region.

    Args:
        filepath (str): Path to the CSV/text file. A header row with region
                        names is optional; without it regions are named
                        "region_1", "region_2", ...

    Returns:
        tuple[list[str], np.ndarray]: (region_names, tacs) with `tacs` shaped
            (num_frames, num_regions).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or malformed.
    """
    header, data = _read_table(filepath, "Region TAC")
    names = header if header is not None else [f"region_{i + 1}" for i in range(data.shape[1])]
    return list(names), data


def load_weights(filepath: str) -> np.ndarray:
    """Loads frame weights (frames x 1 or frames x units) from a text/CSV file."""
    _, data = _read_table(filepath, "Weights")
    if np.any(data < 0):
        raise ValueError(f"Weights in {filepath} must be non-negative.")
    return data


def save_region_tacs(region_names: list[str], tacs: np.ndarray, filepath: str, frame_times: np.ndarray = None):
    """
    Saves region TACs (frames x regions) to a CSV (comma) or text (tab) file with a header row.

    When `frame_times` is given it is written as a leading "Time" column.

    Raises:
        ValueError: If the number of names does not match the number of columns.
        IOError: If writing fails.
    """
    tacs = np.asarray(tacs, dtype=np.float64)
    if tacs.ndim == 1:
        tacs = tacs[:, np.newaxis]
    if len(region_names) != tacs.shape[1]:
        raise ValueError(f"Got {len(region_names)} region names for {tacs.shape[1]} TAC columns.")
    header = list(region_names)
    if frame_times is not None:
        frame_times = np.asarray(frame_times, dtype=np.float64).ravel()
        if len(frame_times) != tacs.shape[0]:
            raise ValueError(f"Got {len(frame_times)} frame times for {tacs.shape[0]} TAC rows.")
        header = ['Time'] + header
        tacs = np.column_stack((frame_times, tacs))

    delimiter = ',' if filepath.lower().endswith('.csv') else '\t'
    try:
        with open(filepath, 'w', newline='') as f:
            writer = csv.writer(f, delimiter=delimiter)
            writer.writerow(header)
            writer.writerows(tacs)
        print(f"Region TACs saved to: {filepath}")
    except OSError as e:
        raise IOError(f"Failed to save region TACs to {filepath}: {e}")
