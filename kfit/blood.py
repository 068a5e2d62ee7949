import csv
import os

import numpy as np
from scipy.interpolate import interp1d

"""
This module provides functions for blood input function loading, saving,
resampling and generation. The input function (plasma and whole-blood tracer
activity over time) drives every kinetic model in `kfit.models`.

The module includes:
- Loading input functions from text/CSV files (time, plasma[, whole blood]).
- Saving input functions to text/CSV files.
- Resampling an input function onto the frame mid-times of a PET scan.
- A population-averaged FDG plasma input model (Feng et al., 1993).
- Extraction of an image-derived input function from a blood-pool ROI.

Times are in minutes throughout, matching the units of the model rate
constants.
"""

F18_HALF_LIFE_MIN = 109.77
F18_DECAY_CONSTANT = np.log(2.0) / F18_HALF_LIFE_MIN
"""Decay constant of fluorine-18 in min^-1."""

# --- Input Function Parameter Metadata ---
INPUT_PARAMETER_METADATA = {
    "feng": [
        # Parameter name, Default value, Min value, Max value, Tooltip
        ('D_scaler', 1.0, 0.0, 100.0, "Overall scaling factor (e.g., injected dose adjustment)"),
        ('A1', 851.1225, 0.0, 5000.0, "Amplitude of the bolus term (uCi/mL/min)"),
        ('A2', 21.8798, 0.0, 500.0, "Amplitude of the fast clearance term (uCi/mL)"),
        ('A3', 20.8113, 0.0, 500.0, "Amplitude of the slow clearance term (uCi/mL)"),
        ('L1', 4.133859, 0.0, 50.0, "Bolus decay rate (min^-1)"),
        ('L2', 0.1190996, 0.0, 10.0, "Fast clearance rate (min^-1)"),
        ('L3', 0.01043449, 0.0, 1.0, "Slow clearance rate (min^-1)"),
        ('tau', 0.7353, 0.0, 10.0, "Delay of the bolus arrival (min)"),
    ]
}
"""Metadata for the parameters of each population input model:
(parameter_name, default_value, min_value, max_value, tooltip_string)."""


def load_input_function(filepath: str) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Loads a blood input function from a CSV or whitespace-delimited text file.

    The file holds two columns (time, plasma) or three columns (time, plasma,
    whole blood), with an optional header row. With two columns the whole-blood
    curve is taken to be equal to the plasma curve.

    Args:
        filepath (str): Path to the input function file.

    Returns:
        tuple[np.ndarray, np.ndarray, np.ndarray]: (times, plasma, whole_blood).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, has inconsistent column counts or
                    contains non-numeric data.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Input function file not found at: {filepath}")

    with open(filepath, 'r', newline='') as f:
        if filepath.lower().endswith(".csv"):
            rows = [row for row in csv.reader(f) if row]
        else:
            rows = [line.split() for line in f if line.strip()]

    if not rows:
        raise ValueError(f"Input function file is empty: {filepath}")

    # Skip a header if the first entry is not numeric
    try:
        float(rows[0][0])
    except ValueError:
        rows = rows[1:]
    if not rows:
        raise ValueError(f"No numeric data found in input function file: {filepath}")

    num_columns = len(rows[0])
    if num_columns not in (2, 3):
        raise ValueError(f"Input function file {filepath} must have 2 or 3 columns, got {num_columns}.")

    values = []
    for line_num, row in enumerate(rows, start=1):
        if len(row) != num_columns:
            raise ValueError(
                f"Incorrect format in input function file: {filepath} at data row {line_num}. "
                f"Expected {num_columns} columns, got {len(row)}."
            )
        try:
            values.append([float(v) for v in row])
        except ValueError:
            raise ValueError(f"Non-numeric data found in input function file: {filepath} at data row {line_num}.")

    data = np.array(values)
    whole_blood = data[:, 2] if num_columns == 3 else data[:, 1].copy()
    return data[:, 0], data[:, 1], whole_blood


def save_input_function(times: np.ndarray, plasma: np.ndarray, whole_blood: np.ndarray, filepath: str):
    """
    Saves an input function to a CSV (comma) or text (tab-delimited) file with a header row.

    Raises:
        ValueError: If the arrays are not 1D or have different lengths.
        IOError: If writing fails.
    """
    times, plasma, whole_blood = (np.asarray(a, dtype=np.float64) for a in (times, plasma, whole_blood))
    if times.ndim != 1 or plasma.ndim != 1 or whole_blood.ndim != 1:
        raise ValueError("Times, plasma and whole-blood curves must be 1D arrays.")
    if not (len(times) == len(plasma) == len(whole_blood)):
        raise ValueError("Times, plasma and whole-blood curves must have the same length.")

    delimiter = ',' if filepath.lower().endswith('.csv') else '\t'
    try:
        with open(filepath, 'w', newline='') as f:
            writer = csv.writer(f, delimiter=delimiter)
            writer.writerow(['Time', 'Plasma', 'WholeBlood'])
            writer.writerows(np.column_stack((times, plasma, whole_blood)))
    except OSError as e:
        raise IOError(f"Failed to save input function to {filepath}: {e}")


def resample_to_frames(times: np.ndarray, values: np.ndarray, frame_times: np.ndarray) -> np.ndarray:
    """
    Linearly interpolates a sampled curve onto frame mid-times.

    Before the first sample the curve is 0; after the last sample its last
    value is held.

    Args:
        times (np.ndarray): Sample times, increasing.
        values (np.ndarray): Curve values at `times`.
        frame_times (np.ndarray): Times to evaluate the curve at.

    Returns:
        np.ndarray: Curve values at `frame_times`.

    Raises:
        ValueError: If fewer than 2 samples are given or lengths differ.
    """
    times = np.asarray(times, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    if len(times) != len(values):
        raise ValueError("times and values must have the same length.")
    if len(times) < 2:
        raise ValueError("At least 2 samples are needed to resample an input function.")
    interp_func = interp1d(times, values, kind='linear', bounds_error=False, fill_value=(0.0, values[-1]))
    return interp_func(np.asarray(frame_times, dtype=np.float64))


def feng_input(time_points: np.ndarray, D_scaler: float = 1.0,
               A1: float = 851.1225, A2: float = 21.8798, A3: float = 20.8113,
               L1: float = 4.133859, L2: float = 0.1190996, L3: float = 0.01043449,
               tau: float = 0.7353) -> np.ndarray:
    """
    Population FDG plasma input function (Feng et al., 1993, Int J Biomed Comput 32:95-110).

    Cp(t) = D_scaler * [(A1 (t - tau) - A2 - A3) exp(-L1 (t - tau))
                        + A2 exp(-L2 (t - tau)) + A3 exp(-L3 (t - tau))]   for t > tau,
    and 0 before the bolus arrives. Time is in minutes.

    Raises:
        TypeError: If time_points is not a NumPy array.
        ValueError: If any parameter is negative.
    """
    if not isinstance(time_points, np.ndarray):
        raise TypeError("time_points must be a NumPy array.")
    if min(D_scaler, A1, A2, A3, L1, L2, L3, tau) < 0:
        raise ValueError("Input function parameters must be non-negative.")

    t = np.maximum(time_points - tau, 0.0)
    cp = ((A1 * t - A2 - A3) * np.exp(-L1 * t)
          + A2 * np.exp(-L2 * t)
          + A3 * np.exp(-L3 * t))
    return D_scaler * np.where(time_points > tau, cp, 0.0)


POPULATION_INPUTS = {
    "feng": feng_input,
}
"""A dictionary mapping names of population input models to their functions."""


def generate_population_input(name: str, time_points: np.ndarray, params: dict = None) -> np.ndarray:
    """
    Generates a plasma input curve using a population model.

    Args:
        name (str): Model name (a key of `POPULATION_INPUTS`).
        time_points (np.ndarray): Times (minutes) to evaluate the model at.
        params (dict, optional): Overrides of the model's default parameters.

    Returns:
        np.ndarray: Plasma input values at `time_points`.

    Raises:
        ValueError: If the model name is unknown or the parameters are invalid.
    """
    if name not in POPULATION_INPUTS:
        raise ValueError(f"Unknown population input model: {name!r}. Available: {', '.join(POPULATION_INPUTS)}.")
    try:
        return POPULATION_INPUTS[name](time_points, **(params or {}))
    except TypeError as e:
        raise ValueError(f"Error calling input model '{name}' with provided parameters: {e}")


def extract_input_from_roi(pet_4d_data: np.ndarray, roi_mask: np.ndarray) -> np.ndarray:
    """
    Computes an image-derived input function as the mean TAC inside a blood-pool ROI.

    Args:
        pet_4d_data (np.ndarray): 4D array (x, y, z, frames).
        roi_mask (np.ndarray): 3D boolean mask over a blood pool (e.g. the aorta).

    Returns:
        np.ndarray: Mean activity per frame (NaN voxels ignored).

    Raises:
        ValueError: If the shapes do not match or the ROI is empty.
    """
    if not isinstance(pet_4d_data, np.ndarray) or pet_4d_data.ndim != 4:
        raise ValueError("pet_4d_data must be a 4D NumPy array.")
    roi_mask = np.asarray(roi_mask, dtype=bool)
    if roi_mask.shape != pet_4d_data.shape[:3]:
        raise ValueError("ROI mask must match the spatial dimensions of the PET data.")
    if not np.any(roi_mask):
        raise ValueError("ROI mask is empty.")
    return np.nanmean(pet_4d_data[roi_mask], axis=0)
