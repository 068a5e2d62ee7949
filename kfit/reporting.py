import csv

import numpy as np

from kfit.solver import FitStatus

"""
This module provides functions for generating and saving reports based on
kinetic model fitting results.

It includes utilities to:
- Calculate descriptive statistics (mean, median, stddev, etc.) for parameter
  map values within a region of interest (ROI).
- Format these statistics into human-readable strings.
- Save per-unit fit results (parameters and fit diagnostics) into a CSV file.
"""


def calculate_roi_statistics(data_map: np.ndarray, roi_mask: np.ndarray) -> dict:
    """
    Calculates basic statistics for values within an ROI.

    The statistics include total number of voxels in ROI ('N'), number of valid
    (non-NaN) voxels ('N_valid'), mean, standard deviation, median, minimum and
    maximum of the valid values.

    Args:
        data_map (np.ndarray): Parameter map (a 2D slice or a full 3D map).
        roi_mask (np.ndarray): Boolean array of the same shape as `data_map`,
                               True inside the ROI.

    Returns:
        dict: {"N", "N_valid", "Mean", "StdDev", "Median", "Min", "Max"}.
              If the ROI is empty, N is 0 and the other statistics are NaN.
              If all values in the ROI are NaN, N_valid is 0 and the
              statistics are NaN.

    Raises:
        ValueError: If inputs are not NumPy arrays or have mismatched shapes.
    """
    if not isinstance(data_map, np.ndarray) or not isinstance(roi_mask, np.ndarray):
        raise ValueError("data_map and roi_mask must be NumPy arrays.")
    if data_map.shape != roi_mask.shape:
        raise ValueError("data_map and roi_mask must have the same shape.")

    roi_values = data_map[roi_mask.astype(bool)].astype(np.float64)
    valid = roi_values[~np.isnan(roi_values)]

    if valid.size == 0:
        return {"N": int(roi_values.size), "N_valid": 0, "Mean": np.nan, "StdDev": np.nan,
                "Median": np.nan, "Min": np.nan, "Max": np.nan}

    return {
        "N": int(roi_values.size),
        "N_valid": int(valid.size),
        "Mean": float(np.mean(valid)),
        "StdDev": float(np.std(valid)),
        "Median": float(np.median(valid)),
        "Min": float(np.min(valid)),
        "Max": float(np.max(valid)),
    }


def format_roi_statistics_to_string(stats_dict: dict | None, map_name: str, roi_name: str = "ROI") -> str:
    """
    Formats ROI statistics from a dictionary into a human-readable string.

    Args:
        stats_dict (dict | None): Statistics from `calculate_roi_statistics`.
        map_name (str): Name of the parameter map (e.g., "K1").
        roi_name (str, optional): Name of the ROI. Defaults to "ROI".

    Returns:
        str: A multi-line string, or a message if no valid data is available.
    """
    if not isinstance(stats_dict, dict) or stats_dict.get("N_valid", 0) == 0:
        return f"No valid data points found in {roi_name} for parameter map '{map_name}'."

    lines = [f"Statistics for {roi_name} on parameter map '{map_name}':"]
    for key, value in stats_dict.items():
        if isinstance(value, float):
            lines.append(f"  {key}: {value:.4f}")
        else:
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def save_fit_results_csv(unit_names: list[str], param_names: list[str], result, filepath: str):
    """
    Saves per-unit fit results to a CSV file.

    One row per unit: Name, one column per parameter, Status (name of the
    `FitStatus`), Iterations and Cost.

    Args:
        unit_names (list[str]): One name per fitted unit (region or voxel label).
        param_names (list[str]): Names of the model parameters, in order.
        result (FitResult): Output of `kfit.fitting.fit_tacs`.
        filepath (str): Path of the CSV file to write.

    Raises:
        ValueError: If the names do not match the result's dimensions.
        IOError: If an error occurs during file writing.
    """
    num_params, num_units = result.params.shape
    if len(unit_names) != num_units:
        raise ValueError(f"Got {len(unit_names)} unit names for {num_units} fitted units.")
    if len(param_names) != num_params:
        raise ValueError(f"Got {len(param_names)} parameter names for {num_params} parameters.")

    fieldnames = ['Name'] + list(param_names) + ['Status', 'Iterations', 'Cost']
    try:
        with open(filepath, 'w', newline='') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()
            for j, name in enumerate(unit_names):
                row = {'Name': name}
                row.update(zip(param_names, result.params[:, j]))
                row['Status'] = FitStatus(int(result.status[j])).name
                row['Iterations'] = int(result.iterations[j])
                row['Cost'] = result.cost[j]
                writer.writerow(row)
        print(f"Fit results saved to: {filepath}")
    except OSError as e:
        raise IOError(f"Error writing fit results to CSV file {filepath}: {e}")
