"""Input validation helpers for the kfit fitting code.

The batch fitting entry points check every shape and value precondition
before any work is dispatched to worker threads, so that caller errors are
reported as a `ValueError` up front instead of surfacing in the middle of a
fit. The checks live here so that the model configuration and the fitting
driver apply the same rules.
"""
import numpy as np


def as_column_matrix(data, name: str) -> np.ndarray:
    """
    Returns `data` as a 2D float array, treating a 1D vector as a single column.

    Args:
        data (array_like): 1D or 2D numeric data.
        name (str): Name used in error messages.

    Returns:
        np.ndarray: 2D float64 array. No copy is made when `data` already is a
                    2D float64 array.

    Raises:
        ValueError: If `data` has more than two dimensions or is empty along
                    its first axis.
    """
    arr = np.asarray(data, dtype=np.float64)
    if arr.ndim == 0:
        arr = arr.reshape(1, 1)
    elif arr.ndim == 1:
        arr = arr[:, np.newaxis]
    elif arr.ndim != 2:
        raise ValueError(f"{name} must be a 1D vector or a 2D matrix, got {arr.ndim} dimensions.")
    if arr.shape[0] == 0:
        raise ValueError(f"{name} must have at least one row.")
    return arr


def validate_frame_vectors(frame_times, plasma, whole_blood=None,
                           num_frames: int | None = None) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Validates the frame timing vector and the input functions sampled on it.

    Args:
        frame_times (array_like): Mid-frame times, strictly increasing and >= 0.
        plasma (array_like): Plasma input function at `frame_times`.
        whole_blood (array_like, optional): Whole-blood input function at
                                            `frame_times`. Defaults to `plasma`.
        num_frames (int, optional): Expected number of frames (e.g. the TAC
                                    row count). Not checked when None.

    Returns:
        tuple[np.ndarray, np.ndarray, np.ndarray]: 1D float arrays
            (frame_times, plasma, whole_blood).

    Raises:
        ValueError: On any length mismatch, non-finite value, fewer than two
                    frames or frame times that are negative or not increasing.
    """
    frame_times = np.asarray(frame_times, dtype=np.float64).ravel()
    plasma = np.asarray(plasma, dtype=np.float64).ravel()
    whole_blood = plasma if whole_blood is None else np.asarray(whole_blood, dtype=np.float64).ravel()

    if len(frame_times) < 2:
        raise ValueError(f"At least 2 frames are required, got {len(frame_times)}.")
    if num_frames is not None and len(frame_times) != num_frames:
        raise ValueError(f"Frame times have {len(frame_times)} entries but the TAC data has {num_frames} frames.")
    if len(plasma) != len(frame_times):
        raise ValueError(f"Plasma input has {len(plasma)} samples, expected {len(frame_times)} (one per frame).")
    if len(whole_blood) != len(frame_times):
        raise ValueError(f"Whole-blood input has {len(whole_blood)} samples, expected {len(frame_times)} (one per frame).")
    for arr, label in ((frame_times, "Frame times"), (plasma, "Plasma input"), (whole_blood, "Whole-blood input")):
        if not np.all(np.isfinite(arr)):
            raise ValueError(f"{label} contain non-finite values.")
    if frame_times[0] < 0:
        raise ValueError("Frame times must be non-negative.")
    if np.any(np.diff(frame_times) <= 0):
        raise ValueError("Frame times must be strictly increasing.")
    return frame_times, plasma, whole_blood


def validate_param_vector(values, num_params: int, name: str) -> np.ndarray:
    """Checks that a per-parameter vector (bounds, flags) has exactly `num_params` entries."""
    arr = np.asarray(values, dtype=np.float64).ravel()
    if len(arr) != num_params:
        raise ValueError(f"{name} has {len(arr)} entries but the model has {num_params} parameters.")
    return arr


def validate_max_iterations(max_iterations) -> int:
    """Checks the iteration budget: an integer >= 0 (0 evaluates without fitting)."""
    if isinstance(max_iterations, (bool, np.bool_)) or int(max_iterations) != max_iterations:
        raise ValueError(f"max_iterations must be an integer, got {max_iterations!r}.")
    if max_iterations < 0:
        raise ValueError(f"max_iterations must be >= 0, got {max_iterations}.")
    return int(max_iterations)
