import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from kfit.models import ModelConfig, get_model
from kfit.solver import FitStatus, check_bounds, solve_bounded
from kfit.utils.validators import (
    as_column_matrix,
    validate_frame_vectors,
    validate_max_iterations,
    validate_param_vector,
)

"""
This module implements batch fitting of kinetic models to many independent
time-activity curves (TACs), one per voxel or region. It provides:

1.  **Input Normalization**:
    *   `build_sensitivity_mask`: numeric fixed/free flags -> boolean mask,
        length-checked against the model's parameter count.
    *   `broadcast_initial_params` / `broadcast_weights`: expand a single
        shared column to one column per unit, or accept a full per-unit
        matrix as is.

2.  **Parallel Batch Fitting** (`fit_tacs`, `fit_liver_tacs`):
    *   The units (columns of the TAC matrix) are split into contiguous,
        disjoint index ranges, one per worker thread.
    *   Each worker allocates one set of scratch buffers and reuses it for
        every unit in its range.
    *   Units share only the read-only `ModelConfig`, bounds and mask; each
        unit writes only its own column of the output matrices, so no
        locking is needed. Results are valid once all workers have joined.

3.  **Voxel-wise Fitting** (`fit_voxelwise` and per-model wrappers):
    *   Flattens a 4D (x, y, z, frames) image inside an optional mask into a
        TAC matrix, fits it and scatters the results back into 3D maps.
"""

DEFAULT_MAX_ITERATIONS = 100


@dataclass
class FitResult:
    """
    Output of a batch fit.

    Attributes:
        params (np.ndarray): (num_params, num_units) column-major fitted parameters.
        curves (np.ndarray): (num_frames, num_units) column-major fitted curves.
        status (np.ndarray): (num_units,) int8 `FitStatus` codes.
        iterations (np.ndarray): (num_units,) function evaluations used per unit.
        cost (np.ndarray): (num_units,) final half weighted residual sum of squares
                           (NaN for skipped units).
        num_threads (int): Number of worker threads actually used.
    """
    params: np.ndarray
    curves: np.ndarray
    status: np.ndarray
    iterations: np.ndarray
    cost: np.ndarray
    num_threads: int


# --- Input Normalization ---
def build_sensitivity_mask(flags, num_params: int) -> np.ndarray:
    """
    Converts numeric sensitivity flags into a fixed/free parameter mask.

    Any nonzero flag marks the parameter as free; zero marks it as fixed at its
    initial value.

    Args:
        flags (array_like | None): One flag per parameter. None means all free.
        num_params (int): Number of model parameters.

    Returns:
        np.ndarray: Read-only boolean mask of length `num_params`.

    Raises:
        ValueError: If the number of flags differs from `num_params`.
    """
    if flags is None:
        mask = np.ones(num_params, dtype=bool)
    else:
        flags = np.asarray(flags).ravel()
        if len(flags) != num_params:
            raise ValueError(f"Sensitivity flags have {len(flags)} entries but the model has {num_params} parameters.")
        mask = flags != 0
    mask.setflags(write=False)
    return mask


def broadcast_initial_params(initial_params, num_params: int, num_units: int) -> np.ndarray:
    """
    Expands initial parameters to one column per unit.

    Args:
        initial_params (array_like): A vector of length `num_params`, a
            (num_params, 1) column, or a (num_params, num_units) matrix.
        num_params (int): Number of model parameters.
        num_units (int): Number of fitting units.

    Returns:
        np.ndarray: New (num_params, num_units) column-major matrix. The batch
                    fit overwrites it with the fitted parameters.

    Raises:
        ValueError: On a row count other than `num_params`, a column count
                    other than 1 or `num_units`, or non-finite values.
    """
    pinit = as_column_matrix(initial_params, "initial_params")
    if pinit.shape[0] != num_params:
        raise ValueError(f"initial_params must have {num_params} rows (one per parameter), got {pinit.shape[0]}.")
    if pinit.shape[1] not in (1, num_units):
        raise ValueError(
            f"initial_params must have 1 column (shared by all units) or {num_units} columns "
            f"(one per unit), got {pinit.shape[1]}."
        )
    if not np.all(np.isfinite(pinit)):
        raise ValueError("initial_params contain non-finite values.")

    params = np.empty((num_params, num_units), order='F')
    params[:] = pinit
    return params


def broadcast_weights(weights, num_frames: int, num_units: int) -> np.ndarray:
    """
    Expands frame weights to one column per unit.

    A single weight column is copied into every unit's column of a newly
    allocated matrix. A full (num_frames, num_units) matrix is returned as is,
    without copying.

    Args:
        weights (array_like | None): Vector or (num_frames, 1) column, or a
            (num_frames, num_units) matrix. None means unit weights.
        num_frames (int): Number of frames.
        num_units (int): Number of fitting units.

    Returns:
        np.ndarray: (num_frames, num_units) weight matrix.

    Raises:
        ValueError: On a shape mismatch, or negative or non-finite weights.
    """
    w = np.ones((num_frames, 1)) if weights is None else as_column_matrix(weights, "weights")
    if w.shape[0] != num_frames:
        raise ValueError(f"weights must have {num_frames} rows (one per frame), got {w.shape[0]}.")
    if w.shape[1] not in (1, num_units):
        raise ValueError(f"weights must have 1 column or {num_units} columns (one per unit), got {w.shape[1]}.")
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ValueError("weights must be finite and non-negative.")

    if w.shape[1] == 1:
        full = np.empty((num_frames, num_units), order='F')
        full[:] = w
        return full
    return w


# --- Dispatch ---
def resolve_num_threads(num_threads: int | None = None) -> int:
    """Requested worker count: None or 0 means one per available CPU."""
    if num_threads is None or num_threads == 0:
        return os.cpu_count() or 1
    if num_threads < 0:
        raise ValueError(f"num_threads must be >= 0, got {num_threads}.")
    return int(num_threads)


def partition_units(num_units: int, num_threads: int) -> list[range]:
    """
    Splits unit indices 0..num_units-1 into contiguous, disjoint ranges.

    Returns at most `num_threads` non-empty ranges whose sizes differ by at
    most one; no ranges when there are no units.
    """
    if num_units <= 0:
        return []
    chunks = np.array_split(np.arange(num_units), min(num_threads, num_units))
    return [range(int(chunk[0]), int(chunk[-1]) + 1) for chunk in chunks]


class _UnitScratch:
    """Buffers owned by one worker thread and reused for every unit it fits."""
    __slots__ = ('tac', 'weights', 'params', 'trial', 'curve')

    def __init__(self, num_frames: int, num_params: int):
        self.tac = np.empty(num_frames)
        self.weights = np.empty(num_frames)
        self.params = np.empty(num_params)
        self.trial = np.empty(num_params)
        self.curve = np.empty(num_frames)


@dataclass
class _Batch:
    # Shared, read-only during dispatch
    config: ModelConfig
    tac: np.ndarray
    weights: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    sensitivity: np.ndarray
    max_iterations: int
    # Outputs; unit j writes column/slot j only
    params: np.ndarray
    curves: np.ndarray
    status: np.ndarray
    iterations: np.ndarray
    cost: np.ndarray


def _fit_unit(j: int, scratch: _UnitScratch, batch: _Batch):
    np.copyto(scratch.tac, batch.tac[:, j])
    np.copyto(scratch.weights, batch.weights[:, j])
    np.copyto(scratch.params, batch.params[:, j])

    result = solve_bounded(
        batch.config.model, batch.config,
        scratch.tac, scratch.weights, scratch.params,
        batch.lower, batch.upper, batch.sensitivity,
        batch.max_iterations, scratch.curve, trial=scratch.trial,
    )

    batch.params[:, j] = scratch.params
    batch.curves[:, j] = scratch.curve
    batch.status[j] = result.status
    batch.iterations[j] = result.iterations
    batch.cost[j] = result.cost
    return result


def _fit_unit_range(units: range, batch: _Batch, progress_callback=None) -> int:
    """Worker body: fits every unit in `units` with one set of scratch buffers."""
    scratch = _UnitScratch(batch.config.num_frames, len(batch.sensitivity))
    for j in units:
        _fit_unit(j, scratch, batch)
        if progress_callback is not None:
            progress_callback(j)
    return len(units)


# --- Batch Fitting ---
def fit_tacs(model, tac, weights, frame_times, plasma, whole_blood, decay_constant: float,
             initial_params, lower_bounds, upper_bounds, sensitivity, max_iterations: int,
             frame_duration: float, num_threads: int | None = None,
             progress_callback=None) -> FitResult:
    """
    Fits a kinetic model to every column of a TAC matrix in parallel.

    All shapes and values are validated before any fit starts. Units are fitted
    independently; a unit that runs out of iterations keeps its last iterate
    (see `FitResult.status`). An exception raised while fitting a unit is
    re-raised here once all workers have finished.

    Args:
        model (str | KineticModel): Model name (see `kfit.models.MODELS`) or instance.
        tac (array_like): (num_frames, num_units) TAC matrix, or one TAC vector.
        weights (array_like | None): (num_frames, 1) or (num_frames, num_units)
                                     frame weights; None for unit weights.
        frame_times (array_like): Mid-frame times, length num_frames.
        plasma (array_like): Plasma input function at `frame_times`.
        whole_blood (array_like | None): Whole-blood input at `frame_times`
                                         (None uses `plasma`).
        decay_constant (float): Decay constant (0 for decay-corrected data).
        initial_params (array_like): (num_params, 1) or (num_params, num_units).
        lower_bounds (array_like): Lower bounds, one per parameter.
        upper_bounds (array_like): Upper bounds, one per parameter.
        sensitivity (array_like | None): Free (nonzero) / fixed (0) flags, one
                                         per parameter; None for all free.
        max_iterations (int): Function-evaluation budget per unit.
        frame_duration (float): Duration of each frame.
        num_threads (int, optional): Worker threads. Defaults to os.cpu_count().
        progress_callback (callable, optional): Called as `progress_callback(j)`
            from the worker thread after unit j has been written.

    Returns:
        FitResult: Fitted parameters and curves plus per-unit diagnostics.

    Raises:
        ValueError: On inconsistent shapes or invalid values.
    """
    model = get_model(model)
    num_params = model.num_params

    tac = as_column_matrix(tac, "tac")
    num_frames, num_units = tac.shape
    validate_frame_vectors(frame_times, plasma, whole_blood, num_frames=num_frames)
    config = ModelConfig(model, frame_times, plasma, whole_blood, decay_constant, frame_duration)

    sens = build_sensitivity_mask(sensitivity, num_params)
    lower, upper = check_bounds(
        validate_param_vector(lower_bounds, num_params, "lower_bounds"),
        validate_param_vector(upper_bounds, num_params, "upper_bounds"),
        sens,
    )
    lower.setflags(write=False)
    upper.setflags(write=False)
    max_iterations = validate_max_iterations(max_iterations)
    params = broadcast_initial_params(initial_params, num_params, num_units)
    weights = broadcast_weights(weights, num_frames, num_units)
    requested_threads = resolve_num_threads(num_threads)

    curves = np.zeros((num_frames, num_units), order='F')
    status = np.full(num_units, FitStatus.SKIPPED, dtype=np.int8)
    iterations = np.zeros(num_units, dtype=np.int64)
    cost = np.full(num_units, np.nan)
    if num_units == 0:
        return FitResult(params, curves, status, iterations, cost, 0)

    partitions = partition_units(num_units, requested_threads)
    print(f"Fitting {model.name} model to {num_units} TACs using {len(partitions)} threads...")

    batch = _Batch(config, tac, weights, lower, upper, sens, max_iterations,
                   params, curves, status, iterations, cost)
    if len(partitions) == 1:
        _fit_unit_range(partitions[0], batch, progress_callback)
    else:
        with ThreadPoolExecutor(max_workers=len(partitions)) as executor:
            futures = [executor.submit(_fit_unit_range, units, batch, progress_callback)
                       for units in partitions]
            for future in futures:
                future.result()

    num_converged = int(np.count_nonzero(status == FitStatus.CONVERGED))
    print(f"{model.name} fitting completed: {num_converged} of {num_units} TACs converged.")
    return FitResult(params, curves, status, iterations, cost, len(partitions))


def fit_liver_tacs(tac, weights, frame_times, plasma, whole_blood, decay_constant: float,
                   initial_params, lower_bounds, upper_bounds, sensitivity, max_iterations: int,
                   frame_duration: float, num_threads: int | None = None,
                   progress_callback=None) -> FitResult:
    """
    Fits the dual-input liver model to every column of a TAC matrix.

    Args:
        As for `fit_tacs`, without `model`. Parameters are ordered
        (vb, K1, k2, k3, k4, ka, fa).

    Returns:
        FitResult: See `fit_tacs`.
    """
    return fit_tacs("liver", tac, weights, frame_times, plasma, whole_blood, decay_constant,
                    initial_params, lower_bounds, upper_bounds, sensitivity, max_iterations,
                    frame_duration, num_threads=num_threads, progress_callback=progress_callback)


# --- Voxel-wise Fitting ---
def fit_voxelwise(model, pet_data: np.ndarray, frame_times, plasma, whole_blood,
                  decay_constant: float, frame_duration: float,
                  mask: np.ndarray = None, weights=None,
                  initial_params=None, lower_bounds=None, upper_bounds=None,
                  sensitivity=None, max_iterations: int = DEFAULT_MAX_ITERATIONS,
                  num_threads: int | None = None, progress_callback=None) -> dict[str, np.ndarray]:
    """
    Fits a kinetic model voxel by voxel to a 4D dynamic PET image.

    Args:
        model (str | KineticModel): Model name or instance.
        pet_data (np.ndarray): 4D array (x, y, z, frames).
        frame_times, plasma, whole_blood, decay_constant, frame_duration:
            As for `fit_tacs`.
        mask (np.ndarray, optional): 3D boolean array; only voxels where it is
                                     True are fitted. Defaults to all voxels.
        weights (array_like, optional): Per-frame weight vector shared by all
                                        voxels, or a 4D weight image shaped like
                                        `pet_data`. Defaults to unit weights.
        initial_params (array_like, optional): Initial parameter vector.
                                               Defaults to the model's defaults.
        lower_bounds, upper_bounds (array_like, optional): Defaults to the
                                                           model's bounds.
        sensitivity (array_like, optional): Free/fixed flags. Defaults to all free.
        max_iterations (int, optional): Per-voxel function-evaluation budget.
        num_threads (int, optional): Worker threads. Defaults to os.cpu_count().
        progress_callback (callable, optional): See `fit_tacs` (receives the
                                                index among fitted voxels).

    Returns:
        dict[str, np.ndarray]: 3D float32 map per parameter name (NaN outside
            the mask and for voxels skipped for lack of usable frames), plus "status" (int8 `FitStatus` codes, SKIPPED outside
            the mask) and "iterations" maps.

    Raises:
        ValueError: If `pet_data` is not 4D, or `mask` or `weights` do not match it.
    """
    model = get_model(model)
    if not isinstance(pet_data, np.ndarray) or pet_data.ndim != 4:
        raise ValueError("pet_data must be a 4D NumPy array (x, y, z, frames).")
    spatial_dims = pet_data.shape[:3]
    if mask is not None and (not isinstance(mask, np.ndarray) or mask.shape != spatial_dims):
        raise ValueError("Mask must be a 3D NumPy array matching spatial dimensions of pet_data.")
    voxel_mask = np.ones(spatial_dims, dtype=bool) if mask is None else mask.astype(bool)

    # (voxels, frames) -> (frames, voxels): each voxel's TAC becomes a contiguous column
    tac = pet_data[voxel_mask].T
    if weights is not None and np.ndim(weights) == 4:
        if np.shape(weights) != pet_data.shape:
            raise ValueError("A 4D weight image must have the same shape as pet_data.")
        weights = np.asarray(weights)[voxel_mask].T

    result_maps = {name: np.full(spatial_dims, np.nan, dtype=np.float32) for name in model.param_names}
    result_maps["status"] = np.full(spatial_dims, FitStatus.SKIPPED, dtype=np.int8)
    result_maps["iterations"] = np.zeros(spatial_dims, dtype=np.int32)

    if tac.shape[1] == 0:
        print(f"Warning: No voxels to process for {model.name} fitting (mask is all False). Returning NaN maps.")
        return result_maps

    result = fit_tacs(
        model, tac, weights, frame_times, plasma, whole_blood, decay_constant,
        model.initial_params if initial_params is None else initial_params,
        model.lower_bounds if lower_bounds is None else lower_bounds,
        model.upper_bounds if upper_bounds is None else upper_bounds,
        sensitivity, max_iterations, frame_duration,
        num_threads=num_threads, progress_callback=progress_callback,
    )

    skipped = result.status == FitStatus.SKIPPED
    for i, name in enumerate(model.param_names):
        result_maps[name][voxel_mask] = np.where(skipped, np.nan, result.params[i])
    result_maps["status"][voxel_mask] = result.status
    result_maps["iterations"][voxel_mask] = result.iterations
    return result_maps


def fit_1tcm_voxelwise(pet_data: np.ndarray, frame_times, plasma, whole_blood,
                       decay_constant: float, frame_duration: float, **kwargs) -> dict[str, np.ndarray]:
    """
    Performs voxel-wise fitting of the One-Tissue Compartment Model.

    Returns:
        dict[str, np.ndarray]: Maps "vb", "K1", "k2", "status", "iterations".
    """
    return fit_voxelwise("1tcm", pet_data, frame_times, plasma, whole_blood,
                         decay_constant, frame_duration, **kwargs)


def fit_liver_voxelwise(pet_data: np.ndarray, frame_times, plasma, whole_blood,
                        decay_constant: float, frame_duration: float, **kwargs) -> dict[str, np.ndarray]:
    """
    Performs voxel-wise fitting of the dual-input liver model.

    Returns:
        dict[str, np.ndarray]: Maps "vb", "K1", "k2", "k3", "k4", "ka", "fa",
                               "status", "iterations".
    """
    return fit_voxelwise("liver", pet_data, frame_times, plasma, whole_blood,
                         decay_constant, frame_duration, **kwargs)
