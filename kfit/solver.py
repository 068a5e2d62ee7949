import enum
from collections import namedtuple

import numpy as np
from scipy.optimize import least_squares

"""
This module implements the bounded nonlinear least-squares fit of a kinetic
model to a single time-activity curve (TAC).

The fit minimizes the weighted residual sum of squares

    sum_i w_i * (C_model(t_i; p) - C_tac(t_i))^2

over the free parameters only (as marked by the sensitivity mask), subject to
per-parameter box constraints. It uses `scipy.optimize.least_squares` with the
Trust Region Reflective algorithm, which handles bounds natively, and the
model's Jacobian restricted to the free columns.

The solve works entirely on the arrays passed in by the caller and keeps no
module-level state, so independent calls can run concurrently in different
threads.
"""

DEFAULT_FTOL = 1e-10
DEFAULT_XTOL = 1e-10
DEFAULT_GTOL = 1e-10


class FitStatus(enum.IntEnum):
    """Outcome of fitting one unit."""
    SKIPPED = -1         # no usable frame (all NaN TAC values or zero weights)
    MAX_ITERATIONS = 0   # iteration budget exhausted, last iterate returned
    CONVERGED = 1
    FIXED = 2            # every parameter fixed, curve evaluated only


SolverResult = namedtuple('SolverResult', ['status', 'iterations', 'cost'])
"""Diagnostics of a single solve: FitStatus, function evaluations used, final cost
(half the weighted residual sum of squares)."""


def check_bounds(lower, upper, sensitivity) -> tuple[np.ndarray, np.ndarray]:
    """
    Validates parameter bounds against the sensitivity mask.

    Args:
        lower (array_like): Lower bounds, one per parameter.
        upper (array_like): Upper bounds, one per parameter.
        sensitivity (np.ndarray): Boolean free-parameter mask.

    Returns:
        tuple[np.ndarray, np.ndarray]: (lower, upper) as float arrays.

    Raises:
        ValueError: If the lengths differ from the mask, a bound is NaN, or a
                    free parameter does not satisfy lower < upper.
    """
    lower = np.asarray(lower, dtype=np.float64).ravel()
    upper = np.asarray(upper, dtype=np.float64).ravel()
    num_params = len(sensitivity)
    if len(lower) != num_params or len(upper) != num_params:
        raise ValueError(f"Bounds must have {num_params} entries each, got {len(lower)} lower and {len(upper)} upper.")
    if np.any(np.isnan(lower)) or np.any(np.isnan(upper)):
        raise ValueError("Bounds must not contain NaN.")
    bad = np.flatnonzero(sensitivity & ~(lower < upper))
    if bad.size:
        raise ValueError(
            f"Lower bound must be strictly less than upper bound for free parameters; "
            f"violated at index {', '.join(str(i) for i in bad)}. Mark such parameters as fixed instead."
        )
    return lower, upper


def solve_bounded(model, config, tac: np.ndarray, weights: np.ndarray, params: np.ndarray,
                  lower: np.ndarray, upper: np.ndarray, sensitivity: np.ndarray,
                  max_iterations: int, curve_out: np.ndarray, trial: np.ndarray | None = None,
                  ftol: float = DEFAULT_FTOL, xtol: float = DEFAULT_XTOL,
                  gtol: float = DEFAULT_GTOL) -> SolverResult:
    """
    Fits `model` to one TAC, updating `params` in place.

    Frames with a non-finite TAC value or zero weight do not contribute. Free
    initial values are clipped into their bounds before fitting; fixed
    parameters are never modified. Running out of iterations is not an error:
    the last iterate is kept and reported with `FitStatus.MAX_ITERATIONS`.

    Args:
        model (KineticModel): Model to fit.
        config (ModelConfig): Shared, read-only model configuration.
        tac (np.ndarray): Measured TAC, length num_frames.
        weights (np.ndarray): Non-negative frame weights, length num_frames.
        params (np.ndarray): Initial parameters; overwritten with the result.
        lower (np.ndarray): Lower bounds.
        upper (np.ndarray): Upper bounds.
        sensitivity (np.ndarray): Boolean free-parameter mask.
        max_iterations (int): Maximum number of function evaluations. 0 skips
                              the optimization and only evaluates the curve.
        curve_out (np.ndarray): Receives the model curve at the final parameters.
        trial (np.ndarray, optional): Work buffer the size of `params`. Allocated
                                      when not given.
        ftol, xtol, gtol (float, optional): Termination tolerances passed to
                                            `scipy.optimize.least_squares`.

    Returns:
        SolverResult: status, iterations (function evaluations) and final cost.
    """
    usable = np.isfinite(tac) & (weights > 0)
    if not np.any(usable):
        curve_out[:] = model.curve(params, config)
        return SolverResult(FitStatus.SKIPPED, 0, np.nan)

    sqrt_w = np.sqrt(np.where(usable, weights, 0.0))
    observed = np.where(usable, tac, 0.0)
    free = np.flatnonzero(sensitivity)

    def residuals_at(p):
        return sqrt_w * (model.curve(p, config) - observed)

    if free.size == 0:
        curve_out[:] = model.curve(params, config)
        return SolverResult(FitStatus.FIXED, 0, 0.5 * float(np.sum(residuals_at(params) ** 2)))

    params[free] = np.clip(params[free], lower[free], upper[free])
    if max_iterations == 0:
        curve_out[:] = model.curve(params, config)
        return SolverResult(FitStatus.MAX_ITERATIONS, 0, 0.5 * float(np.sum(residuals_at(params) ** 2)))

    if trial is None:
        trial = np.empty_like(params)
    trial[:] = params

    def residuals(x):
        trial[free] = x
        return residuals_at(trial)

    def jacobian(x):
        trial[free] = x
        return sqrt_w[:, np.newaxis] * model.jacobian(trial, config, sensitivity)[:, free]

    result = least_squares(
        residuals, params[free], jac=jacobian,
        bounds=(lower[free], upper[free]),
        method='trf', x_scale='jac',
        ftol=ftol, xtol=xtol, gtol=gtol,
        max_nfev=max_iterations,
    )

    params[free] = np.clip(result.x, lower[free], upper[free])
    curve_out[:] = model.curve(params, config)
    status = FitStatus.CONVERGED if result.status > 0 else FitStatus.MAX_ITERATIONS
    return SolverResult(status, int(result.nfev), float(result.cost))
