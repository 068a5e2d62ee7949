import abc
from dataclasses import dataclass, field

import numpy as np
from scipy.interpolate import interp1d

from kfit.utils.validators import validate_frame_vectors

"""
This module implements the compartmental kinetic models used to describe
dynamic PET time-activity curves (TACs). It provides:

1.  **Model Configuration** (`ModelConfig`):
    *   The frame timing, plasma and whole-blood input functions, decay
        constant and frame duration shared by every TAC fitted in one run.
    *   A uniform fine time grid with the input functions interpolated onto
        it, and a frame operator that applies radioactive decay and averages
        a fine-grid curve over each frame. Both are computed once and are
        read-only afterwards, so one configuration can be shared by any
        number of fitting threads.

2.  **Kinetic Models** (`KineticModel` and its subclasses):
    *   One-Tissue Compartment Model (1TCM), with an analytic Jacobian.
    *   Dual-input liver model (hepatic artery + portal vein input, reversible
        two-tissue compartment response), with a finite-difference Jacobian.
    *   Each model exposes `curve(params, config)` and
        `jacobian(params, config, sensitivity)`; models hold no per-call
        state and are safe to evaluate concurrently.

3.  **Direct Evaluation** (`evaluate_model`):
    *   Computes model curves (and optionally Jacobians) for a parameter
        matrix without any fitting.

Convolutions are computed on the fine grid with `np.convolve`, scaled by the
grid step to approximate the convolution integral.
"""

DEFAULT_SUBSTEPS = 8
"""Number of fine-grid steps per frame duration."""


def _convolve(f: np.ndarray, g: np.ndarray, dt: float) -> np.ndarray:
    """Causal discrete convolution of two equally sampled curves, scaled by dt."""
    return np.convolve(f, g, mode='full')[:len(f)] * dt


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64)
    arr.setflags(write=False)
    return arr


def _input_on_grid(frame_times: np.ndarray, values: np.ndarray, grid: np.ndarray) -> np.ndarray:
    """
    Linearly interpolates an input function sampled at the frame times onto the fine grid.

    The input is taken to be 0 at t=0 (before the first sample) and to hold its
    last value after the last frame.
    """
    knots, knot_values = frame_times, values
    if frame_times[0] > 0:
        knots = np.concatenate(([0.0], frame_times))
        knot_values = np.concatenate(([0.0], values))
    interp_func = interp1d(knots, knot_values, kind='linear',
                           bounds_error=False, fill_value=(0.0, knot_values[-1]))
    return interp_func(grid)


def _interpolation_weights(points: np.ndarray, step: float, n_grid: int) -> np.ndarray:
    """Rows of linear-interpolation weights that evaluate a grid curve at `points`."""
    pos = np.clip(points / step, 0.0, n_grid - 1)
    idx = np.minimum(np.floor(pos).astype(int), n_grid - 2)
    frac = pos - idx
    weights = np.zeros((len(points), n_grid))
    rows = np.arange(len(points))
    weights[rows, idx] = 1.0 - frac
    weights[rows, idx + 1] += frac
    return weights


def _frame_operator(frame_times: np.ndarray, frame_duration: float, grid: np.ndarray,
                    step: float, decay_constant: float) -> np.ndarray:
    """
    Builds the (frames x grid) matrix mapping a fine-grid curve to frame values.

    Row i integrates the decayed curve over [t_i - d/2, t_i + d/2] with the
    trapezoidal rule and divides by the frame duration d. The window ends are
    located on the cumulative integral by linear interpolation; the
    cumulative-integral matrix itself is never formed.

    Args:
        frame_times (np.ndarray): Mid-frame times.
        frame_duration (float): Duration of every frame.
        grid (np.ndarray): Uniform fine grid starting at 0.
        step (float): Grid spacing.
        decay_constant (float): Radioactive decay constant (0 disables decay).

    Returns:
        np.ndarray: The frame operator.
    """
    n_grid = len(grid)
    half = frame_duration / 2.0
    window = (_interpolation_weights(frame_times + half, step, n_grid)
              - _interpolation_weights(frame_times - half, step, n_grid))

    # window @ T, with T[k, j] = step for 0 < j < k and step/2 on the first
    # column and the diagonal (trapezoidal cumulative integral).
    tail = np.cumsum(window[:, ::-1], axis=1)[:, ::-1] - window
    operator = step * tail + 0.5 * step * window
    operator[:, 0] = 0.5 * step * tail[:, 0]

    operator /= frame_duration
    operator *= np.exp(-decay_constant * grid)[np.newaxis, :]
    return operator


def _free_mask(sensitivity, num_params: int) -> np.ndarray:
    if sensitivity is None:
        return np.ones(num_params, dtype=bool)
    return np.asarray(sensitivity, dtype=bool)


@dataclass(frozen=True, eq=False)
class ModelConfig:
    """
    Read-only timing and input-function data shared by all fitting units of a run.

    Attributes:
        model (KineticModel): The kinetic model evaluated against this configuration.
        frame_times (np.ndarray): Mid-frame times (e.g. minutes), strictly increasing.
        plasma (np.ndarray): Plasma input function sampled at `frame_times`.
        whole_blood (np.ndarray): Whole-blood input function sampled at
                                  `frame_times`. None means "same as plasma".
        decay_constant (float): Decay constant in 1/(time unit). The model curve is
                                multiplied by exp(-decay_constant * t) before frame
                                averaging, so 0 should be used for decay-corrected data.
        frame_duration (float): Duration of each frame, in the time unit of `frame_times`.
        substeps (int): Fine-grid steps per frame duration.
    """
    model: "KineticModel"
    frame_times: np.ndarray
    plasma: np.ndarray
    whole_blood: np.ndarray | None
    decay_constant: float
    frame_duration: float
    substeps: int = DEFAULT_SUBSTEPS
    grid: np.ndarray = field(init=False, repr=False)
    grid_step: float = field(init=False, repr=False)
    plasma_grid: np.ndarray = field(init=False, repr=False)
    whole_blood_grid: np.ndarray = field(init=False, repr=False)
    frame_operator: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        frame_times, plasma, whole_blood = validate_frame_vectors(self.frame_times, self.plasma, self.whole_blood)
        if not np.isfinite(self.frame_duration) or self.frame_duration <= 0:
            raise ValueError(f"frame_duration must be positive, got {self.frame_duration}.")
        if not np.isfinite(self.decay_constant) or self.decay_constant < 0:
            raise ValueError(f"decay_constant must be >= 0, got {self.decay_constant}.")
        if int(self.substeps) < 1:
            raise ValueError(f"substeps must be >= 1, got {self.substeps}.")

        step = float(self.frame_duration) / int(self.substeps)
        t_end = frame_times[-1] + float(self.frame_duration) / 2.0
        grid = np.arange(int(np.ceil(t_end / step)) + 1) * step

        # Frozen dataclass: derived fields are set once, here.
        set_field = object.__setattr__
        set_field(self, 'frame_times', _readonly(frame_times))
        set_field(self, 'plasma', _readonly(plasma))
        set_field(self, 'whole_blood', _readonly(whole_blood))
        set_field(self, 'decay_constant', float(self.decay_constant))
        set_field(self, 'frame_duration', float(self.frame_duration))
        set_field(self, 'grid', _readonly(grid))
        set_field(self, 'grid_step', step)
        set_field(self, 'plasma_grid', _readonly(_input_on_grid(frame_times, plasma, grid)))
        set_field(self, 'whole_blood_grid', _readonly(_input_on_grid(frame_times, whole_blood, grid)))
        set_field(self, 'frame_operator', _readonly(
            _frame_operator(frame_times, self.frame_duration, grid, step, self.decay_constant)))

    @property
    def num_frames(self) -> int:
        return len(self.frame_times)

    def sample(self, fine_curve: np.ndarray) -> np.ndarray:
        """Decays and frame-averages a fine-grid curve (or the columns of a grid x k matrix)."""
        return self.frame_operator @ fine_curve


class KineticModel(abc.ABC):
    """
    Interface implemented by every kinetic model.

    Subclasses define the parameter names with their default initial values and
    bounds, and implement `curve`. `jacobian` defaults to central differences of
    `curve`; models with closed-form derivatives override it.
    """
    name = ""
    param_names: tuple[str, ...] = ()
    initial_params: tuple[float, ...] = ()
    lower_bounds: tuple[float, ...] = ()
    upper_bounds: tuple[float, ...] = ()
    fd_step = 1e-6

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    @abc.abstractmethod
    def curve(self, params: np.ndarray, config: ModelConfig) -> np.ndarray:
        """
        Evaluates the model TAC.

        Args:
            params (np.ndarray): Parameter vector of length `num_params`.
            config (ModelConfig): Shared model configuration.

        Returns:
            np.ndarray: Frame values, length `config.num_frames`.
        """

    def jacobian(self, params: np.ndarray, config: ModelConfig, sensitivity=None) -> np.ndarray:
        """
        Evaluates d(curve)/d(params) for the free parameters.

        Args:
            params (np.ndarray): Parameter vector of length `num_params`.
            config (ModelConfig): Shared model configuration.
            sensitivity (array_like of bool, optional): Free-parameter mask.
                Columns of fixed parameters are left at zero. Defaults to all free.

        Returns:
            np.ndarray: (num_frames, num_params) sensitivity matrix.
        """
        params = np.asarray(params, dtype=np.float64)
        free = _free_mask(sensitivity, self.num_params)
        jac = np.zeros((config.num_frames, self.num_params))
        for i in np.flatnonzero(free):
            h = self.fd_step * max(abs(params[i]), 1.0)
            forward = params.copy()
            forward[i] += h
            backward = params.copy()
            backward[i] -= h
            jac[:, i] = (self.curve(forward, config) - self.curve(backward, config)) / (2.0 * h)
        return jac

    def __repr__(self):
        return f"{type(self).__name__}()"


class OneTissueModel(KineticModel):
    """
    One-Tissue Compartment Model with a fractional blood volume term.

    C(t) = (1 - vb) * K1 * exp(-k2 t) (*) Cp(t) + vb * Cwb(t)

    Parameters: vb (blood volume fraction), K1 (min^-1), k2 (min^-1).
    """
    name = "1tcm"
    param_names = ("vb", "K1", "k2")
    initial_params = (0.05, 0.1, 0.1)
    lower_bounds = (0.0, 0.0, 0.0)
    upper_bounds = (1.0, 5.0, 5.0)

    def curve(self, params, config):
        vb, K1, k2 = (float(p) for p in params)
        kernel = np.exp(-k2 * config.grid)
        tissue = K1 * _convolve(config.plasma_grid, kernel, config.grid_step)
        return config.sample((1.0 - vb) * tissue + vb * config.whole_blood_grid)

    def jacobian(self, params, config, sensitivity=None):
        vb, K1, k2 = (float(p) for p in params)
        free = _free_mask(sensitivity, self.num_params)
        kernel = np.exp(-k2 * config.grid)
        unit_tissue = _convolve(config.plasma_grid, kernel, config.grid_step)

        columns = np.zeros((len(config.grid), self.num_params))
        if free[0]:
            columns[:, 0] = config.whole_blood_grid - K1 * unit_tissue
        if free[1]:
            columns[:, 1] = (1.0 - vb) * unit_tissue
        if free[2]:
            columns[:, 2] = -(1.0 - vb) * K1 * _convolve(config.plasma_grid, config.grid * kernel, config.grid_step)
        return config.sample(columns)


def _two_tissue_response(t: np.ndarray, K1: float, k2: float, k3: float, k4: float) -> np.ndarray:
    """
    Impulse response of the reversible two-tissue compartment model (both compartments).

    K1/(a2 - a1) * [(k3 + k4 - a1) exp(-a1 t) + (a2 - k3 - k4) exp(-a2 t)]
    with a1,2 = (k2 + k3 + k4 -/+ sqrt((k2 + k3 + k4)^2 - 4 k2 k4)) / 2.
    """
    s = k2 + k3 + k4
    disc = np.sqrt(max(s * s - 4.0 * k2 * k4, 0.0))
    if disc < 1e-12 * max(abs(s), 1.0):
        # Repeated eigenvalue: limit of the expression above as a2 -> a1.
        a = s / 2.0
        return K1 * np.exp(-a * t) * (1.0 + (k3 + k4 - a) * t)
    a1 = (s - disc) / 2.0
    a2 = (s + disc) / 2.0
    return (K1 / disc) * ((k3 + k4 - a1) * np.exp(-a1 * t) + (a2 - k3 - k4) * np.exp(-a2 * t))


class LiverDualInputModel(KineticModel):
    """
    Dual-input liver model.

    The liver receives blood from the hepatic artery (fraction fa) and from the
    portal vein. The portal vein input is the arterial input delayed and
    dispersed by the gut, modelled as a one-compartment transit with rate ka:

        Cin(t) = fa * Cp(t) + (1 - fa) * [ka exp(-ka t) (*) Cp(t)]

    Tissue is a reversible two-tissue compartment model driven by Cin, and the
    blood term mixes the whole-blood input the same way:

        C(t) = (1 - vb) * h_2TCM(t; K1, k2, k3, k4) (*) Cin(t) + vb * Cwb_in(t)

    Parameters: vb, K1, k2, k3, k4, ka, fa.
    """
    name = "liver"
    param_names = ("vb", "K1", "k2", "k3", "k4", "ka", "fa")
    initial_params = (0.05, 1.0, 1.0, 0.01, 0.01, 1.0, 0.2)
    lower_bounds = (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    upper_bounds = (1.0, 10.0, 10.0, 1.0, 1.0, 10.0, 1.0)

    @staticmethod
    def dual_input(values: np.ndarray, ka: float, fa: float, config: ModelConfig) -> np.ndarray:
        """Mixes an arterial fine-grid curve with its portal-vein transit (weights sum to 1 over the grid)."""
        transit = (1.0 - np.exp(-ka * config.grid_step)) * np.exp(-ka * config.grid)
        portal = np.convolve(values, transit, mode='full')[:len(values)]
        return fa * values + (1.0 - fa) * portal

    def curve(self, params, config):
        vb, K1, k2, k3, k4, ka, fa = (float(p) for p in params)
        liver_input = self.dual_input(config.plasma_grid, ka, fa, config)
        blood = self.dual_input(config.whole_blood_grid, ka, fa, config)
        response = _two_tissue_response(config.grid, K1, k2, k3, k4)
        tissue = _convolve(liver_input, response, config.grid_step)
        return config.sample((1.0 - vb) * tissue + vb * blood)


MODELS = {
    OneTissueModel.name: OneTissueModel(),
    LiverDualInputModel.name: LiverDualInputModel(),
}
"""Registry of the available kinetic models, keyed by model name."""


def get_model(model) -> KineticModel:
    """
    Resolves a model name (or passes a model instance through).

    Raises:
        ValueError: If the name is not in `MODELS`.
    """
    if isinstance(model, KineticModel):
        return model
    if model not in MODELS:
        raise ValueError(f"Unknown kinetic model: {model!r}. Available models: {', '.join(MODELS)}.")
    return MODELS[model]


def evaluate_model(model, params, frame_times, plasma, whole_blood, decay_constant: float,
                   frame_duration: float, jacobian: bool = False):
    """
    Evaluates model TACs for one or more parameter vectors, without fitting.

    Args:
        model (str | KineticModel): Model name or instance.
        params (array_like): (num_params, num_units) matrix, or a single vector.
        frame_times, plasma, whole_blood, decay_constant, frame_duration:
            As for `ModelConfig`.
        jacobian (bool, optional): Also return the per-unit Jacobians. Defaults to False.

    Returns:
        np.ndarray | tuple[np.ndarray, np.ndarray]:
            - curves: (num_frames, num_units) column-major matrix.
            - jacobians (only if `jacobian`): (num_units, num_frames, num_params).

    Raises:
        ValueError: If the parameter row count does not match the model.
    """
    model = get_model(model)
    config = ModelConfig(model, frame_times, plasma, whole_blood, decay_constant, frame_duration)
    params = np.asarray(params, dtype=np.float64)
    if params.ndim == 1:
        params = params[:, np.newaxis]
    if params.ndim != 2 or params.shape[0] != model.num_params:
        raise ValueError(f"params must have {model.num_params} rows for model '{model.name}', got shape {params.shape}.")

    num_units = params.shape[1]
    curves = np.empty((config.num_frames, num_units), order='F')
    for j in range(num_units):
        curves[:, j] = model.curve(params[:, j], config)
    if not jacobian:
        return curves

    jacobians = np.empty((num_units, config.num_frames, model.num_params))
    for j in range(num_units):
        jacobians[j] = model.jacobian(params[:, j], config)
    return curves, jacobians
