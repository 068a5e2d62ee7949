"""kfit: parallel voxel-wise and region-wise kinetic model fitting for dynamic PET.

The package is organised as follows:
- `kfit.models`: kinetic model evaluators (one-tissue, dual-input liver) and
  the shared, read-only model configuration they are evaluated against.
- `kfit.solver`: the bounded nonlinear least-squares solve for a single TAC.
- `kfit.fitting`: input broadcasting, sensitivity masks and the multi-threaded
  batch fitting driver (TAC matrices and 4D images).
- `kfit.blood`: loading, resampling and generating blood input functions.
- `kfit.io`: NIfTI and text/CSV input/output.
- `kfit.reporting`: ROI statistics and CSV export of fit results.
"""
