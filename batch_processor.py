"""
Command-line batch processor for dynamic PET kinetic analysis.

This script fits a compartmental kinetic model to one dynamic PET dataset,
either voxel by voxel on a 4D NIfTI image or region by region on a table of
region TACs, and writes the fitted parameters to an output directory.

Key functionalities:
-   Parses command-line arguments for the data source (4D PET image with an
    optional mask, or a region TAC table), frame timing, the blood input
    function (file or population model), model selection, initial values,
    fixed parameters and output settings.
-   Loads NIfTI data and text tables using functions from `kfit.io`.
-   Prepares the plasma and whole-blood input functions at the frame mid-times
    using `kfit.blood`, allowing population-model parameter overrides via CLI.
-   Fits the selected model with multiple threads using `kfit.fitting`.
-   Saves parameter, status and iteration maps as NIfTI files (image mode), or
    `fit_results.csv` and `fitted_tacs.csv` (region mode).

Example Usage:
python batch_processor.py \
    --pet /path/to/pet_4d.nii.gz \
    --mask /path/to/liver_mask.nii.gz \
    --frame_times /path/to/frames.csv \
    --input_pop_model feng --input_param D_scaler 0.5 \
    --model liver --fix k4 --init k4 0.0 \
    --decay_constant 0.0063 \
    --out_dir /path/to/output_results \
    --num_threads 8

Time is in minutes throughout: frame times, frame duration, input function
times and the decay constant (min^-1) must use the same unit as the model
rate constants.
"""
import argparse
import os
import sys

import numpy as np

# When run as a script (__package__ is None or empty), put the project root on
# sys.path so that `kfit` can be imported without installing the package.
if __package__ is None or __package__ == '':
    project_root = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, project_root)

from kfit import blood
from kfit import fitting
from kfit import io
from kfit import models
from kfit import reporting


def _fatal(message: str):
    print(f"Fatal Error: {message}")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dynamic PET Kinetic Fitting Batch Processor - Single Dataset")

    # Data source - either a 4D image (voxel-wise) or a region TAC table
    data_group = parser.add_mutually_exclusive_group(required=True)
    data_group.add_argument("--pet", help="Path to the 4D dynamic PET NIfTI file (x, y, z, frames).")
    data_group.add_argument("--tac_csv", help="Path to a CSV/TXT table of region TACs (one column per region, optional header of region names).")
    parser.add_argument("--mask", help="Path to a 3D mask NIfTI file (optional, --pet only). Fitting is limited to the mask region if provided.")

    # Frame timing
    parser.add_argument("--frame_times", required=True, help="Path to a CSV/TXT file with frame mid-times (1 column) or frame start and end times (2 columns), in minutes.")
    parser.add_argument("--frame_duration", type=float, help="Frame duration in minutes. Required when --frame_times holds mid-times only.")
    parser.add_argument("--decay_constant", type=float, default=0.0,
                        help=f"Radioactive decay constant in min^-1 applied to the model curve. Use 0 (default) for decay-corrected data, {blood.F18_DECAY_CONSTANT:.6f} for F-18.")
    parser.add_argument("--weights", help="Path to a CSV/TXT file of frame weights (1 column shared by all units, or one column per region in --tac_csv mode).")

    # Input function - either a file or a population model
    input_group = parser.add_mutually_exclusive_group(required=True)
    input_group.add_argument("--input_file", help="Path to an input function file (time, plasma[, whole blood]).")
    input_group.add_argument("--input_pop_model", choices=list(blood.POPULATION_INPUTS.keys()), help="Name of the population input function model to use.")
    parser.add_argument('--input_param', action='append', nargs=2, metavar=('PARAM_KEY', 'PARAM_VALUE'),
                        help="Set a parameter of the population input model (e.g., D_scaler 0.5). Can be used multiple times.")

    # Model fitting configuration
    parser.add_argument("--model", required=True, choices=list(models.MODELS.keys()), help="Kinetic model to fit.")
    parser.add_argument('--init', action='append', nargs=2, metavar=('PARAM_NAME', 'VALUE'),
                        help="Initial value of a model parameter (e.g., K1 0.5). Can be used multiple times.")
    parser.add_argument('--fix', action='append', metavar='PARAM_NAME',
                        help="Keep a model parameter fixed at its initial value. Can be used multiple times.")
    parser.add_argument("--max_iterations", type=int, default=fitting.DEFAULT_MAX_ITERATIONS,
                        help=f"Maximum number of function evaluations per fit. Default is {fitting.DEFAULT_MAX_ITERATIONS}.")
    parser.add_argument("--num_threads", type=int, default=os.cpu_count(), help="Number of worker threads used for fitting. Defaults to all available cores.")

    # Output configuration
    parser.add_argument("--out_dir", required=True, help="Output directory where the results will be saved.")
    return parser


def prepare_input_function(args, frame_times: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Returns the plasma and whole-blood input functions sampled at the frame mid-times.

    Raises:
        FileNotFoundError: If the input function file does not exist.
        ValueError: If the file or the population model parameters are invalid.
    """
    if args.input_file:
        print(f"  Loading input function from file: {args.input_file}")
        times, plasma, whole_blood = blood.load_input_function(args.input_file)
        print(f"  Input function loaded from file. Time points: {len(times)}")
        return (blood.resample_to_frames(times, plasma, frame_times),
                blood.resample_to_frames(times, whole_blood, frame_times))

    print(f"  Generating population input function using model: {args.input_pop_model}")
    input_params = {}
    for p_name, p_default, _, _, _ in blood.INPUT_PARAMETER_METADATA.get(args.input_pop_model, []):
        input_params[p_name] = p_default
    for key, value_str in args.input_param or []:
        try:
            value = float(value_str)
        except ValueError:
            raise ValueError(f"Input function parameter '{key}' value '{value_str}' is not a number.")
        if key not in input_params:
            print(f"Warning: Input parameter '{key}' is not in the standard metadata for model '{args.input_pop_model}'. It will still be passed to the model function.")
        input_params[key] = value
    print(f"  Using effective input parameters for '{args.input_pop_model}': {input_params}")
    plasma = blood.generate_population_input(args.input_pop_model, frame_times, params=input_params)
    return plasma, plasma.copy()


def prepare_fit_settings(args, model) -> tuple[np.ndarray, np.ndarray]:
    """
    Builds the initial parameter vector and sensitivity flags from --init and --fix.

    Raises:
        ValueError: If a parameter name is not a parameter of the model.
    """
    initial = np.array(model.initial_params, dtype=np.float64)
    sensitivity = np.ones(model.num_params)
    for name, value_str in args.init or []:
        if name not in model.param_names:
            raise ValueError(f"Unknown parameter '{name}' for model '{model.name}'. Parameters: {', '.join(model.param_names)}.")
        try:
            initial[model.param_names.index(name)] = float(value_str)
        except ValueError:
            raise ValueError(f"Initial value '{value_str}' for parameter '{name}' is not a number.")
    for name in args.fix or []:
        if name not in model.param_names:
            raise ValueError(f"Unknown parameter '{name}' for model '{model.name}'. Parameters: {', '.join(model.param_names)}.")
        sensitivity[model.param_names.index(name)] = 0
    return initial, sensitivity


def main(argv=None):
    """
    Main function for the batch processing script.

    Parses command-line arguments, loads the data and frame timing, prepares
    the input function, fits the selected kinetic model and saves the results.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mask and not args.pet:
        parser.error("--mask can only be used together with --pet.")

    # --- Print Summary of Inputs ---
    print("--- Kinetic Fitting Batch Processor Configuration ---")
    if args.pet:
        print(f"  PET File: {args.pet}")
        print(f"  Mask File: {args.mask if args.mask else 'Not provided'}")
    else:
        print(f"  Region TAC File: {args.tac_csv}")
    print(f"  Frame Times File: {args.frame_times}")
    if args.input_file:
        print(f"  Input Function Source: File - {args.input_file}")
    if args.input_pop_model:
        print(f"  Input Function Source: Population Model - {args.input_pop_model}")
        if args.input_param:
            print(f"    Custom Population Input Parameters: {dict(args.input_param)}")
    print(f"  Kinetic Model: {args.model}")
    print(f"  Decay Constant: {args.decay_constant} min^-1")
    print(f"  Output Directory: {args.out_dir}")
    print(f"  Number of Threads for Fitting: {args.num_threads}")
    print("-----------------------------------------------------")

    try:
        os.makedirs(args.out_dir, exist_ok=True)
        print(f"Output directory '{args.out_dir}' ensured.")
    except OSError as e:
        _fatal(f"Could not create output directory '{args.out_dir}'. Reason: {e}")

    # --- 1. Load Input Data ---
    pet_data, mask_data, region_names, tacs, weights = None, None, None, None, None
    try:
        print("Step 1: Loading input data...")
        frame_times, frame_duration = io.load_frame_times(args.frame_times)
        if args.frame_duration is not None:
            frame_duration = args.frame_duration
        if frame_duration is None:
            raise ValueError("--frame_duration is required when the frame times file holds mid-times only.")
        print(f"  Frame times loaded. Frames: {len(frame_times)}, frame duration: {frame_duration} min")

        if args.pet:
            pet_data, pet_affine, pet_header = io.load_pet_series(args.pet)
            print(f"  PET data loaded successfully. Shape: {pet_data.shape}")
            if args.mask:
                mask_data, _, _ = io.load_mask(args.mask, reference_shape=pet_data.shape[:3])
                print(f"  Mask loaded successfully. Voxels in mask: {int(np.count_nonzero(mask_data))}")
            else:
                print("  No mask provided. Fitting will be applied to all voxels.")
        else:
            region_names, tacs = io.load_region_tacs(args.tac_csv)
            print(f"  Region TACs loaded successfully. Regions: {len(region_names)}, frames: {tacs.shape[0]}")

        if args.weights:
            weights = io.load_weights(args.weights)
            if args.pet and weights.shape[1] != 1:
                raise ValueError("In --pet mode the weights file must hold a single column.")
            print(f"  Weights loaded. Shape: {weights.shape}")
    except FileNotFoundError as fnf_error:
        _fatal(f"Input file not found. {fnf_error}")
    except ValueError as val_error:
        _fatal(f"Invalid input file or mismatched dimensions. {val_error}")

    # --- 2. Prepare Input Function ---
    try:
        print("Step 2: Preparing input function...")
        plasma, whole_blood = prepare_input_function(args, frame_times)
        print(f"  Input function prepared successfully. Frames: {len(plasma)}, peak plasma value: {np.max(plasma):.4f}")
    except FileNotFoundError as fnf_error:
        _fatal(f"Input function file not found. {fnf_error}")
    except ValueError as val_error:
        _fatal(f"Invalid input function data or parameters. {val_error}")

    # --- 3. Kinetic Model Fitting ---
    model = models.get_model(args.model)
    try:
        print(f"Step 3: Performing {model.name} model fitting...")
        initial, sensitivity = prepare_fit_settings(args, model)
        if args.pet:
            parameter_maps = fitting.fit_voxelwise(
                model, pet_data, frame_times, plasma, whole_blood,
                args.decay_constant, frame_duration,
                mask=mask_data, weights=weights, initial_params=initial,
                sensitivity=sensitivity, max_iterations=args.max_iterations,
                num_threads=args.num_threads,
            )
        else:
            result = fitting.fit_tacs(
                model, tacs, weights, frame_times, plasma, whole_blood, args.decay_constant,
                initial, model.lower_bounds, model.upper_bounds, sensitivity,
                args.max_iterations, frame_duration, num_threads=args.num_threads,
            )
    except ValueError as val_error:
        _fatal(f"Invalid fitting configuration. {val_error}")

    # --- 4. Save Results ---
    try:
        print("Step 4: Saving results...")
        if args.pet:
            for map_name, map_data in parameter_maps.items():
                output_filepath = os.path.join(args.out_dir, f"{map_name}.nii.gz")
                io.save_nifti_map(map_data, args.pet, output_filepath)
        else:
            reporting.save_fit_results_csv(region_names, list(model.param_names), result,
                                           os.path.join(args.out_dir, "fit_results.csv"))
            io.save_region_tacs(region_names, result.curves,
                                os.path.join(args.out_dir, "fitted_tacs.csv"), frame_times=frame_times)
    except (IOError, ValueError) as e:
        _fatal(f"Could not save results. {e}")

    print("--- Batch processing completed successfully! ---")


if __name__ == "__main__":
    main()
