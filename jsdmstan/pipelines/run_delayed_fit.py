"""Runs a delayed `stan_jsdm` fit using a delayed object file."""

import argparse
import os.path

from jsdmstan.model.fitting import run_delayed_fit


def main():
    """Runs the script."""
    # Build the argument parser
    parser = argparse.ArgumentParser(
        description="Runs a delayed `stan_jsdm` fit using a delayed object file."
    )
    parser.add_argument(
        "filepath",
        type=str,
        help="Path to the delayed object file.",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help=(
            "Path of the NetCDF file to write the results to. Defaults to the "
            "delayed object file path with '-delay.pkl' replaced by '.nc'."
        ),
    )

    # Parse the arguments and run the script
    args = parser.parse_args()
    fit = run_delayed_fit(args.filepath)

    # Save the results
    output = args.output
    if output is None:
        output = os.path.splitext(args.filepath)[0].removesuffix("-delay") + ".nc"
    print(f"Saving results to {output}...")
    fit.save_netcdf(output)


if __name__ == "__main__":
    main()
