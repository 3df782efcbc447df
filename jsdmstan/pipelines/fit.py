"""Fits a Joint Species Distribution Model to community data stored in CSV files."""

import argparse
import json
import os.path

import pandas as pd

from jsdmstan.defaults import (
    BETA_PARAMS,
    DEFAULT_CHAINS,
    DEFAULT_ITER_SAMPLING,
    DEFAULT_ITER_WARMUP,
    FAMILIES,
    METHODS,
    SITE_INTERCEPTS,
    ZI_PARAMS,
)
from jsdmstan.model.fitting import stan_jsdm


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=(
            "Fit a JSDM to a community matrix (and optional covariates) and save the "
            "results as NetCDF, along with a parameter summary as CSV."
        )
    )

    # Required arguments
    required_group = parser.add_argument_group("required arguments")
    required_group.add_argument(
        "--Y",
        type=str,
        required=True,
        help="CSV file with the community matrix. Sites as rows, species as columns.",
    )
    required_group.add_argument(
        "--output_dir",
        type=str,
        required=True,
        help="Path to the folder where the output will be saved.",
    )

    # Site-level data
    data_group = parser.add_argument_group("site data")
    data_group.add_argument(
        "--X", type=str, default=None, help="CSV file with the site covariates."
    )
    data_group.add_argument(
        "--formula",
        type=str,
        default=None,
        help="Right-hand-side formula evaluated against the covariates in --X.",
    )
    data_group.add_argument(
        "--site_groups",
        type=str,
        default=None,
        help="CSV file with the group of each site (grouped site intercepts).",
    )
    data_group.add_argument(
        "--Ntrials",
        type=str,
        default=None,
        help="CSV file with the number of trials of each site (binomial family).",
    )
    data_group.add_argument(
        "--zi_X",
        type=str,
        default=None,
        help="CSV file with the zero-inflation covariates.",
    )

    # Model structure
    model_group = parser.add_argument_group(
        "model structure",
        description=(
            "Values given here override those in --options. Defaults apply when "
            "neither is given."
        ),
    )
    model_group.add_argument(
        "--options",
        type=str,
        default=None,
        help="JSON file of model options, such as written by jsdmstan-simulate.",
    )
    model_group.add_argument(
        "--method", choices=METHODS, default=None, help="Default = mglmm."
    )
    model_group.add_argument(
        "--family", choices=FAMILIES, default=None, help="Default = gaussian."
    )
    model_group.add_argument(
        "--D", type=int, default=None, help="Number of latent variables (GLLVM)."
    )
    model_group.add_argument(
        "--no_species_intercept",
        action="store_true",
        help="Fit without species intercepts.",
    )
    model_group.add_argument(
        "--site_intercept", choices=SITE_INTERCEPTS, default=None, help="Default = none."
    )
    model_group.add_argument(
        "--beta_param", choices=BETA_PARAMS, default=None, help="Default = cor."
    )
    model_group.add_argument(
        "--zi_param", choices=ZI_PARAMS, default=None, help="Default = constant."
    )

    # Sampler options
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--seed",
        type=int,
        default=1025,
        help="Random seed for reproducibility.",
    )
    optional_group.add_argument(
        "--n_chains",
        type=int,
        default=DEFAULT_CHAINS,
        help=f"Number of chains to run. Default = {DEFAULT_CHAINS}.",
    )
    optional_group.add_argument(
        "--n_warmup",
        type=int,
        default=DEFAULT_ITER_WARMUP,
        help=f"Number of warmup iterations. Default = {DEFAULT_ITER_WARMUP}.",
    )
    optional_group.add_argument(
        "--n_samples",
        type=int,
        default=DEFAULT_ITER_SAMPLING,
        help=(
            "Number of samples to draw after warmup. "
            f"Default = {DEFAULT_ITER_SAMPLING}."
        ),
    )
    optional_group.add_argument(
        "--adapt_delta",
        type=float,
        default=None,
        help="Target acceptance rate during adaptation. Default = CmdStan default.",
    )
    optional_group.add_argument(
        "--model_name",
        type=str,
        default="jsdm",
        help="Base name of the compiled model and output files. Default = jsdm.",
    )
    optional_group.add_argument(
        "--use_dask",
        action="store_true",
        help="Use Dask when diagnosing the model.",
    )
    optional_group.add_argument(
        "--force_compile",
        action="store_true",
        help="Force compilation of the model even if it is already compiled.",
    )
    optional_group.add_argument(
        "--delay_run",
        action="store_true",
        help=(
            "Compile the model and write a delayed object file instead of sampling. "
            "Run it later with jsdmstan-run-delayed."
        ),
    )

    return parser.parse_args()


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    # Input files must exist
    for arg in ("Y", "X", "site_groups", "Ntrials", "zi_X", "options"):
        if (path := getattr(args, arg)) is not None and not os.path.exists(path):
            raise ValueError(f"File given for --{arg} does not exist: {path}.")

    # Output dir must exist
    if not os.path.exists(args.output_dir):
        raise ValueError(f"Output directory does not exist: {args.output_dir}.")

    # Chains, warmup, and samples must be positive integers
    for arg in ("n_chains", "n_warmup", "n_samples"):
        if getattr(args, arg) <= 0:
            raise ValueError(f"{arg} must be a positive integer.")

    # A formula needs covariates to evaluate
    if args.formula is not None and args.X is None:
        raise ValueError("--formula requires covariates given with --X.")


def _read_site_column(path: str) -> pd.Series:
    """Read a single-column CSV indexed by site."""
    return pd.read_csv(path, index_col=0).iloc[:, 0]


def build_fit_kwargs(args: argparse.Namespace) -> dict:
    """Gather the data and model options into keyword arguments for `stan_jsdm`."""
    # Start from the options file, then apply any command line overrides
    options = {}
    if args.options is not None:
        with open(args.options, "r", encoding="utf-8") as f:
            options = json.load(f)
    for key in ("method", "family", "D", "site_intercept", "beta_param", "zi_param"):
        if (value := getattr(args, key)) is not None:
            options[key] = value
    if args.no_species_intercept:
        options["species_intercept"] = False
    if options.get("zi_param") is None:
        options.pop("zi_param", None)

    # Community matrix and site data
    kwargs = {"Y": pd.read_csv(args.Y, index_col=0), **options}
    if args.X is not None:
        X = pd.read_csv(args.X, index_col=0)
        if args.formula is not None:
            kwargs.update(formula=args.formula, data=X)
        elif X.shape[1] > 0:
            kwargs["X"] = X
    if args.site_groups is not None:
        kwargs["site_groups"] = _read_site_column(args.site_groups).to_numpy()
    if args.Ntrials is not None:
        kwargs["Ntrials"] = _read_site_column(args.Ntrials).to_numpy()
    if args.zi_X is not None:
        kwargs["zi_X"] = pd.read_csv(args.zi_X, index_col=0)

    return kwargs


def run_fit(args: argparse.Namespace) -> None:
    """Fit the model, run diagnostics and save the results."""
    sample_kwargs = {
        "chains": args.n_chains,
        "seed": args.seed,
        "iter_warmup": args.n_warmup,
        "iter_sampling": args.n_samples,
        "show_console": True,
        "refresh": 10,
    }
    if args.adapt_delta is not None:
        sample_kwargs["adapt_delta"] = args.adapt_delta

    # Fit, or prepare a delayed fit
    fit = stan_jsdm(
        **build_fit_kwargs(args),
        output_dir=args.output_dir,
        force_compile=args.force_compile,
        model_name=args.model_name,
        delay_run=args.delay_run,
        use_dask=args.use_dask,
        **sample_kwargs,
    )
    if fit is None:
        print(f"Delayed object file written to {args.output_dir}.")
        return

    # Run diagnostics on the results
    print("Running diagnostics...")
    _ = fit.diagnose()

    # Save the inference object with diagnostics completed and the summary
    print("Saving results...")
    basename = os.path.join(args.output_dir, args.model_name)
    fit.save_netcdf(f"{basename}_diagnosed.nc")
    fit.summary().to_csv(f"{basename}_summary.csv")


def main():
    """Main function to fit a JSDM from CSV files."""
    # Parse command line arguments
    args = parse_args()

    # Check arguments
    check_args(args)

    # Fit the model
    run_fit(args)


if __name__ == "__main__":
    main()
