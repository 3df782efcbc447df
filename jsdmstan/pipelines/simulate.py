"""Simulates a community dataset from a Joint Species Distribution Model."""

import argparse
import json
import os.path

import pandas as pd

from jsdmstan.defaults import BETA_PARAMS, FAMILIES, METHODS, SITE_INTERCEPTS, ZI_PARAMS
from jsdmstan.simulation import jsdm_sim_data

# Options that define the structure of the simulated model
STRUCTURAL_OPTIONS = (
    "method",
    "family",
    "D",
    "species_intercept",
    "site_intercept",
    "beta_param",
    "zi_param",
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Simulate a community dataset from a JSDM and write it to CSV."
    )

    # Required arguments
    required_group = parser.add_argument_group("required arguments")
    required_group.add_argument(
        "--n_sites", type=int, required=True, help="Number of sites."
    )
    required_group.add_argument(
        "--n_species", type=int, required=True, help="Number of species."
    )
    required_group.add_argument(
        "--output_dir",
        type=str,
        required=True,
        help="Path to the folder where the output will be saved.",
    )

    # Model structure
    model_group = parser.add_argument_group("model structure")
    model_group.add_argument(
        "--method", choices=METHODS, default="gllvm", help="Default = gllvm."
    )
    model_group.add_argument(
        "--family", choices=FAMILIES, default="gaussian", help="Default = gaussian."
    )
    model_group.add_argument(
        "--n_latent",
        type=int,
        default=None,
        help="Number of latent variables. Required for GLLVMs.",
    )
    model_group.add_argument(
        "--n_covariates",
        type=int,
        default=0,
        help="Number of site covariates. Default = 0.",
    )
    model_group.add_argument(
        "--no_species_intercept",
        action="store_true",
        help="Simulate without species intercepts.",
    )
    model_group.add_argument(
        "--site_intercept",
        choices=SITE_INTERCEPTS,
        default="none",
        help="Default = none.",
    )
    model_group.add_argument(
        "--n_groups",
        type=int,
        default=None,
        help="Number of site groups for grouped site intercepts.",
    )
    model_group.add_argument(
        "--beta_param", choices=BETA_PARAMS, default="unstruct", help="Default = unstruct."
    )
    model_group.add_argument(
        "--zi_param", choices=ZI_PARAMS, default="constant", help="Default = constant."
    )
    model_group.add_argument(
        "--zi_covariates",
        type=int,
        default=None,
        help="Number of zero-inflation covariates when zi_param is 'covariate'.",
    )
    model_group.add_argument(
        "--n_trials",
        type=int,
        default=None,
        help="Number of trials per site for the binomial family.",
    )

    # Optionals
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--seed",
        type=int,
        default=1025,
        help="Random seed for reproducibility.",
    )
    optional_group.add_argument(
        "--prefix",
        type=str,
        default="sim",
        help="Prefix for the output file names. Default = sim.",
    )

    return parser.parse_args()


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    # Output dir must exist
    if not os.path.exists(args.output_dir):
        raise ValueError(f"Output directory does not exist: {args.output_dir}.")

    # Sizes must be positive, with at least two species
    if args.n_sites < 1:
        raise ValueError("n_sites must be a positive integer.")
    if args.n_species < 2:
        raise ValueError("n_species must be at least 2.")

    # GLLVMs need latent variables
    if args.method == "gllvm" and args.n_latent is None:
        raise ValueError("--n_latent is required when --method is 'gllvm'.")


def run_simulation(args: argparse.Namespace) -> None:
    """Simulate the data and write the outputs."""
    simdata = jsdm_sim_data(
        N=args.n_sites,
        S=args.n_species,
        D=args.n_latent,
        K=args.n_covariates,
        family=args.family,
        method=args.method,
        species_intercept=not args.no_species_intercept,
        site_intercept=args.site_intercept,
        ngrp=args.n_groups,
        beta_param=args.beta_param,
        zi_param=args.zi_param,
        zi_k=args.zi_covariates,
        Ntrials=args.n_trials,
        seed=args.seed,
    )

    # Write the community matrix and covariates
    Y, X = simdata.to_dataframes()
    basename = os.path.join(args.output_dir, args.prefix)
    Y.to_csv(f"{basename}_Y.csv")
    X.to_csv(f"{basename}_X.csv")

    # Site-level extras
    if simdata.options["site_intercept"] == "grouped":
        pd.Series(simdata.options["grps"], index=Y.index, name="group").to_csv(
            f"{basename}_groups.csv"
        )
    if simdata.options["Ntrials"] is not None:
        pd.Series(simdata.options["Ntrials"], index=Y.index, name="Ntrials").to_csv(
            f"{basename}_Ntrials.csv"
        )
    if simdata.options["zi_X"] is not None:
        pd.DataFrame(simdata.options["zi_X"], index=Y.index).add_prefix(
            "zi_V"
        ).to_csv(f"{basename}_zi_X.csv")

    # Record the structural options so the data can be refit with the same model
    with open(f"{basename}_options.json", "w", encoding="utf-8") as f:
        json.dump(
            {key: simdata.options[key] for key in STRUCTURAL_OPTIONS}, f, indent=2
        )

    print(f"Simulated {simdata.N} sites and {simdata.S} species to {basename}_*.")


def main():
    """Main function to simulate a dataset."""
    # Parse command line arguments
    args = parse_args()

    # Check arguments
    check_args(args)

    # Simulate
    run_simulation(args)


if __name__ == "__main__":
    main()
