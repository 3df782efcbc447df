# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Compilation and execution of JSDM Stan programs through CmdStanPy.

This module provides :py:class:`JSDMStanModel`, a thin extension of
``cmdstanpy.CmdStanModel`` that writes the Stan program assembled by
:py:class:`~jsdmstan.model.stancode.JSDMStanProgram` to disk, compiles it (reusing
a cached executable when the program is unchanged), and accepts
:py:class:`~jsdmstan.design.JSDMData` objects in place of raw data dictionaries.
Sampling returns a :py:class:`~jsdmstan.model.results.JSDMStanFit`.

All of the numerical work (HMC with NUTS, adaptation, running chains in parallel)
is performed by CmdStan. The number of chains run concurrently is controlled by the
``parallel_chains`` argument of :py:meth:`JSDMStanModel.sample`.

Users will not normally interact with this module directly. Instead they will use
:py:func:`jsdmstan.stan_jsdm` and friends.
"""

from __future__ import annotations

import functools
import hashlib
import os.path
import warnings
import weakref

from tempfile import TemporaryDirectory
from typing import Any, Callable, Optional, ParamSpec, TypeVar, Union

from cmdstanpy import CmdStanModel, format_stan_file

import jsdmstan

from jsdmstan import utils
from jsdmstan.defaults import (
    DEFAULT_CHAINS,
    DEFAULT_CPP_OPTIONS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_MODEL_NAME,
    DEFAULT_STANC_OPTIONS,
)
from jsdmstan.design import JSDMData
from jsdmstan.model.stancode import JSDMStanProgram

results = utils.lazy_import("jsdmstan.model.results")

# Parameter and return types for decorated functions
P = ParamSpec("P")
R = TypeVar("R")


def _update_cmdstanpy_func(func: Callable[P, R], warn: bool = False) -> Callable[P, R]:
    """Wrap a CmdStanModel method so it takes ``JSDMData`` as `data` and draws
    its seed from `jsdmstan.RNG` when none is given.

    :param func: Unbound CmdStanModel method
    :type func: Callable[P, R]
    :param warn: Emit an "experimental" warning on every call. Defaults to False.
    :type warn: bool
    """

    @functools.wraps(func)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        if warn:
            warnings.warn(
                f"{func.__name__} is experimental and has not been thoroughly tested"
                " with jsdmstan models. Use with caution."
            )

        stan_model = args[0]
        assert isinstance(stan_model, JSDMStanModel)

        # Positional arguments become keywords so `data` and `seed` can be found
        kwargs.update(dict(zip(func.__code__.co_varnames[1:], args[1:])))

        # Seeds come from the package RNG so `jsdmstan.manual_seed` governs runs
        if kwargs.get("seed") is None:
            kwargs["seed"] = int(jsdmstan.RNG.integers(0, 2**32 - 1))

        if "data" not in kwargs:
            raise ValueError(
                f"The 'data' keyword argument must be provided to {func.__name__}"
            )
        kwargs["data"] = stan_model.gather_inputs(kwargs["data"])

        return func(stan_model, **kwargs)

    return inner


class JSDMStanModel(CmdStanModel):
    """CmdStanModel for a Joint Species Distribution Model.

    :param program: The Stan program to compile
    :type program: JSDMStanProgram
    :param output_dir: Directory for the Stan program, executable and sampler
        outputs. Defaults to None, in which case a temporary directory is used that
        is removed when this object is garbage collected.
    :type output_dir: Optional[str]
    :param force_compile: Whether to recompile even if a compiled executable exists.
        Defaults to False.
    :type force_compile: bool
    :param stanc_options: Options for the Stan compiler. Defaults to None (uses
        defaults).
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for C++ compilation. Defaults to None (uses
        defaults).
    :type cpp_options: Optional[dict[str, Any]]
    :param user_header: Custom C++ header code. Defaults to None.
    :type user_header: Optional[str]
    :param model_name: Base name for the compiled model. A hash of the program is
        appended so that different programs never share an executable. Defaults
        to 'jsdm'.
    :type model_name: str

    :ivar program: The Stan program
    :ivar output_dir: Directory containing Stan files
    :ivar stan_executable_path: Path to the compiled Stan executable
    """

    def __init__(
        self,
        program: JSDMStanProgram,
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = None,
        model_name: str = DEFAULT_MODEL_NAME,
    ):
        # Set default options
        self._stanc_options = dict(stanc_options or DEFAULT_STANC_OPTIONS)
        cpp_options = dict(cpp_options or DEFAULT_CPP_OPTIONS)

        # Note the program and where it goes
        self.program = program
        self._set_output_dir(output_dir)
        code_hash = hashlib.sha1(program.code.encode("utf-8")).hexdigest()[:10]
        self.stan_executable_path = os.path.join(
            self.output_dir,
            f"{model_name}_{program.method}_{program.family.name}_{code_hash}",
        )

        # Write the Stan program. Programs are named by their hash, so an existing
        # file already holds this code.
        if force_compile or not os.path.exists(self.stan_program_path):
            self.write_stan_program()

        # Initialize the CmdStanModel
        super().__init__(
            stan_file=self.stan_program_path,
            exe_file=(
                self.stan_executable_path
                if os.path.exists(self.stan_executable_path) and not force_compile
                else None
            ),
            force_compile=force_compile,
            stanc_options=self._stanc_options,
            cpp_options=cpp_options,
            user_header=user_header,
        )

    def _set_output_dir(self, output_dir: Optional[str]) -> None:
        """Configure the output directory, creating a self-cleaning temporary
        directory if none is given.

        :raises FileNotFoundError: If the specified directory doesn't exist
        """
        if output_dir is None:
            tempdir = TemporaryDirectory()
            weakref.finalize(self, tempdir.cleanup)
            output_dir = tempdir.name

        if not os.path.exists(output_dir):
            raise FileNotFoundError(f"Output directory {output_dir} does not exist.")

        self.output_dir = output_dir

    def write_stan_program(self) -> None:
        """Write and format the Stan program in the output directory."""
        with open(self.stan_program_path, "w", encoding="utf-8") as f:
            f.write(self.program.code)

        format_stan_file(
            self.stan_program_path,
            overwrite_file=True,
            canonicalize=True,
            stanc_options=self._stanc_options,
        )

    def gather_inputs(self, data: Union[JSDMData, dict[str, Any]]) -> dict[str, Any]:
        """Get the Stan data dictionary.

        :param data: Validated JSDM data, or a ready-made data dictionary
        :type data: Union[JSDMData, dict[str, Any]]

        :returns: Data dictionary for CmdStan
        :rtype: dict[str, Any]

        :raises ValueError: If the data do not match the structure of the program
        """
        if isinstance(data, JSDMData):
            mismatched = [
                key
                for key, value in (
                    ("method", self.program.method),
                    ("family", self.program.family.name),
                    ("site_intercept", self.program.site_intercept),
                    ("beta_param", self.program.beta_param),
                    ("zi_param", self.program.zi_param),
                )
                if data.options[key] != value
            ]
            if mismatched:
                raise ValueError(
                    "The data were prepared for a different model structure: "
                    f"mismatched {', '.join(mismatched)}."
                )
            return data.stan_data
        return data

    def code(self) -> str:
        """Get the complete Stan program code."""
        return self.program.code

    def sample(  # pylint: disable=arguments-differ
        self,
        *args,
        save_data: bool = True,
        use_dask: bool = False,
        **kwargs,
    ) -> "results.JSDMStanFit":
        """Run the NUTS sampler and wrap the output in a ``JSDMStanFit``.

        :param args: Positional arguments passed to CmdStanModel.sample
        :param save_data: Whether the results should store the observed community
            matrix. Defaults to True.
        :type save_data: bool
        :param use_dask: Whether the results should compute summaries with Dask.
            Defaults to False.
        :type use_dask: bool
        :param kwargs: Keyword arguments passed to CmdStanModel.sample. ``data``
            must be a ``JSDMData`` object. ``chains`` defaults to 4 and
            ``parallel_chains`` to the number of chains.

        :returns: The fitted model
        :rtype: results.JSDMStanFit
        """
        # Update the sample function from CmdStanModel to accept JSDMData
        updated_parent_sample = _update_cmdstanpy_func(CmdStanModel.sample)

        # Combine args and kwargs into a single dictionary
        kwargs.update(dict(zip(CmdStanModel.sample.__code__.co_varnames[1:], args)))

        # Set the number of chains and workers if not provided
        if kwargs.get("chains") is None:
            kwargs["chains"] = DEFAULT_CHAINS
        if kwargs.get("parallel_chains") is None:
            kwargs["parallel_chains"] = kwargs["chains"]

        # The data must be a JSDMData object so that the results can be labelled
        jdata = kwargs.get("data")
        if not isinstance(jdata, JSDMData):
            raise TypeError("`data` must be a `JSDMData` instance.")

        # Run the sample function and build the results object
        fit = updated_parent_sample(self, **kwargs)
        return results.JSDMStanFit.from_cmdstanpy(
            fit=fit,
            data=jdata,
            program=self.program,
            save_data=save_data,
            use_dask=use_dask,
        )

    # CmdStanModel methods accepting JSDMData
    optimize = _update_cmdstanpy_func(CmdStanModel.optimize, warn=True)
    """Enhanced optimize accepting ``JSDMData``. Experimental feature."""

    variational = _update_cmdstanpy_func(CmdStanModel.variational, warn=True)
    """Enhanced variational accepting ``JSDMData``. Experimental feature."""

    pathfinder = _update_cmdstanpy_func(CmdStanModel.pathfinder, warn=True)
    """Enhanced pathfinder accepting ``JSDMData``. Experimental feature."""

    @property
    def stan_program_path(self) -> str:
        """Path to the generated Stan program file."""
        return self.stan_executable_path + ".stan"
