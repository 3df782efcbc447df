# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Internal helpers shared across jsdmstan.

Covers deferred imports of the heavy plotting stack, the inverse-logit used by
the binomial-type families, conversion of user matrices into labelled arrays,
posterior draw selection, and switching ArviZ over to Dask.
"""

from __future__ import annotations

import importlib.util
import sys

from typing import Optional, Sequence, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from arviz.utils import Dask

if TYPE_CHECKING:
    from jsdmstan import custom_types


def lazy_import(name: str):
    """Return module `name`, deferring execution of its body until first use.

    :param name: Dotted module name
    :type name: str

    :raises ImportError: If no module called `name` can be located
    """
    if name in sys.modules:
        return sys.modules[name]

    # Lazy-loading recipe from the importlib documentation
    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def stable_sigmoid(exponent: npt.NDArray[np.floating]) -> npt.NDArray[np.floating]:
    """Inverse-logit of `exponent` that neither overflows nor underflows.

    Positive entries use ``1 / (1 + exp(-x))`` and negative entries use
    ``exp(x) / (1 + exp(x))``.
    """
    exponent = np.asarray(exponent, dtype=float)
    probs = np.full_like(exponent, np.nan)

    positive = exponent >= 0
    probs[positive] = 1 / (1 + np.exp(-exponent[positive]))
    exp_neg = np.exp(exponent[~positive])
    probs[~positive] = exp_neg / (1 + exp_neg)

    assert np.isnan(probs).sum() == np.isnan(exponent).sum()
    return probs


def to_labelled_matrix(
    matrix: "custom_types.MatrixLike",
    prefix: str,
    row_prefix: str = "site",
    dtype: Optional[type] = None,
) -> tuple[npt.NDArray, list[str], list[str]]:
    """Convert an array or DataFrame to a 2D array plus row and column labels.

    DataFrames keep their own index and column names. Plain arrays are labelled
    ``<row_prefix>1 ... <row_prefix>N`` and ``<prefix>1 ... <prefix>M``.

    :param matrix: Matrix to convert
    :type matrix: custom_types.MatrixLike
    :param prefix: Prefix for generated column labels
    :type prefix: str
    :param row_prefix: Prefix for generated row labels. Defaults to "site".
    :type row_prefix: str
    :param dtype: Optional dtype to cast the values to.
    :type dtype: Optional[type]

    :returns: The array, its row labels and its column labels
    :rtype: tuple[npt.NDArray, list[str], list[str]]

    :raises ValueError: If the input is not two-dimensional
    """
    if isinstance(matrix, pd.DataFrame):
        values = matrix.to_numpy(dtype=dtype)
        rows = [str(r) for r in matrix.index]
        cols = [str(c) for c in matrix.columns]
    else:
        values = np.asarray(matrix, dtype=dtype)
        if values.ndim != 2:
            raise ValueError(
                f"Expected a two-dimensional array, got {values.ndim} dimensions."
            )
        rows = default_labels(row_prefix, values.shape[0])
        cols = default_labels(prefix, values.shape[1])

    return values, rows, cols


def default_labels(prefix: str, n: "custom_types.Integer") -> list[str]:
    """Generate the labels ``prefix1``, ``prefix2``, ..., ``prefixn``."""
    return [f"{prefix}{i + 1}" for i in range(n)]


def select_draw_ids(
    n_available: "custom_types.Integer",
    ndraws: Optional["custom_types.Integer"] = None,
    draw_ids: Optional[Union[Sequence["custom_types.Integer"], npt.NDArray]] = None,
    rng: Optional[np.random.Generator] = None,
) -> npt.NDArray[np.int64]:
    """Choose which flattened posterior draws to use.

    :param n_available: Total number of draws (chains x draws)
    :type n_available: custom_types.Integer
    :param ndraws: Number of draws to take at random without replacement.
        Ignored if ``draw_ids`` is given. Defaults to None (all draws).
    :type ndraws: Optional[custom_types.Integer]
    :param draw_ids: Explicit indices of the draws to use. Defaults to None.
    :type draw_ids: Optional[Sequence[custom_types.Integer]]
    :param rng: Random number generator used to choose draws. Defaults to None
        (the global jsdmstan RNG).
    :type rng: Optional[np.random.Generator]

    :returns: Sorted indices of the selected draws
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If the requested draws are out of range
    """
    if draw_ids is not None:
        draw_ids = np.asarray(draw_ids, dtype=np.int64)
        if draw_ids.size == 0 or draw_ids.min() < 0 or draw_ids.max() >= n_available:
            raise ValueError(
                f"`draw_ids` must be non-empty and lie within [0, {n_available})."
            )
        return draw_ids

    if ndraws is None:
        return np.arange(n_available)

    if ndraws < 1 or ndraws > n_available:
        raise ValueError(
            f"`ndraws` must be between 1 and the number of draws ({n_available})."
        )

    # pylint: disable=import-outside-toplevel
    if rng is None:
        import jsdmstan

        rng = jsdmstan.RNG

    return np.sort(rng.choice(n_available, size=ndraws, replace=False))


class az_dask:  # pylint: disable=invalid-name
    """Run the ArviZ statistics inside the block on Dask-chunked posteriors.

    Used by the summaries and diagnostics of a `JSDMStanFit` created with
    `use_dask=True`. Dask is switched off again on exit.

    :param dask_type: Value forwarded as `dask` to `xarray.apply_ufunc`
    :type dask_type: str
    :param output_dtypes: Output dtypes forwarded to `xarray.apply_ufunc`
    :type output_dtypes: Union[list[object], None]
    """

    def __init__(
        self, dask_type: str = "parallelized", output_dtypes: list[object] | None = None
    ):
        self.dask_type = dask_type
        self.output_dtypes = output_dtypes or [float]

    def __enter__(self):
        Dask.enable_dask(
            dask_kwargs={"dask": self.dask_type, "output_dtypes": self.output_dtypes}
        )
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        Dask.disable_dask()
