# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for jsdmstan.

This module provides type aliases and unions used throughout the jsdmstan
package for type checking and documentation purposes.

All imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools.
"""

from typing import TYPE_CHECKING, Literal, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt
    import pandas as pd

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

# Model option types
MethodName = Literal["mglmm", "gllvm"]
"""Names of the supported species-association formulations.

:type: Literal
"""

SiteIntercept = Literal["none", "ungrouped", "grouped"]
"""Options for site-level random intercepts.

:type: Literal
"""

# Data types
MatrixLike = Union["npt.NDArray", "pd.DataFrame"]
"""Type alias for two-dimensional inputs (community or covariate matrices).

:type: Union[npt.NDArray, pd.DataFrame]
"""

# Diagnostic output types
ProcessedTestRes = dict[str, tuple[tuple["npt.NDArray", ...], int]]
"""Type alias for processed diagnostic test results.

:type: dict[str, tuple[tuple[npt.NDArray, ...], int]]
"""

StrippedTestRes = dict[str, tuple["npt.NDArray", ...]]
"""Type alias for stripped diagnostic test results.

:type: dict[str, tuple[npt.NDArray, ...]]
"""
