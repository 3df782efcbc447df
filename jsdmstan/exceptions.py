"""Custom exception classes for the jsdmstan package.

This module defines a hierarchy of custom exceptions used throughout the
jsdmstan package to provide clear error reporting. All custom exceptions
inherit from the base JSDMStanError class to allow for unified exception
handling when needed. Exceptions raised for malformed inputs additionally
inherit from ``ValueError`` so that they behave like the standard
language-level errors for bad arguments.
"""


class JSDMStanError(Exception):
    """Base class for all exceptions in the jsdmstan package.

    Example:
        >>> try:
        ...     # jsdmstan operations
        ...     pass
        ... except JSDMStanError as e:
        ...     print(f"jsdmstan error occurred: {e}")
    """


class DimensionMismatchError(JSDMStanError, ValueError):
    """Raised when the dimensions of community, covariate or parameter arrays
    are not consistent with one another (e.g., the rows of ``Y`` and ``X`` do not
    both match the number of sites).
    """


class UnsupportedFamilyError(JSDMStanError, ValueError):
    """Raised when a response family is unknown, or when the response matrix is
    incompatible with the requested family.
    """


class PriorSpecificationError(JSDMStanError, ValueError):
    """Raised when a prior refers to an unknown parameter or cannot be parsed."""


class MissingGroupError(JSDMStanError, ValueError):
    """Raised when a results object lacks an InferenceData group that an operation
    needs.
    """
