"""
daeval/exceptions.py

Error taxonomy for the differential-abundance adapter layer.

The value-type errors subclass ValueError so that callers written against
plain ValueError keep working; FittingFailure is a RuntimeError because it
is recoverable by retrying with different data or tuning.
"""


class DAError(Exception):
    """Base class for all daeval errors."""


class InvalidMethod(DAError, ValueError):
    """Raised when a DA method selector is not one of the supported methods."""


class SchemaMismatch(DAError, ValueError):
    """Raised when a count table and its sample metadata do not correspond."""


class DegenerateNullSet(DAError, ValueError):
    """Raised when power is requested but every tested feature is null."""


class FittingFailure(DAError, RuntimeError):
    """
    Raised when an underlying fit does not converge or hits degenerate input.

    Attributes
    ----------
    method : str or None
        Value of the DA method that failed.
    features : list
        Ids implicated in the failure: features dropped or left untestable,
        or samples with an empty library. Empty when the whole design is at
        fault.
    """

    def __init__(self, message: str, method=None, features=None):
        super().__init__(message)
        self.method = method
        self.features = list(features) if features is not None else []
