"""Failures raised while specifying or fitting crossing models."""


class GLMMError(Exception):
    """Base class for model specification and fitting failures."""
    pass


class ModelSpecificationError(GLMMError):
    """Raised when a model cannot be specified or its design matrix cannot be built."""
    pass


class ConvergenceError(GLMMError):
    """Raised when the optimizer does not converge from any starting point."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class SingularFitError(GLMMError):
    """Raised when the random-intercept variance collapses to (numerically) zero.

    The fit itself succeeded; the fitted result is attached so callers can
    report it alongside the warning.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
