# ABOUTME: Error taxonomy for the texturing core
# ABOUTME: Validation errors are fatal; topology and numerical errors degrade per region


class TexturingError(Exception):
    """Base class for all texturing errors."""


class ValidationError(TexturingError, ValueError):
    """Malformed input (data costs, labeling, sizes). Raised before any state is mutated."""


class TopologyError(TexturingError):
    """Non-manifold topology: edges shared by more than two faces, complex vertices.

    Names the category of problems that degrade texturing locally. They are
    logged and flagged, and the affected edges and vertices are left out of
    seam constraints.
    """


class NumericalError(TexturingError, ArithmeticError):
    """A sparse solve did not converge or produced non-finite values."""

    def __init__(self, message: str, iterations: int = 0):
        super().__init__(message)
        self.iterations = iterations
