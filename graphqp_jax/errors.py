"""Exceptions raised by graphqp-jax."""


class DimensionMismatchError(ValueError):
    """A variable or row is used with inconsistent dimensions."""


class LinearSolveError(RuntimeError):
    """The linear sub-problem of a factor graph could not be solved."""


class IndeterminantLinearSystemError(LinearSolveError):
    """The cost restricted to the constraint null space is rank deficient.

    Attributes:
        nearby_keys: Variables spanned by the offending null-space direction,
            most significant first.
    """

    def __init__(self, message: str, nearby_keys: tuple = ()):
        super().__init__(message)
        self.nearby_keys = nearby_keys


class InconsistentConstraintsError(LinearSolveError):
    """The enforced constraint rows cannot be satisfied simultaneously."""
