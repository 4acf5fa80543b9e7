"""Type definitions for graphqp-jax.

This module contains type aliases, enums and result codes used throughout the
package. Array shapes are annotated with jaxtyping and checked at runtime with
beartype on the dense numerical kernels.
"""

from enum import Enum

from jaxtyping import Array, Float

# Variables are identified by integer ids. Multipliers in a dual graph are
# keyed by the index of the constraint factor they belong to.
Key = int

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Scale values within this distance of zero are classified as equality rows
SCALE_TOL = 1e-9

# Sentinel (factor_index, row_index) pair meaning "no constraint"
NO_CONSTRAINT = (-1, -1)


class RowRole(Enum):
    """Fixed classification of a scalar row of a linear row factor."""

    FREE = "free"
    EQUALITY = "equality"
    INEQUALITY = "inequality"

    @classmethod
    def from_scale(cls, scale: float, tol: float = SCALE_TOL) -> "RowRole":
        """Derive the role from a signed scale value.

        ``scale > 0`` is an ordinary weighted cost row, ``scale == 0`` a hard
        equality and ``scale < 0`` an inequality ``a . x <= b``.
        """
        if abs(scale) <= tol:
            return cls.EQUALITY
        if scale < 0:
            return cls.INEQUALITY
        return cls.FREE


class IterationOutcome(Enum):
    """Outcome of a single active-set iteration."""

    CONTINUE = 0
    CONVERGED = 1


# Result codes for solver termination
class SolverResult:
    """Constants for solver termination status."""

    SUCCESS = 0
    MAX_ITERATIONS = 1
