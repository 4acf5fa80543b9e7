"""Quadratic-cost and linear-row factors.

Two kinds of factor make up a quadratic program over a graph of variables:

- :class:`QuadraticFactor` holds a local quadratic cost in information form,

      E(x) = 0.5 * (x^T G x - 2 x^T g + f),

  with ``G`` stored as a :class:`SymmetricBlockMatrix` partitioned by the
  factor's variables.

- :class:`LinearRowFactor` holds scalar rows ``a_row . x = b_row``. Each row
  has a fixed :class:`~graphqp_jax.types.RowRole`: FREE rows are weighted least
  squares costs ``0.5 * ((a_row . x - b_row) / sigma)^2``, EQUALITY rows are
  hard constraints and INEQUALITY rows are constraints ``a_row . x <= b_row``
  whose enforcement is decided by the active-set solver.

:func:`to_quadratic` converts a row factor into the equivalent quadratic factor
(normal equations).
"""

from collections.abc import Sequence
from typing import Optional, Union

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from graphqp_jax.errors import DimensionMismatchError
from graphqp_jax.types import SCALE_TOL, Key, RowRole, Scalar
from graphqp_jax.utils import as_float_array
from graphqp_jax.values import VectorValues


class SymmetricBlockMatrix(eqx.Module):
    """Dense symmetric matrix partitioned into square diagonal blocks.

    The full matrix is stored, so :meth:`block` returns the correctly oriented
    block for any pair of block indices.

    Attributes:
        matrix: The symmetric matrix.
        dims: Size of each diagonal block.
    """

    matrix: Float[Array, "n n"]
    dims: tuple[int, ...] = eqx.field(static=True)

    def __init__(self, matrix, dims: Sequence[int]):
        matrix = as_float_array(matrix)
        self.dims = tuple(int(d) for d in dims)
        n = sum(self.dims)
        if matrix.shape != (n, n):
            raise DimensionMismatchError(
                f"Expected a ({n}, {n}) matrix for blocks {self.dims}, "
                f"got {matrix.shape}"
            )
        self.matrix = 0.5 * (matrix + matrix.T)

    @property
    def offsets(self) -> tuple[int, ...]:
        return tuple(int(o) for o in np.cumsum((0,) + self.dims))

    def block(self, i: int, j: int) -> Float[Array, "di dj"]:
        """Block at block-row ``i`` and block-column ``j``."""
        offsets = self.offsets
        return self.matrix[offsets[i] : offsets[i + 1], offsets[j] : offsets[j + 1]]


class QuadraticFactor(eqx.Module):
    """Quadratic cost block in information form.

    Attributes:
        keys: Variables touched by the factor, in factor order.
        information: Information matrix ``G`` partitioned by ``keys``.
        linear: Linear term ``g`` stacked in ``keys`` order.
        constant: Constant ``f``.
    """

    keys: tuple[Key, ...] = eqx.field(static=True)
    information: SymmetricBlockMatrix
    linear: Float[Array, " n"]
    constant: Scalar

    def __init__(
        self,
        keys: Sequence[Key],
        dims: Sequence[int],
        information,
        linear,
        constant=0.0,
    ):
        if len(keys) != len(dims):
            raise DimensionMismatchError("One dimension is required per key")
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate keys in quadratic factor: {tuple(keys)}")
        self.keys = tuple(keys)
        self.information = SymmetricBlockMatrix(information, dims)
        self.linear = as_float_array(linear).reshape(-1)
        self.constant = as_float_array(constant).reshape(())
        if self.linear.shape[0] != sum(self.information.dims):
            raise DimensionMismatchError(
                f"Linear term has size {self.linear.shape[0]}, expected "
                f"{sum(self.information.dims)}"
            )

    @property
    def dims(self) -> tuple[int, ...]:
        return self.information.dims

    def dim(self, key: Key) -> int:
        return self.dims[self.position(key)]

    def position(self, key: Key) -> int:
        try:
            return self.keys.index(key)
        except ValueError:
            raise KeyError(f"Variable {key} is not touched by this factor") from None

    def info(self, key_i: Key, key_j: Key) -> Float[Array, "di dj"]:
        """Information block ``G_ij``, oriented for ``(key_i, key_j)``."""
        return self.information.block(self.position(key_i), self.position(key_j))

    def linear_term(self, key: Key) -> Float[Array, " d"]:
        offsets = self.information.offsets
        i = self.position(key)
        return self.linear[offsets[i] : offsets[i + 1]]

    def gradient(self, values: VectorValues, key: Key) -> Float[Array, " d"]:
        """Gradient of the factor energy with respect to ``key``.

        ``sum_j G_ij x_j - g_i``
        """
        grad = -self.linear_term(key)
        for other in self.keys:
            grad = grad + self.info(key, other) @ values[other]
        return grad

    def error(self, values: VectorValues) -> float:
        x = values.vector(self.keys)
        G = self.information.matrix
        return float(0.5 * (x @ G @ x - 2.0 * x @ self.linear + self.constant))


class LinearRowFactor(eqx.Module):
    """Set of scalar rows ``A x = b``, each with a fixed row role.

    Attributes:
        keys: Variables touched by the factor, in factor order.
        blocks: Jacobian block of each key, shape (rows, dim(key)).
        b: Right-hand side, one entry per row.
        roles: Role of each row.
        sigmas: Standard deviation of each row. Only FREE rows use it, with
            weight ``1 / sigma^2``.
    """

    keys: tuple[Key, ...] = eqx.field(static=True)
    blocks: tuple[Float[Array, "rows d"], ...]
    b: Float[Array, " rows"]
    roles: tuple[RowRole, ...] = eqx.field(static=True)
    sigmas: Float[Array, " rows"]

    def __init__(
        self,
        keys: Sequence[Key],
        blocks: Sequence[object],
        b,
        roles: Optional[Sequence[RowRole]] = None,
        sigmas=None,
    ):
        if len(keys) != len(blocks):
            raise DimensionMismatchError("One Jacobian block is required per key")
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate keys in row factor: {tuple(keys)}")
        self.keys = tuple(keys)
        self.b = as_float_array(b).reshape(-1)
        rows = self.b.shape[0]
        self.blocks = tuple(jnp.atleast_2d(as_float_array(block)) for block in blocks)
        self.roles = (RowRole.FREE,) * rows if roles is None else tuple(roles)
        self.sigmas = (
            jnp.ones(rows) if sigmas is None else as_float_array(sigmas).reshape(-1)
        )

    def __check_init__(self):
        rows = self.b.shape[0]
        for key, block in zip(self.keys, self.blocks):
            if block.ndim != 2 or block.shape[0] != rows:
                raise DimensionMismatchError(
                    f"Block of variable {key} has {block.shape[0]} rows, "
                    f"expected {rows}"
                )
        if len(self.roles) != rows:
            raise DimensionMismatchError(
                f"Got {len(self.roles)} row roles for {rows} rows"
            )
        if self.sigmas.shape[0] != rows:
            raise DimensionMismatchError(
                f"Got {self.sigmas.shape[0]} sigmas for {rows} rows"
            )
        for s, role in enumerate(self.roles):
            if role is RowRole.FREE and not float(self.sigmas[s]) > 0.0:
                raise ValueError(f"FREE row {s} needs a positive sigma")

    @classmethod
    def from_scales(
        cls,
        terms: Sequence[tuple[Key, object]],
        b,
        scales,
        tol: float = SCALE_TOL,
    ) -> "LinearRowFactor":
        """Build a factor from signed per-row scale values.

        ``scale > 0`` is the sigma of a FREE row, ``scale == 0`` marks an
        EQUALITY row and ``scale < 0`` an INEQUALITY row.
        """
        scales = np.asarray(scales, dtype=float).reshape(-1)
        roles = tuple(RowRole.from_scale(float(s), tol) for s in scales)
        sigmas = np.where(
            np.array([role is RowRole.FREE for role in roles], dtype=bool),
            scales,
            1.0,
        )
        keys = [key for key, _ in terms]
        blocks = [block for _, block in terms]
        return cls(keys, blocks, b, roles, sigmas)

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    @property
    def dims(self) -> tuple[int, ...]:
        return tuple(int(block.shape[1]) for block in self.blocks)

    def dim(self, key: Key) -> int:
        return int(self.block(key).shape[1])

    def block(self, key: Key) -> Float[Array, "rows d"]:
        try:
            return self.blocks[self.keys.index(key)]
        except ValueError:
            raise KeyError(f"Variable {key} is not touched by this factor") from None

    @property
    def is_constrained(self) -> bool:
        return any(role is not RowRole.FREE for role in self.roles)

    @property
    def is_mixed(self) -> bool:
        """True if the factor has both FREE and constrained rows."""
        return self.is_constrained and any(role is RowRole.FREE for role in self.roles)

    def role_mask(self, role: RowRole) -> np.ndarray:
        return np.array([r is role for r in self.roles], dtype=bool)

    def free_weights(self) -> Float[Array, " rows"]:
        """Least-squares weight of each row: ``1 / sigma^2`` if FREE, else 0."""
        free = jnp.asarray(self.role_mask(RowRole.FREE))
        return jnp.where(free, 1.0 / self.sigmas**2, 0.0)

    def enforced_mask(self, active: Optional[np.ndarray] = None) -> np.ndarray:
        """Rows solved as hard equalities.

        EQUALITY rows are always enforced; INEQUALITY rows are enforced where
        ``active`` is set; FREE rows never are.
        """
        mask = self.role_mask(RowRole.EQUALITY)
        if active is not None:
            inequality = self.role_mask(RowRole.INEQUALITY)
            mask = mask | (np.asarray(active, dtype=bool) & inequality)
        return mask

    def jacobian(self) -> Float[Array, "rows n"]:
        """Blocks stacked horizontally in ``keys`` order."""
        if not self.blocks:
            return jnp.zeros((self.rows, 0))
        return jnp.concatenate(self.blocks, axis=1)

    def evaluate(self, values: VectorValues) -> Float[Array, " rows"]:
        """``A x`` at the given assignment."""
        out = jnp.zeros(self.rows)
        for key, block in zip(self.keys, self.blocks):
            out = out + block @ values[key]
        return out

    def residual(self, values: VectorValues) -> Float[Array, " rows"]:
        return self.evaluate(values) - self.b

    def error(self, values: VectorValues) -> float:
        """Cost of the FREE rows; constraint rows carry no cost."""
        r = self.residual(values)
        return float(0.5 * jnp.sum(self.free_weights() * r**2))


Factor = Union[QuadraticFactor, LinearRowFactor]


@jaxtyped(typechecker=beartype)
def _normal_equations(
    A: Float[Array, "rows n"],
    b: Float[Array, " rows"],
    weights: Float[Array, " rows"],
) -> tuple[Float[Array, "n n"], Float[Array, " n"], Float[Array, ""]]:
    """Weighted normal equations ``(A'WA, A'Wb, b'Wb)``."""
    WA = weights[:, None] * A
    return A.T @ WA, WA.T @ b, jnp.dot(weights * b, b)


def to_quadratic(
    factor: LinearRowFactor,
    weights: Optional[Float[Array, " rows"]] = None,
) -> QuadraticFactor:
    """Convert a row factor to the equivalent quadratic factor.

    Args:
        factor: The row factor.
        weights: Per-row weights. Defaults to the factor's FREE-row weights,
            which gives constrained rows zero information.

    Returns:
        A QuadraticFactor over the same keys whose energy equals the weighted
        least-squares cost of the rows.
    """
    if weights is None:
        weights = factor.free_weights()
    G, g, f = _normal_equations(factor.jacobian(), factor.b, as_float_array(weights))
    return QuadraticFactor(factor.keys, factor.dims, G, g, f)


def prior_factor(key: Key, mean, sigma: float = 1.0) -> LinearRowFactor:
    """Isotropic FREE prior ``x_key ~ mean`` with standard deviation ``sigma``."""
    mean = as_float_array(mean).reshape(-1)
    dim = mean.shape[0]
    return LinearRowFactor(
        (key,), (jnp.eye(dim),), mean, (RowRole.FREE,) * dim, jnp.full(dim, sigma)
    )


def constraint_factor(
    terms: Sequence[tuple[Key, object]],
    b,
    role: RowRole = RowRole.INEQUALITY,
) -> LinearRowFactor:
    """Row factor whose rows all have the same constraint ``role``."""
    if role is RowRole.FREE:
        raise ValueError("constraint_factor builds EQUALITY or INEQUALITY rows")
    b = as_float_array(b).reshape(-1)
    keys = [key for key, _ in terms]
    blocks = [block for _, block in terms]
    return LinearRowFactor(keys, blocks, b, (role,) * b.shape[0])

