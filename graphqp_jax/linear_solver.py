"""Dense solver for the linear sub-problem of a factor graph.

Solves

    minimize    sum_F E_F(x) + sum_free 0.5 * w_r (a_r . x - b_r)^2
    subject to  a_r . x = b_r   for every enforced row r

where ``E_F`` are the quadratic factor energies, FREE rows carry weight
``w_r = 1 / sigma_r^2``, enforced rows are the EQUALITY rows plus the
INEQUALITY rows active in the working set, and inactive INEQUALITY rows are
ignored.

The method is a null-space method:

1. An SVD of the stacked enforced rows ``C`` gives a particular solution
   ``x_p`` of ``C x = d`` and an orthonormal basis ``N`` of the null space of
   ``C``. Redundant rows are allowed as long as they are consistent.
2. The cost restricted to ``x = x_p + N z`` is minimised by solving the
   reduced system ``(N^T H N) z = N^T (g - H x_p)``, which must be positive
   definite.
"""

import logging
from typing import TYPE_CHECKING, Optional

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from graphqp_jax.errors import (
    IndeterminantLinearSystemError,
    InconsistentConstraintsError,
)
from graphqp_jax.factors import LinearRowFactor, QuadraticFactor
from graphqp_jax.values import VectorValues

if TYPE_CHECKING:
    from graphqp_jax.graph import FactorGraph
    from graphqp_jax.working_set import WorkingSet

logger = logging.getLogger(__name__)


def _default_rcond(dtype) -> float:
    return float(jnp.finfo(dtype).eps) ** 0.5


def assemble(
    graph: "FactorGraph",
    working_set: Optional["WorkingSet"] = None,
) -> tuple[
    tuple,
    dict,
    Float[Array, "n n"],
    Float[Array, " n"],
    Float[Array, "m n"],
    Float[Array, " m"],
]:
    """Assemble the dense cost ``(H, g)`` and enforced rows ``(C, d)``.

    Args:
        graph: The factor graph.
        working_set: Activation flags of the graph's inequality rows. When
            omitted, every inequality row is treated as inactive.

    Returns:
        Tuple ``(ordering, dims, H, g, C, d)``.
    """
    ordering = graph.keys()
    dims = graph.dims()
    offsets = {}
    n = 0
    for key in ordering:
        offsets[key] = n
        n += dims[key]

    H = jnp.zeros((n, n))
    g = jnp.zeros(n)
    C_rows = []
    d_rows = []

    for index, factor in enumerate(graph):
        if isinstance(factor, QuadraticFactor):
            for key_i in factor.keys:
                si = slice(offsets[key_i], offsets[key_i] + dims[key_i])
                g = g.at[si].add(factor.linear_term(key_i))
                for key_j in factor.keys:
                    sj = slice(offsets[key_j], offsets[key_j] + dims[key_j])
                    H = H.at[si, sj].add(factor.info(key_i, key_j))
        elif isinstance(factor, LinearRowFactor):
            A = jnp.zeros((factor.rows, n))
            for key, block in zip(factor.keys, factor.blocks):
                A = A.at[:, offsets[key] : offsets[key] + dims[key]].set(block)
            if working_set is None:
                enforced = factor.enforced_mask()
            else:
                enforced = working_set.enforced_mask(index)
            weights = factor.free_weights()
            H = H + A.T @ (weights[:, None] * A)
            g = g + A.T @ (weights * factor.b)
            if np.any(enforced):
                rows = np.flatnonzero(enforced)
                C_rows.append(A[rows])
                d_rows.append(factor.b[rows])
        else:
            raise TypeError(f"Unsupported factor type {type(factor).__name__}")

    if C_rows:
        C = jnp.concatenate(C_rows, axis=0)
        d = jnp.concatenate(d_rows)
    else:
        C = jnp.zeros((0, n))
        d = jnp.zeros((0,))
    return ordering, dims, H, g, C, d


@jaxtyped(typechecker=beartype)
def solve_constrained_least_squares(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    C: Float[Array, "m n"],
    d: Float[Array, " m"],
    rcond: Optional[float] = None,
    minimum_norm: bool = False,
) -> Float[Array, " n"]:
    """Minimise ``0.5 x^T H x - g^T x`` subject to ``C x = d``.

    Args:
        H: Symmetric positive semidefinite cost Hessian.
        g: Linear term.
        C: Enforced constraint rows. May be rank deficient if consistent.
        d: Constraint right-hand side.
        rcond: Relative threshold for rank decisions. Defaults to the square
            root of the machine epsilon of the working dtype.
        minimum_norm: Return the minimiser of smallest norm when the cost is
            flat along some null-space directions, instead of raising.

    Returns:
        The minimiser ``x``.

    Raises:
        InconsistentConstraintsError: If ``C x = d`` has no solution.
        IndeterminantLinearSystemError: If the cost is not positive definite
            on the null space of ``C`` and ``minimum_norm`` is False.
    """
    n = H.shape[0]
    if rcond is None:
        rcond = _default_rcond(H.dtype)

    # Particular solution and null-space basis of the enforced rows
    if C.shape[0] > 0:
        U, S, Vt = jnp.linalg.svd(C, full_matrices=True)
        s_max = float(S[0]) if S.shape[0] > 0 else 0.0
        rank = int(jnp.sum(S > rcond * s_max)) if s_max > 0.0 else 0
        x_p = Vt[:rank].T @ ((U[:, :rank].T @ d) / S[:rank])

        residual = float(jnp.max(jnp.abs(C @ x_p - d)))
        scale = max(
            1.0,
            float(jnp.max(jnp.abs(d))),
            float(jnp.max(jnp.abs(C))) * float(jnp.max(jnp.abs(x_p), initial=0.0)),
        )
        if residual > rcond * scale:
            raise InconsistentConstraintsError(
                f"Enforced constraint rows are inconsistent (residual {residual:.3e})"
            )
        N = Vt[rank:].T
    else:
        x_p = jnp.zeros(n)
        N = jnp.eye(n)

    if N.shape[1] == 0:
        return x_p

    # Reduced system on the null space
    H_red = N.T @ H @ N
    rhs = N.T @ (g - H @ x_p)
    eigvals, eigvecs = jnp.linalg.eigh(0.5 * (H_red + H_red.T))
    lam_max = float(eigvals[-1])
    lam_min = float(eigvals[0])
    singular = lam_max <= 0.0 or lam_min <= rcond * lam_max
    if singular and minimum_norm:
        # Pseudo-inverse: no component along the flat directions. x_p lies in
        # the row space of C, so the result has the smallest norm overall.
        keep = eigvals > rcond * max(lam_max, 0.0)
        inv = jnp.where(keep, 1.0 / jnp.where(keep, eigvals, 1.0), 0.0)
        logger.debug(
            "Reduced system has %d flat directions, using minimum-norm solution",
            int(eigvals.shape[0] - jnp.sum(keep)),
        )
        return x_p + N @ (eigvecs @ (inv * (eigvecs.T @ rhs)))
    if singular:
        # Scalar positions spanned by the direction of smallest curvature
        weight = np.abs(np.asarray(N @ eigvecs[:, 0]))
        significant = [int(i) for i in np.argsort(-weight) if weight[i] > 0.1 * weight.max()]
        raise IndeterminantLinearSystemError(
            f"Linear system is rank deficient (curvature {lam_min:.3e} "
            f"against {lam_max:.3e})",
            nearby_keys=tuple(significant),
        )
    z = eigvecs @ ((eigvecs.T @ rhs) / eigvals)
    return x_p + N @ z


def solve_graph(
    graph: "FactorGraph",
    working_set: Optional["WorkingSet"] = None,
    rcond: Optional[float] = None,
    minimum_norm: bool = False,
) -> VectorValues:
    """Solve the linear sub-problem of a factor graph.

    Args:
        graph: The factor graph.
        working_set: Activation flags of the graph's inequality rows. When
            omitted, only EQUALITY rows are enforced.
        rcond: Relative threshold for rank decisions.
        minimum_norm: Resolve a rank-deficient sub-problem with its
            minimum-norm solution instead of raising.

    Returns:
        An assignment covering every variable of the graph.

    Raises:
        InconsistentConstraintsError: If the enforced rows conflict.
        IndeterminantLinearSystemError: If the sub-problem is rank deficient.
    """
    ordering, dims, H, g, C, d = assemble(graph, working_set)
    logger.debug(
        "Solving linear system with %d unknowns and %d enforced rows",
        H.shape[0],
        C.shape[0],
    )
    try:
        x = solve_constrained_least_squares(H, g, C, d, rcond, minimum_norm)
    except IndeterminantLinearSystemError as err:
        # Translate scalar positions into the variables they belong to
        owners = [key for key in ordering for _ in range(dims[key])]
        nearby = tuple(dict.fromkeys(owners[i] for i in err.nearby_keys))
        raise IndeterminantLinearSystemError(str(err), nearby_keys=nearby) from None
    return VectorValues.from_vector(x, ordering, dims)
