"""Feasible step length along a search direction (ratio test)."""

from collections.abc import Sequence
from typing import NamedTuple, Optional

import jax.numpy as jnp

from graphqp_jax.graph import FactorGraph
from graphqp_jax.types import NO_CONSTRAINT, RowRole
from graphqp_jax.values import VectorValues
from graphqp_jax.working_set import WorkingSet


class StepResult(NamedTuple):
    """Result of the ratio test.

    Attributes:
        alpha: Fraction of the direction that keeps every inactive inequality
            row feasible, in ``[0, 1]``.
        factor_index: Factor of the blocking row, or -1.
        row_index: Blocking row within the factor, or -1.
    """

    alpha: float
    factor_index: int
    row_index: int

    @property
    def blocked(self) -> bool:
        return self.factor_index >= 0 and self.row_index >= 0


def compute_step_size(
    graph: FactorGraph,
    working_set: WorkingSet,
    xk: VectorValues,
    p: VectorValues,
    constraint_indices: Optional[Sequence[int]] = None,
) -> StepResult:
    """Largest step ``alpha`` such that ``xk + alpha p`` stays feasible.

    For every inactive inequality row ``a . x <= b`` with ``a . p > 0`` the
    row is reached at ``alpha = (b - a . xk) / (a . p)``. The smallest such
    value, capped at 1, is returned together with the row reaching it. Rows
    with ``a . p <= 0`` cannot become violated and are skipped.

    Args:
        graph: The problem graph.
        working_set: Current activation flags.
        xk: Current assignment.
        p: Search direction.
        constraint_indices: Indices of the constraint factors of ``graph``.
            Computed from the graph when omitted.

    Returns:
        The step length and the blocking row, ``(-1, -1)`` if no row binds.
    """
    if constraint_indices is None:
        constraint_indices = graph.constraint_indices()

    min_alpha = 1.0
    closest_factor, closest_row = NO_CONSTRAINT
    for factor_index in constraint_indices:
        factor = graph[factor_index]
        for row_index, role in enumerate(factor.roles):
            if role is not RowRole.INEQUALITY:
                continue
            if working_set.is_active(factor_index, row_index):
                continue
            # a_j . p accumulated over the touched variables
            ajTp = 0.0
            for key, block in zip(factor.keys, factor.blocks):
                ajTp += float(jnp.dot(block[row_index], p[key]))
            # Moving along p does not approach this row
            if ajTp <= 0.0:
                continue
            ajTx = 0.0
            for key, block in zip(factor.keys, factor.blocks):
                ajTx += float(jnp.dot(block[row_index], xk[key]))
            alpha = (float(factor.b[row_index]) - ajTx) / ajTp
            # A row reached exactly at alpha = 1 still blocks; later ties do not
            if alpha < min_alpha or (closest_factor < 0 and alpha == min_alpha):
                closest_factor, closest_row = factor_index, row_index
                min_alpha = alpha

    return StepResult(max(min_alpha, 0.0), closest_factor, closest_row)


def find_most_violated_inactive_ineq(
    graph: FactorGraph,
    working_set: WorkingSet,
    x: VectorValues,
    tol: float = 0.0,
    constraint_indices: Optional[Sequence[int]] = None,
) -> tuple[int, int]:
    """Inactive inequality row with the largest violation ``a . x - b > tol``.

    Only an infeasible starting point can leave inactive rows violated; from
    a feasible start the ratio test keeps every iterate feasible.

    Returns:
        ``(factor_index, row_index)`` of the row, or ``(-1, -1)`` if every
        inactive inequality row is satisfied within ``tol``.
    """
    if constraint_indices is None:
        constraint_indices = graph.constraint_indices()

    worst_factor, worst_row = NO_CONSTRAINT
    max_violation = tol
    for factor_index in constraint_indices:
        factor = graph[factor_index]
        residual = factor.residual(x)
        for row_index, role in enumerate(factor.roles):
            if role is not RowRole.INEQUALITY:
                continue
            if working_set.is_active(factor_index, row_index):
                continue
            violation = float(residual[row_index])
            if violation > max_violation:
                worst_factor, worst_row = factor_index, row_index
                max_violation = violation
    return worst_factor, worst_row
