"""Lagrange multipliers of the active constraints.

At a stationary point ``x*`` of the working sub-problem, KKT stationarity
requires, for every variable ``x_i`` touched by a constraint,

    grad_i f(x*) = sum_k A_ki^T lambda_k

where ``f`` is the total quadratic cost, ``A_ki`` is the Jacobian block of
constraint factor ``k`` for ``x_i`` and ``lambda_k`` holds one multiplier per
row of factor ``k``. These equations form a small "dual" factor graph whose
variables are the multipliers, keyed by the index of their constraint factor.

For inequality rows ``a . x <= b`` a positive multiplier means the cost would
decrease by moving into the feasible side of the row, so the row should leave
the working set.

The gradient only needs the cost factors touching constrained variables.
They are gathered once per problem by
:func:`unconstrained_hessians_of_constrained_vars`.
"""

from collections.abc import Sequence

import jax.numpy as jnp

from graphqp_jax.factors import LinearRowFactor, QuadraticFactor, to_quadratic
from graphqp_jax.graph import FactorGraph, VariableIndex
from graphqp_jax.types import NO_CONSTRAINT, Key, RowRole, Vector
from graphqp_jax.values import VectorValues
from graphqp_jax.working_set import WorkingSet


def unconstrained_hessians_of_constrained_vars(
    graph: FactorGraph,
    constrained_keys: Sequence[Key],
    variable_index: VariableIndex,
) -> FactorGraph:
    """Collect the cost curvature of every constrained variable.

    Every factor touching a constrained variable contributes its cost as a
    quadratic factor: quadratic factors as they are, unconstrained row factors
    converted through the normal equations, and mixed row factors with zero
    information on their constrained rows. Row factors with no FREE row carry
    no cost and are dropped.

    Args:
        graph: The problem graph.
        constrained_keys: Variables touched by any constraint factor.
        variable_index: Adjacency index of ``graph``.

    Returns:
        A graph of quadratic factors only.
    """
    factor_indices = sorted(
        {index for key in constrained_keys for index in variable_index[key]}
    )
    hessians = []
    for index in factor_indices:
        factor = graph[index]
        if isinstance(factor, QuadraticFactor):
            hessians.append(factor)
        elif not factor.is_constrained:
            hessians.append(to_quadratic(factor))
        elif factor.is_mixed:
            # 0 information for the constraint rows (both ineq and eq)
            hessians.append(to_quadratic(factor, factor.free_weights()))
    return FactorGraph(hessians)


def _unconstrained_gradient(
    key: Key,
    dim: int,
    free_hessians: FactorGraph,
    free_hessian_index: VariableIndex,
    x: VectorValues,
) -> Vector:
    """``grad f(x_key) = sum_j G_key,j x_j - g_key`` over the cost factors."""
    grad = jnp.zeros(dim)
    for index in free_hessian_index[key]:
        grad = grad + free_hessians[index].gradient(x, key)
    return grad


def build_dual_graph(
    graph: FactorGraph,
    working_set: WorkingSet,
    x: VectorValues,
    free_hessians: FactorGraph,
    free_hessian_index: VariableIndex,
    variable_index: VariableIndex,
    constrained_keys: Sequence[Key],
    use_least_squares: bool = False,
) -> FactorGraph:
    """Build the factor graph whose solution is the vector of multipliers.

    One row factor is created per constrained variable ``x_i``, linking the
    multipliers of every constraint factor touching ``x_i`` to the
    unconstrained gradient at ``x``. Rows of those factors that are not
    enforced in the working set (inactive inequalities or FREE rows) get a
    zero column and a zero prior on their multiplier, otherwise the dual graph
    would be under-determined.

    Args:
        graph: The problem graph.
        working_set: Current activation flags.
        x: Stationary point of the working sub-problem.
        free_hessians: Cost subgraph from
            :func:`unconstrained_hessians_of_constrained_vars`.
        free_hessian_index: Adjacency index of ``free_hessians``.
        variable_index: Adjacency index of ``graph``.
        constrained_keys: Variables touched by any constraint factor.
        use_least_squares: Solve the stationarity equations in the
            least-squares sense instead of exactly.

    Returns:
        The dual graph. Its variables are constraint factor indices.
    """
    dual_factors = []
    unconstrained_rows: dict[tuple[int, int], None] = {}

    for key in constrained_keys:
        dim = int(x[key].shape[0])
        grad = _unconstrained_gradient(key, dim, free_hessians, free_hessian_index, x)

        lambda_keys = []
        lambda_blocks = []
        for factor_index in variable_index[key]:
            factor = graph[factor_index]
            if not isinstance(factor, LinearRowFactor) or not factor.is_constrained:
                continue
            # One column per row of the constraint factor
            A_k = factor.block(key).T
            enforced = working_set.enforced_mask(factor_index)
            for row_index in range(factor.rows):
                if not enforced[row_index]:
                    A_k = A_k.at[:, row_index].set(0.0)
                    unconstrained_rows.setdefault((factor_index, row_index), None)
            lambda_keys.append(factor_index)
            lambda_blocks.append(A_k)

        if not lambda_keys:
            continue
        if use_least_squares:
            roles = (RowRole.FREE,) * dim
        else:
            roles = (RowRole.EQUALITY,) * dim
        dual_factors.append(LinearRowFactor(lambda_keys, lambda_blocks, grad, roles))

    # Zero priors on the multipliers of rows that are not enforced
    for factor_index, row_index in unconstrained_rows:
        rows = graph[factor_index].rows
        J = jnp.zeros((1, rows)).at[0, row_index].set(1.0)
        dual_factors.append(LinearRowFactor((factor_index,), (J,), jnp.zeros(1)))

    return FactorGraph(dual_factors)


def find_worst_violated_active_ineq(
    graph: FactorGraph,
    working_set: WorkingSet,
    multipliers: VectorValues,
    tol: float = 0.0,
) -> tuple[int, int]:
    """Active inequality row with the largest positive multiplier.

    Row roles are read from the problem graph. Ties are broken in favour of
    the first row in factor/row index order.

    Args:
        graph: The problem graph.
        working_set: Current activation flags.
        multipliers: Solution of the dual graph.
        tol: A multiplier must exceed this value to count as positive.

    Returns:
        ``(factor_index, row_index)`` of the row to drop, or ``(-1, -1)`` if
        no active inequality has a positive multiplier.
    """
    worst_factor, worst_row = NO_CONSTRAINT
    # If lambda <= tol the row is either inactive or a good inequality
    max_lambda = tol
    for factor_index in graph.constraint_indices():
        if factor_index not in multipliers:
            continue
        lam = multipliers[factor_index]
        factor = graph[factor_index]
        for row_index, role in enumerate(factor.roles):
            if role is not RowRole.INEQUALITY:
                continue
            if not working_set.is_active(factor_index, row_index):
                continue
            value = float(lam[row_index])
            if value > max_lambda:
                worst_factor, worst_row = factor_index, row_index
                max_lambda = value
    return worst_factor, worst_row
