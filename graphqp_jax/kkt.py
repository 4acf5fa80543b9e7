"""Karush-Kuhn-Tucker diagnostics for factor-graph quadratic programs."""

from typing import Optional

import jax.numpy as jnp

from graphqp_jax.factors import LinearRowFactor, QuadraticFactor, to_quadratic
from graphqp_jax.graph import FactorGraph
from graphqp_jax.types import RowRole
from graphqp_jax.utils import max_abs
from graphqp_jax.values import VectorValues
from graphqp_jax.working_set import WorkingSet


def cost_gradient(graph: FactorGraph, values: VectorValues) -> VectorValues:
    """Gradient of the total cost (quadratic factors and FREE rows)."""
    grad = {key: jnp.zeros(dim) for key, dim in graph.dims().items()}
    for factor in graph:
        quadratic = factor if isinstance(factor, QuadraticFactor) else to_quadratic(factor)
        for key in quadratic.keys:
            grad[key] = grad[key] + quadratic.gradient(values, key)
    return VectorValues(grad)


def kkt_residuals(
    graph: FactorGraph,
    values: VectorValues,
    multipliers: Optional[VectorValues],
    working_set: WorkingSet,
) -> dict[str, float]:
    """Max-norm KKT residuals of a candidate solution.

    The multipliers follow the sign convention of the dual graph,
    ``grad f = sum_k A_k^T lambda_k``, so optimal multipliers of active
    inequality rows ``a . x <= b`` are non-positive.

    Args:
        graph: The problem graph.
        values: Candidate solution.
        multipliers: Multipliers keyed by constraint factor index, or None
            to check the candidate with all multipliers at zero.
        working_set: Rows enforced at the candidate.

    Returns:
        Dictionary of residuals:
            stationarity: ``grad f - sum_k A_k^T lambda_k`` over enforced rows.
            primal_equality: Residual of the enforced rows.
            primal_inequality: Largest ``a . x - b`` over all inequality rows,
                clipped at zero.
            dual_sign: Largest positive multiplier of an active inequality.
            complementarity: Largest ``|lambda (a . x - b)|`` over inequality
                rows.
    """
    stationarity = dict(cost_gradient(graph, values).items())
    primal_eq = 0.0
    primal_ineq = 0.0
    dual_sign = 0.0
    complementarity = 0.0

    for index, factor in enumerate(graph):
        if not isinstance(factor, LinearRowFactor) or not factor.is_constrained:
            continue
        enforced = jnp.asarray(working_set.enforced_mask(index))
        residual = factor.residual(values)
        if multipliers is not None and index in multipliers:
            lam = jnp.where(enforced, multipliers[index], 0.0)
        else:
            lam = jnp.zeros(factor.rows)
        for key, block in zip(factor.keys, factor.blocks):
            stationarity[key] = stationarity[key] - block.T @ lam

        primal_eq = max(primal_eq, max_abs(jnp.where(enforced, residual, 0.0)))
        inequality = jnp.asarray(factor.role_mask(RowRole.INEQUALITY))
        violation = jnp.where(inequality, jnp.maximum(residual, 0.0), 0.0)
        primal_ineq = max(primal_ineq, max_abs(violation))
        positive = jnp.where(inequality & enforced, jnp.maximum(lam, 0.0), 0.0)
        dual_sign = max(dual_sign, max_abs(positive))
        complementarity = max(
            complementarity, max_abs(jnp.where(inequality, lam * residual, 0.0))
        )

    return {
        "stationarity": max((max_abs(v) for v in stationarity.values()), default=0.0),
        "primal_equality": primal_eq,
        "primal_inequality": primal_ineq,
        "dual_sign": dual_sign,
        "complementarity": complementarity,
    }
