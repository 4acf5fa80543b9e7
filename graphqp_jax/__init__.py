"""graphqp-jax: active-set quadratic programming on factor graphs in JAX.

This package solves convex quadratic programs whose cost and constraints are
expressed as a sparse graph of factors over vector-valued variables, as they
arise when a least-squares estimate must be refined subject to equality and
inequality constraints. The solver is a primal active-set method; Lagrange
multipliers are obtained from an auxiliary "dual" factor graph built from the
unconstrained curvature of the constrained variables.
"""

from graphqp_jax.dual import (
    build_dual_graph,
    find_worst_violated_active_ineq,
    unconstrained_hessians_of_constrained_vars,
)
from graphqp_jax.errors import (
    DimensionMismatchError,
    IndeterminantLinearSystemError,
    InconsistentConstraintsError,
    LinearSolveError,
)
from graphqp_jax.factors import (
    LinearRowFactor,
    QuadraticFactor,
    SymmetricBlockMatrix,
    constraint_factor,
    prior_factor,
    to_quadratic,
)
from graphqp_jax.graph import FactorGraph, VariableIndex
from graphqp_jax.kkt import cost_gradient, kkt_residuals
from graphqp_jax.linear_solver import solve_graph
from graphqp_jax.qp_solver import IterationResult, QPResult, QPSolver
from graphqp_jax.step import (
    StepResult,
    compute_step_size,
    find_most_violated_inactive_ineq,
)
from graphqp_jax.types import (
    NO_CONSTRAINT,
    IterationOutcome,
    Key,
    RowRole,
    SolverResult,
)
from graphqp_jax.values import VectorValues
from graphqp_jax.working_set import WorkingSet

__all__ = [
    # Main solver
    "QPSolver",
    "QPResult",
    "IterationResult",
    # Types
    "Key",
    "RowRole",
    "IterationOutcome",
    "SolverResult",
    "NO_CONSTRAINT",
    # Problem representation
    "FactorGraph",
    "VariableIndex",
    "VectorValues",
    "QuadraticFactor",
    "LinearRowFactor",
    "SymmetricBlockMatrix",
    "prior_factor",
    "constraint_factor",
    "to_quadratic",
    # Active-set components
    "WorkingSet",
    "unconstrained_hessians_of_constrained_vars",
    "build_dual_graph",
    "find_worst_violated_active_ineq",
    "StepResult",
    "compute_step_size",
    "find_most_violated_inactive_ineq",
    # Linear sub-problem
    "solve_graph",
    # Diagnostics
    "cost_gradient",
    "kkt_residuals",
    # Errors
    "DimensionMismatchError",
    "LinearSolveError",
    "IndeterminantLinearSystemError",
    "InconsistentConstraintsError",
]
