"""Active-set solver for quadratic programs on factor graphs.

The problem has the form

    minimize    sum of quadratic factor energies and FREE row costs
    subject to  a_r . x =  b_r   for every EQUALITY row
                a_r . x <= b_r   for every INEQUALITY row

and is solved with a primal active-set method. Each iteration solves the
working sub-problem, in which EQUALITY rows and the active INEQUALITY rows are
enforced as equalities and the inactive INEQUALITY rows are ignored:

1. If the sub-problem's solution ``x*`` equals the current point, no progress
   is possible with the current working set. An inactive inequality that
   ``x*`` violates (only possible from an infeasible start) is activated
   first. Otherwise the Lagrange multipliers are
   computed from the dual graph (see :mod:`graphqp_jax.dual`) and the active
   inequality with the largest positive multiplier is dropped. If there is
   none, ``x*`` is optimal.
2. Otherwise the solver moves towards ``x*`` as far as the inactive
   inequality rows allow (see :mod:`graphqp_jax.step`) and adds the row that
   blocks the step to the working set.

There is no anti-cycling rule beyond taking the first row on ties, so
degenerate problems with several rows binding at the same vertex may cycle.
Use ``max_iter`` to bound the number of iterations.
"""

import logging
from collections.abc import Mapping
from typing import NamedTuple, Optional, Union

import equinox as eqx

from graphqp_jax.dual import (
    build_dual_graph,
    find_worst_violated_active_ineq,
    unconstrained_hessians_of_constrained_vars,
)
from graphqp_jax.errors import DimensionMismatchError
from graphqp_jax.graph import FactorGraph, VariableIndex
from graphqp_jax.linear_solver import solve_graph
from graphqp_jax.step import compute_step_size, find_most_violated_inactive_ineq
from graphqp_jax.types import IterationOutcome, Key, SolverResult
from graphqp_jax.values import VectorValues
from graphqp_jax.working_set import WorkingSet

logger = logging.getLogger(__name__)


class IterationResult(NamedTuple):
    """Result of a single active-set iteration.

    Attributes:
        outcome: CONVERGED if the returned values are optimal.
        values: The assignment after the iteration.
        multipliers: Multipliers computed in this iteration, keyed by
            constraint factor index, or None if a step was taken instead.
    """

    outcome: IterationOutcome
    values: VectorValues
    multipliers: Optional[VectorValues]


class QPResult(NamedTuple):
    """Result from the QP solver.

    Attributes:
        values: Final assignment.
        multipliers: Multipliers of the last dual computation, keyed by
            constraint factor index. At convergence every active inequality
            multiplier is non-positive.
        working_set: Final working set.
        iterations: Number of iterations performed.
        converged: Whether a KKT point was reached.
        result: A :class:`~graphqp_jax.types.SolverResult` code.
    """

    values: VectorValues
    multipliers: Optional[VectorValues]
    working_set: WorkingSet
    iterations: int
    converged: bool
    result: int


class QPSolver(eqx.Module):
    """Active-set QP solver over a factor graph.

    The problem graph is never modified. Everything derived from it (the
    adjacency index, the constraint factors and the cost subgraph used for the
    multipliers) is computed once at construction and shared by every call to
    :meth:`optimize`. Each call owns a fresh working set.

    Attributes:
        graph: The problem graph.
        tol: Absolute tolerance under which a new solution counts as equal
            to the current point.
        max_iter: Optional cap on the number of iterations.
        use_least_squares: Solve the multipliers in the least-squares sense
            instead of exactly.
        dual_tol: A multiplier must exceed this value to drop its row.
        variable_index: Adjacency index of ``graph``.
        constraint_indices: Indices of the constraint factors.
        constrained_keys: Variables touched by any constraint factor.
        free_hessians: Cost subgraph of the constrained variables.
        free_hessian_index: Adjacency index of ``free_hessians``.

    Example:
        >>> import jax.numpy as jnp
        >>> from graphqp_jax import FactorGraph, QPSolver, VectorValues
        >>> from graphqp_jax import constraint_factor, prior_factor
        >>>
        >>> # minimize (x - 2)^2 subject to x <= 1
        >>> graph = FactorGraph([
        ...     prior_factor(0, jnp.array([2.0])),
        ...     constraint_factor([(0, jnp.eye(1))], jnp.array([1.0])),
        ... ])
        >>> solver = QPSolver(graph)
        >>> solution = solver.optimize(VectorValues({0: jnp.zeros(1)}))
    """

    graph: FactorGraph
    tol: float
    max_iter: Optional[int]
    use_least_squares: bool
    dual_tol: float
    variable_index: VariableIndex
    constraint_indices: tuple[int, ...]
    constrained_keys: tuple[Key, ...]
    free_hessians: FactorGraph
    free_hessian_index: VariableIndex

    def __init__(
        self,
        graph: FactorGraph,
        tol: float = 1e-5,
        max_iter: Optional[int] = None,
        use_least_squares: bool = False,
        dual_tol: float = 0.0,
    ):
        # Malformed graphs fail here rather than mid-solve
        graph.dims()
        self.graph = graph
        self.tol = tol
        self.max_iter = max_iter
        self.use_least_squares = use_least_squares
        self.dual_tol = dual_tol
        self.variable_index = VariableIndex.from_graph(graph)
        self.constraint_indices = graph.constraint_indices()
        self.constrained_keys = graph.constrained_keys()
        self.free_hessians = unconstrained_hessians_of_constrained_vars(
            graph, self.constrained_keys, self.variable_index
        )
        self.free_hessian_index = VariableIndex.from_graph(self.free_hessians)

    def build_dual_graph(
        self, working_set: WorkingSet, x: VectorValues
    ) -> FactorGraph:
        """Dual graph of the working set at the stationary point ``x``."""
        return build_dual_graph(
            self.graph,
            working_set,
            x,
            self.free_hessians,
            self.free_hessian_index,
            self.variable_index,
            self.constrained_keys,
            self.use_least_squares,
        )

    def compute_multipliers(
        self, working_set: WorkingSet, x: VectorValues
    ) -> VectorValues:
        """Lagrange multipliers of the constraint factors at ``x``.

        Linearly dependent enforced rows (e.g. an inequality activated on top
        of an equality with the same normal) leave the multipliers
        non-unique; the minimum-norm solution is returned in that case.
        """
        return solve_graph(self.build_dual_graph(working_set, x), minimum_norm=True)

    def iterate(self, working_set: WorkingSet, current: VectorValues) -> IterationResult:
        """Perform one active-set iteration, updating ``working_set`` in place.

        Args:
            working_set: The working set, owned by the caller's solve.
            current: Current assignment.

        Returns:
            The outcome, the new assignment and any multipliers computed.

        Raises:
            LinearSolveError: If the working sub-problem or the dual graph
                cannot be solved.
        """
        new_solution = solve_graph(self.graph, working_set)

        # If we can't move further
        if new_solution.equals(current, self.tol):
            # An infeasible start can leave inactive rows violated here
            factor_index, row_index = find_most_violated_inactive_ineq(
                self.graph, working_set, new_solution, self.tol, self.constraint_indices
            )
            if working_set.activate(factor_index, row_index):
                logger.debug(
                    "Activated violated row %d of factor %d", row_index, factor_index
                )
                return IterationResult(IterationOutcome.CONTINUE, new_solution, None)

            lambdas = self.compute_multipliers(working_set, new_solution)
            factor_index, row_index = find_worst_violated_active_ineq(
                self.graph, working_set, lambdas, self.dual_tol
            )
            # No active inequality wants to leave: this is the solution
            if not working_set.deactivate(factor_index, row_index):
                logger.debug("Converged with active rows %s", working_set.active_rows())
                return IterationResult(IterationOutcome.CONVERGED, new_solution, lambdas)
            logger.debug(
                "Deactivated row %d of factor %d (multiplier %.6g)",
                row_index,
                factor_index,
                float(lambdas[factor_index][row_index]),
            )
            return IterationResult(IterationOutcome.CONTINUE, new_solution, lambdas)

        # Progress is possible: step as far as the inactive rows allow
        p = new_solution - current
        step = compute_step_size(
            self.graph, working_set, current, p, self.constraint_indices
        )
        if working_set.activate(step.factor_index, step.row_index):
            logger.debug(
                "Step %.6g blocked by row %d of factor %d",
                step.alpha,
                step.row_index,
                step.factor_index,
            )
        else:
            logger.debug("Full step taken")
        return IterationResult(IterationOutcome.CONTINUE, current + step.alpha * p, None)

    def _check_initial(self, initial: VectorValues) -> None:
        dims = self.graph.dims()
        if set(initial.keys()) != set(dims):
            missing = sorted(set(dims) - set(initial.keys()))
            extra = sorted(set(initial.keys()) - set(dims))
            raise ValueError(
                "Initial values must cover exactly the graph's variables "
                f"(missing {missing}, unexpected {extra})"
            )
        for key, dim in initial.dims().items():
            if dim != dims[key]:
                raise DimensionMismatchError(
                    f"Initial value of variable {key} has dimension {dim}, "
                    f"expected {dims[key]}"
                )

    def solve(
        self,
        initial: Union[VectorValues, Mapping[Key, object]],
        working_set: Optional[WorkingSet] = None,
    ) -> QPResult:
        """Run the active-set iteration until convergence.

        Args:
            initial: Starting assignment. It need not be feasible.
            working_set: Optional starting working set. It is copied, never
                modified.

        Restarting from a converged solution returns the same values. It takes
        a single iteration only when the converged working set is passed
        back as well; with a fresh working set the active rows are found
        again first.

        Returns:
            QPResult with the solution, multipliers and convergence info.
        """
        if not isinstance(initial, VectorValues):
            initial = VectorValues(initial)
        self._check_initial(initial)
        if working_set is None:
            working_set = WorkingSet(self.graph)
        else:
            working_set = working_set.copy()

        current = initial
        multipliers = None
        iterations = 0
        while self.max_iter is None or iterations < self.max_iter:
            outcome, current, multipliers = self.iterate(working_set, current)
            iterations += 1
            if outcome is IterationOutcome.CONVERGED:
                return QPResult(
                    values=current,
                    multipliers=multipliers,
                    working_set=working_set,
                    iterations=iterations,
                    converged=True,
                    result=SolverResult.SUCCESS,
                )

        logger.warning(
            "Active-set iteration stopped after %d iterations without converging",
            iterations,
        )
        return QPResult(
            values=current,
            multipliers=multipliers,
            working_set=working_set,
            iterations=iterations,
            converged=False,
            result=SolverResult.MAX_ITERATIONS,
        )

    def optimize(
        self,
        initial: Union[VectorValues, Mapping[Key, object]],
        working_set: Optional[WorkingSet] = None,
    ) -> VectorValues:
        """Solve the QP from ``initial`` and return the optimal assignment."""
        return self.solve(initial, working_set).values
