"""Working set of active inequality rows.

The working set is the only mutable state of an active-set solve. It holds one
activation flag per INEQUALITY row of the (immutable) problem graph; EQUALITY
rows are always enforced and FREE rows never are, so neither is tracked.

Each call to :meth:`graphqp_jax.qp_solver.QPSolver.optimize` owns its own
working set, which makes concurrent solves over one problem graph safe.
"""

from collections.abc import Iterable
from typing import Optional

import numpy as np

from graphqp_jax.factors import LinearRowFactor
from graphqp_jax.graph import FactorGraph
from graphqp_jax.types import RowRole


class WorkingSet:
    """Activation flags of the inequality rows of a factor graph.

    Args:
        graph: The problem graph.
        active: Optional ``(factor_index, row_index)`` pairs to start active.
    """

    def __init__(
        self,
        graph: FactorGraph,
        active: Optional[Iterable[tuple[int, int]]] = None,
    ):
        self._graph = graph
        self._flags: dict[int, np.ndarray] = {}
        for index, factor in enumerate(graph):
            if isinstance(factor, LinearRowFactor) and RowRole.INEQUALITY in factor.roles:
                self._flags[index] = np.zeros(factor.rows, dtype=bool)
        for factor_index, row_index in active or ():
            self.activate(factor_index, row_index)

    @property
    def graph(self) -> FactorGraph:
        return self._graph

    def copy(self) -> "WorkingSet":
        other = WorkingSet.__new__(WorkingSet)
        other._graph = self._graph
        other._flags = {index: flags.copy() for index, flags in self._flags.items()}
        return other

    def _check(self, factor_index: int, row_index: int) -> None:
        if factor_index >= len(self._graph):
            raise IndexError(
                f"Factor index {factor_index} out of range for a graph of "
                f"{len(self._graph)} factors"
            )
        factor = self._graph[factor_index]
        if not isinstance(factor, LinearRowFactor):
            raise ValueError(f"Factor {factor_index} is not a row factor")
        if row_index >= factor.rows:
            raise IndexError(
                f"Row index {row_index} out of range for factor {factor_index} "
                f"with {factor.rows} rows"
            )
        if factor.roles[row_index] is not RowRole.INEQUALITY:
            raise ValueError(
                f"Row {row_index} of factor {factor_index} is a "
                f"{factor.roles[row_index].value} row, not an inequality"
            )

    def _set(self, factor_index: int, row_index: int, value: bool) -> bool:
        if factor_index < 0 or row_index < 0:
            return False
        self._check(factor_index, row_index)
        self._flags[factor_index][row_index] = value
        return True

    def activate(self, factor_index: int, row_index: int) -> bool:
        """Enforce an inequality row as an equality.

        Returns:
            False if either index is the negative "no constraint" sentinel,
            True otherwise.
        """
        return self._set(factor_index, row_index, True)

    def deactivate(self, factor_index: int, row_index: int) -> bool:
        """Stop enforcing an inequality row.

        Returns:
            False if either index is the negative "no constraint" sentinel,
            True otherwise.
        """
        return self._set(factor_index, row_index, False)

    def is_active(self, factor_index: int, row_index: int) -> bool:
        flags = self._flags.get(factor_index)
        return bool(flags is not None and flags[row_index])

    def active_flags(self, factor_index: int) -> Optional[np.ndarray]:
        """Activation flags of a factor's rows, or None if it has no inequality."""
        flags = self._flags.get(factor_index)
        return None if flags is None else flags.copy()

    def enforced_mask(self, factor_index: int) -> np.ndarray:
        """Rows of a row factor currently solved as hard equalities."""
        factor = self._graph[factor_index]
        return factor.enforced_mask(self._flags.get(factor_index))

    def active_rows(self) -> list[tuple[int, int]]:
        """Active inequality rows in factor/row index order."""
        return [
            (factor_index, int(row_index))
            for factor_index, flags in self._flags.items()
            for row_index in np.flatnonzero(flags)
        ]

    def __repr__(self) -> str:
        return f"WorkingSet(active={self.active_rows()})"
