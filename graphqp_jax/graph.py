"""Factor graphs and the variable adjacency index."""

from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Optional

import equinox as eqx

from graphqp_jax.errors import DimensionMismatchError
from graphqp_jax.factors import Factor, LinearRowFactor
from graphqp_jax.types import Key
from graphqp_jax.values import VectorValues

if TYPE_CHECKING:
    from graphqp_jax.working_set import WorkingSet


class FactorGraph(eqx.Module):
    """Ordered, immutable collection of factors.

    Factor order is preserved and factors are addressed by their index, which
    also serves as the key of a constraint factor's multiplier in a dual
    graph.

    Attributes:
        factors: The factors, in insertion order.
    """

    factors: tuple[Factor, ...]

    def __init__(self, factors: Iterable[Factor] = ()):
        self.factors = tuple(factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __getitem__(self, index: int) -> Factor:
        return self.factors[index]

    def __iter__(self) -> Iterator[Factor]:
        return iter(self.factors)

    def __add__(self, other: "FactorGraph") -> "FactorGraph":
        return FactorGraph(self.factors + tuple(other))

    def push_back(self, factor: Factor) -> "FactorGraph":
        """New graph with ``factor`` appended."""
        return FactorGraph(self.factors + (factor,))

    def keys(self) -> tuple[Key, ...]:
        """Variables in order of first appearance."""
        seen: dict[Key, None] = {}
        for factor in self.factors:
            for key in factor.keys:
                seen.setdefault(key, None)
        return tuple(seen)

    def dims(self) -> dict[Key, int]:
        """Dimension of every variable.

        Raises:
            DimensionMismatchError: If two factors disagree on the dimension
                of a variable.
        """
        dims: dict[Key, int] = {}
        for index, factor in enumerate(self.factors):
            for key, dim in zip(factor.keys, factor.dims):
                known = dims.setdefault(key, dim)
                if known != dim:
                    raise DimensionMismatchError(
                        f"Variable {key} has dimension {dim} in factor {index} "
                        f"but {known} elsewhere"
                    )
        return dims

    def constraint_indices(self) -> tuple[int, ...]:
        """Indices of the row factors with at least one constrained row."""
        return tuple(
            index
            for index, factor in enumerate(self.factors)
            if isinstance(factor, LinearRowFactor) and factor.is_constrained
        )

    def constrained_keys(self) -> tuple[Key, ...]:
        """Variables touched by any constraint factor, in order of appearance."""
        seen: dict[Key, None] = {}
        for index in self.constraint_indices():
            for key in self.factors[index].keys:
                seen.setdefault(key, None)
        return tuple(seen)

    def error(self, values: VectorValues) -> float:
        """Total cost of the graph; constraint rows carry no cost."""
        return sum((factor.error(values) for factor in self.factors), 0.0)

    def optimize(self, working_set: Optional["WorkingSet"] = None) -> VectorValues:
        """Solve the graph's linear sub-problem.

        See :func:`graphqp_jax.linear_solver.solve_graph`.
        """
        from graphqp_jax.linear_solver import solve_graph

        return solve_graph(self, working_set)


class VariableIndex(Mapping):
    """Maps each variable to the ordered indices of the factors touching it.

    Built once from a graph; looking up a variable that no factor touches
    gives an empty tuple.
    """

    def __init__(self, index: Optional[Mapping[Key, tuple[int, ...]]] = None):
        self._index: dict[Key, tuple[int, ...]] = dict(index or {})

    @classmethod
    def from_graph(cls, graph: FactorGraph) -> "VariableIndex":
        index: dict[Key, list[int]] = {}
        for factor_index, factor in enumerate(graph):
            for key in factor.keys:
                index.setdefault(key, []).append(factor_index)
        return cls({key: tuple(factors) for key, factors in index.items()})

    def __getitem__(self, key: Key) -> tuple[int, ...]:
        return self._index.get(key, ())

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[Key]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"VariableIndex({self._index!r})"
