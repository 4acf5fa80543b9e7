"""Assignments of vector values to variables.

A :class:`VectorValues` maps every variable id of a factor graph to a real
vector. It is the currency exchanged between the linear solver, the dual graph
builder and the active-set driver.
"""

from collections.abc import Iterable, Iterator, Mapping
from typing import Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float

from graphqp_jax.errors import DimensionMismatchError
from graphqp_jax.types import Key
from graphqp_jax.utils import as_float_array


class VectorValues(eqx.Module):
    """Ordered mapping from variable id to a 1-D vector.

    Insertion order is preserved so that iterating over an assignment is
    reproducible within a solve.

    Attributes:
        values: Dictionary of variable id to value vector.
    """

    values: dict[Key, Float[Array, " d"]]

    def __init__(self, values: Optional[Mapping[Key, object]] = None):
        items = {} if values is None else values
        self.values = {
            key: as_float_array(value).reshape(-1) for key, value in items.items()
        }

    @classmethod
    def zero(cls, dims: Mapping[Key, int]) -> "VectorValues":
        """All-zero assignment for the given variable dimensions."""
        return cls({key: jnp.zeros(dim) for key, dim in dims.items()})

    @classmethod
    def from_vector(
        cls, x: Float[Array, " n"], ordering: Iterable[Key], dims: Mapping[Key, int]
    ) -> "VectorValues":
        """Split a stacked vector back into per-variable blocks."""
        out = {}
        offset = 0
        for key in ordering:
            dim = dims[key]
            out[key] = x[offset : offset + dim]
            offset += dim
        return cls(out)

    def __getitem__(self, key: Key) -> Float[Array, " d"]:
        return self.values[key]

    def at(self, key: Key) -> Float[Array, " d"]:
        return self.values[key]

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[Key]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def keys(self):
        return self.values.keys()

    def items(self):
        return self.values.items()

    def dims(self) -> dict[Key, int]:
        return {key: int(value.shape[0]) for key, value in self.values.items()}

    def vector(self, ordering: Optional[Iterable[Key]] = None) -> Float[Array, " n"]:
        """Stack the values in ``ordering`` (default: insertion order)."""
        keys = list(self.values) if ordering is None else list(ordering)
        if not keys:
            return jnp.zeros((0,))
        return jnp.concatenate([self.values[key] for key in keys])

    def _check_same_structure(self, other: "VectorValues") -> None:
        if set(self.values) != set(other.values):
            raise ValueError("VectorValues must cover the same variables")
        for key, value in self.values.items():
            if value.shape != other.values[key].shape:
                raise DimensionMismatchError(
                    f"Variable {key} has dimension {value.shape[0]} in one "
                    f"assignment and {other.values[key].shape[0]} in the other"
                )

    def __add__(self, other: "VectorValues") -> "VectorValues":
        self._check_same_structure(other)
        return VectorValues(
            {key: value + other.values[key] for key, value in self.values.items()}
        )

    def __sub__(self, other: "VectorValues") -> "VectorValues":
        self._check_same_structure(other)
        return VectorValues(
            {key: value - other.values[key] for key, value in self.values.items()}
        )

    def __mul__(self, alpha: float) -> "VectorValues":
        return VectorValues({key: alpha * value for key, value in self.values.items()})

    __rmul__ = __mul__

    def equals(self, other: "VectorValues", tol: float = 1e-9) -> bool:
        """True if both cover the same variables and agree within ``tol``.

        The comparison uses the absolute difference of every entry.
        """
        if set(self.values) != set(other.values):
            return False
        for key, value in self.values.items():
            other_value = other.values[key]
            if value.shape != other_value.shape:
                return False
            if value.size and float(jnp.max(jnp.abs(value - other_value))) > tol:
                return False
        return True

    def __repr__(self) -> str:
        entries = ", ".join(f"{key}: {value}" for key, value in self.values.items())
        return f"VectorValues({{{entries}}})"
