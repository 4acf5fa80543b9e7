"""Tests for the working set of active inequality rows."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from graphqp_jax import (
    FactorGraph,
    LinearRowFactor,
    QuadraticFactor,
    WorkingSet,
    constraint_factor,
    prior_factor,
)

jax.config.update("jax_enable_x64", True)


@pytest.fixture
def graph():
    mixed = LinearRowFactor.from_scales(
        [(0, jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]))],
        jnp.array([3.0, 1.0, 2.0]),
        [1.0, 0.0, -1.0],
    )
    return FactorGraph(
        [
            prior_factor(0, jnp.zeros(2)),
            mixed,
            constraint_factor([(0, jnp.eye(2))], jnp.array([1.0, 1.0])),
            QuadraticFactor((0,), (2,), jnp.eye(2), jnp.zeros(2)),
        ]
    )


class TestWorkingSet:
    def test_starts_inactive(self, graph):
        working_set = WorkingSet(graph)
        assert working_set.active_rows() == []
        assert working_set.active_flags(0) is None
        np.testing.assert_array_equal(working_set.active_flags(1), [False, False, False])

    def test_activate_and_deactivate(self, graph):
        working_set = WorkingSet(graph)
        assert working_set.activate(2, 1)
        assert working_set.activate(1, 2)
        assert working_set.is_active(2, 1)
        assert working_set.active_rows() == [(1, 2), (2, 1)]

        assert working_set.deactivate(2, 1)
        assert not working_set.is_active(2, 1)
        assert working_set.active_rows() == [(1, 2)]

    def test_sentinel_is_a_no_op(self, graph):
        working_set = WorkingSet(graph, active=[(2, 0)])
        assert not working_set.activate(-1, -1)
        assert not working_set.deactivate(-1, -1)
        assert working_set.active_rows() == [(2, 0)]

    def test_enforced_mask(self, graph):
        working_set = WorkingSet(graph, active=[(1, 2)])
        # FREE row never, EQUALITY row always, INEQUALITY row when active
        np.testing.assert_array_equal(working_set.enforced_mask(1), [False, True, True])
        np.testing.assert_array_equal(working_set.enforced_mask(2), [False, False])
        np.testing.assert_array_equal(working_set.enforced_mask(0), [False, False])

    def test_invalid_rows_rejected(self, graph):
        working_set = WorkingSet(graph)
        with pytest.raises(ValueError, match="not an inequality"):
            working_set.activate(1, 1)
        with pytest.raises(ValueError, match="not an inequality"):
            working_set.activate(0, 0)
        with pytest.raises(ValueError, match="not a row factor"):
            working_set.activate(3, 0)
        with pytest.raises(IndexError):
            working_set.activate(2, 5)
        with pytest.raises(IndexError):
            working_set.activate(7, 0)

    def test_copy_is_independent(self, graph):
        working_set = WorkingSet(graph, active=[(2, 0)])
        other = working_set.copy()
        other.activate(2, 1)
        other.deactivate(2, 0)

        assert working_set.active_rows() == [(2, 0)]
        assert other.active_rows() == [(2, 1)]
        assert other.graph is working_set.graph

    def test_repr(self, graph):
        assert repr(WorkingSet(graph, active=[(1, 2)])) == "WorkingSet(active=[(1, 2)])"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
