"""Tests for values, factors and factor graphs."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from graphqp_jax import (
    DimensionMismatchError,
    FactorGraph,
    LinearRowFactor,
    QuadraticFactor,
    RowRole,
    SymmetricBlockMatrix,
    VariableIndex,
    VectorValues,
    constraint_factor,
    prior_factor,
    to_quadratic,
)

jax.config.update("jax_enable_x64", True)


class TestRowRole:
    @pytest.mark.parametrize(
        "scale, role",
        [
            (2.0, RowRole.FREE),
            (0.0, RowRole.EQUALITY),
            (1e-12, RowRole.EQUALITY),
            (-1e-12, RowRole.EQUALITY),
            (-1.0, RowRole.INEQUALITY),
        ],
    )
    def test_from_scale(self, scale, role):
        assert RowRole.from_scale(scale) is role


class TestVectorValues:
    def test_arithmetic(self):
        a = VectorValues({0: [1.0, 2.0], 1: [3.0]})
        b = VectorValues({0: [0.5, 0.5], 1: [1.0]})

        np.testing.assert_allclose((a + b)[0], [1.5, 2.5])
        np.testing.assert_allclose((a - b)[1], [2.0])
        np.testing.assert_allclose((2.0 * a)[0], [2.0, 4.0])
        np.testing.assert_allclose((a * 0.5).at(1), [1.5])

    def test_mismatched_structure(self):
        a = VectorValues({0: [1.0, 2.0]})
        with pytest.raises(ValueError):
            a + VectorValues({1: [1.0, 2.0]})
        with pytest.raises(DimensionMismatchError):
            a - VectorValues({0: [1.0]})

    def test_equals(self):
        a = VectorValues({0: [1.0, 2.0]})
        assert a.equals(VectorValues({0: [1.0, 2.0 + 1e-12]}))
        assert not a.equals(VectorValues({0: [1.0, 2.1]}), tol=0.05)
        assert a.equals(VectorValues({0: [1.0, 2.1]}), tol=0.2)
        assert not a.equals(VectorValues({1: [1.0, 2.0]}))

    def test_vector_round_trip(self):
        values = VectorValues({3: [1.0], 1: [2.0, 3.0]})
        x = values.vector((1, 3))
        np.testing.assert_allclose(x, [2.0, 3.0, 1.0])
        back = VectorValues.from_vector(x, (1, 3), values.dims())
        assert back.equals(values)

    def test_zero(self):
        values = VectorValues.zero({0: 2, 5: 1})
        assert values.dims() == {0: 2, 5: 1}
        assert 5 in values
        assert float(jnp.sum(values.vector())) == 0.0


class TestSymmetricBlockMatrix:
    def test_block_orientation(self):
        matrix = jnp.array([[1.0, 2.0, 3.0], [2.0, 4.0, 5.0], [3.0, 5.0, 6.0]])
        blocks = SymmetricBlockMatrix(matrix, (1, 2))

        np.testing.assert_allclose(blocks.block(0, 1), [[2.0, 3.0]])
        np.testing.assert_allclose(blocks.block(1, 0), [[2.0], [3.0]])
        np.testing.assert_allclose(blocks.block(1, 0), blocks.block(0, 1).T)
        np.testing.assert_allclose(blocks.block(1, 1), [[4.0, 5.0], [5.0, 6.0]])

    def test_shape_checked(self):
        with pytest.raises(DimensionMismatchError):
            SymmetricBlockMatrix(jnp.eye(3), (2, 2))


class TestQuadraticFactor:
    def test_gradient_and_error(self):
        info = jnp.array([[2.0, 1.0], [1.0, 3.0]])
        factor = QuadraticFactor((4, 9), (1, 1), info, jnp.array([1.0, 2.0]), 5.0)
        values = VectorValues({4: [1.0], 9: [-1.0]})

        # G x - g = (2 - 1 - 1, 1 - 3 - 2)
        np.testing.assert_allclose(factor.gradient(values, 4), [0.0])
        np.testing.assert_allclose(factor.gradient(values, 9), [-4.0])
        # 0.5 (x'Gx - 2 x'g + f) = 0.5 (3 - 2 (-1) + 5)
        assert factor.error(values) == pytest.approx(5.0)
        assert factor.dim(9) == 1
        with pytest.raises(KeyError):
            factor.info(4, 2)


class TestLinearRowFactor:
    def test_from_scales(self):
        factor = LinearRowFactor.from_scales(
            [(0, jnp.array([[1.0], [2.0], [3.0]]))], jnp.zeros(3), [0.5, 0.0, -1.0]
        )
        assert factor.roles == (RowRole.FREE, RowRole.EQUALITY, RowRole.INEQUALITY)
        np.testing.assert_allclose(factor.free_weights(), [4.0, 0.0, 0.0])
        assert factor.is_constrained
        assert factor.is_mixed

    def test_error_counts_free_rows_only(self):
        factor = LinearRowFactor.from_scales(
            [(0, jnp.eye(2))], jnp.array([1.0, 5.0]), [0.5, -1.0]
        )
        values = VectorValues({0: [2.0, 0.0]})
        np.testing.assert_allclose(factor.residual(values), [1.0, -5.0])
        # 0.5 * (1 / 0.5^2) * 1^2
        assert factor.error(values) == pytest.approx(2.0)

    def test_validation(self):
        with pytest.raises(DimensionMismatchError):
            LinearRowFactor((0,), (jnp.eye(2),), jnp.zeros(3))
        with pytest.raises(DimensionMismatchError):
            LinearRowFactor((0, 1), (jnp.eye(2),), jnp.zeros(2))
        with pytest.raises(DimensionMismatchError):
            LinearRowFactor((0,), (jnp.eye(2),), jnp.zeros(2), (RowRole.FREE,))
        with pytest.raises(ValueError, match="positive sigma"):
            LinearRowFactor((0,), (jnp.eye(1),), jnp.zeros(1), sigmas=[0.0])
        with pytest.raises(ValueError, match="Duplicate"):
            LinearRowFactor((0, 0), (jnp.eye(1), jnp.eye(1)), jnp.zeros(1))
        with pytest.raises(ValueError):
            constraint_factor([(0, jnp.eye(1))], jnp.zeros(1), RowRole.FREE)

    def test_to_quadratic_preserves_energy(self):
        factor = LinearRowFactor(
            (0, 1),
            (jnp.array([[1.0, 2.0], [0.0, 1.0]]), jnp.array([[-1.0], [3.0]])),
            jnp.array([1.0, -2.0]),
            sigmas=jnp.array([0.5, 2.0]),
        )
        quadratic = to_quadratic(factor)
        values = VectorValues({0: [0.3, -1.2], 1: [0.7]})

        assert quadratic.keys == (0, 1)
        assert quadratic.dims == (2, 1)
        assert quadratic.error(values) == pytest.approx(factor.error(values))

    def test_to_quadratic_of_constraint_rows_is_empty(self):
        quadratic = to_quadratic(
            constraint_factor([(0, jnp.array([[1.0, 1.0]]))], jnp.array([2.0]))
        )
        np.testing.assert_allclose(quadratic.information.matrix, jnp.zeros((2, 2)))
        np.testing.assert_allclose(quadratic.linear, jnp.zeros(2))


class TestFactorGraph:
    def _graph(self):
        return FactorGraph(
            [
                prior_factor(2, jnp.zeros(2)),
                LinearRowFactor((2, 0), (jnp.eye(2), -jnp.ones((2, 1))), jnp.zeros(2)),
                constraint_factor([(0, jnp.eye(1))], jnp.array([1.0])),
            ]
        )

    def test_keys_and_dims(self):
        graph = self._graph()
        assert graph.keys() == (2, 0)
        assert graph.dims() == {2: 2, 0: 1}
        assert graph.constraint_indices() == (2,)
        assert graph.constrained_keys() == (0,)

    def test_dimension_conflict(self):
        graph = self._graph().push_back(prior_factor(0, jnp.zeros(2)))
        with pytest.raises(DimensionMismatchError):
            graph.dims()

    def test_error(self):
        graph = self._graph()
        values = VectorValues({2: [1.0, 1.0], 0: [3.0]})
        # prior 0.5 * 2 + odometry 0.5 * (4 + 4); constraint rows cost nothing
        assert graph.error(values) == pytest.approx(5.0)

    def test_concatenation(self):
        graph = self._graph() + FactorGraph([prior_factor(7, jnp.zeros(1))])
        assert len(graph) == 4
        assert graph.keys() == (2, 0, 7)

    def test_variable_index(self):
        index = VariableIndex.from_graph(self._graph())
        assert index[2] == (0, 1)
        assert index[0] == (1, 2)
        assert index[42] == ()
        assert 42 not in index
        assert set(index) == {0, 2}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
