import jax.numpy as jnp
from jaxtyping import Array


def as_float_array(x) -> Array:
    """Convert ``x`` to a JAX array of the default floating dtype."""
    return jnp.asarray(x, dtype=jnp.result_type(float))


def max_abs(x) -> float:
    """Infinity norm of ``x`` as a Python float (0.0 for empty arrays)."""
    x = jnp.asarray(x)
    if x.size == 0:
        return 0.0
    return float(jnp.max(jnp.abs(x)))
