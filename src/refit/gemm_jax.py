"""
JAX GEMM backend (optional). Runs on whatever device JAX selects; results
are copied back into the caller's numpy array.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np

jax.config.update("jax_enable_x64", True)


@jax.jit
def _gemm(alpha, a, b, beta, c):
    return alpha * jnp.matmul(a, b) + beta * c


def jax_gemm(
    alpha: float,
    a: np.ndarray,
    b: np.ndarray,
    beta: float,
    c: np.ndarray,
    trans_a: bool = False,
    trans_b: bool = False,
) -> np.ndarray:
    op_a = a.T if trans_a else a
    op_b = b.T if trans_b else b
    c[...] = np.asarray(_gemm(float(alpha), jnp.asarray(op_a), jnp.asarray(op_b), float(beta), jnp.asarray(c)))
    return c
