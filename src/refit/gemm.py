"""
Dense GEMM backends.

Every backend has the BLAS dgemm contract

  gemm(alpha, a, b, beta, c, trans_a=False, trans_b=False) -> alpha*op(a)@op(b) + beta*c

and may update `c` in place (the blas backend does when `c` is a
Fortran-contiguous float64 view). Callers must use the return value.

Backends:
  - "blas": scipy.linalg.blas.dgemm (vendor BLAS linked into scipy)
  - "numpy": numpy matmul, the reference implementation
  - "jax": jax.numpy.matmul with x64 enabled (see gemm_jax); optional dependency
"""

from __future__ import annotations

import importlib
import logging
from typing import Callable

import numpy as np
from scipy.linalg import blas

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

Gemm = Callable[..., np.ndarray]


def numpy_gemm(
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
    prod = op_a @ op_b
    if alpha != 1.0:
        prod *= alpha
    if beta == 0.0:
        c[...] = prod
    else:
        if beta != 1.0:
            c *= beta
        c += prod
    return c


def blas_gemm(
    alpha: float,
    a: np.ndarray,
    b: np.ndarray,
    beta: float,
    c: np.ndarray,
    trans_a: bool = False,
    trans_b: bool = False,
) -> np.ndarray:
    out = blas.dgemm(
        alpha,
        a,
        b,
        beta=beta,
        c=c,
        trans_a=int(trans_a),
        trans_b=int(trans_b),
        overwrite_c=True,
    )
    if out is not c:
        c[...] = out
    return c


_BACKENDS: dict[str, Callable[[], Gemm]] = {
    "blas": lambda: blas_gemm,
    "numpy": lambda: numpy_gemm,
    "jax": lambda: importlib.import_module(".gemm_jax", __package__).jax_gemm,
}


def available_backends() -> tuple[str, ...]:
    return tuple(_BACKENDS)


def get_gemm(name: str) -> Gemm:
    """Resolve a backend name; unknown names are a ConfigurationError."""
    key = str(name).lower()
    if key not in _BACKENDS:
        raise ConfigurationError(f"Unknown GEMM backend '{name}'; choose from {available_backends()}.")
    if key == "numpy":
        logger.warning("Using the numpy reference GEMM; performance may suffer.")
    return _BACKENDS[key]()
