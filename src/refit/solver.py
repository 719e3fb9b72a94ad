"""
Block-BiCGSTAB for A X = B with all S right-hand sides at once.

Reference: A. El Guennouni, K. Jbilou, H. Sadok, "A block version of BiCGSTAB
for linear systems with multiple right-hand sides", ETNA 16, 129-142 (2003).

Per iteration (R0 the fixed shadow residual):

  V     = A P
  M1    = R0^T V                 (S x S), inverted once
  alpha = M1^{-1} (R0^T R)
  R    <- R - V alpha
  T     = A R
  omega = <T, R> / <T, T>        (over all entries)
  X    <- X + P alpha + omega R
  R    <- R - omega T
  beta  = M1^{-1} (-R0^T T)
  P    <- R + (P - omega V) beta

Convergence: |R[:, col]|^2 < threshold^2 for every column. No
preconditioning.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
import scipy.linalg as la

from .errors import ConvergenceFailure
from .gemm import Gemm, blas_gemm

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 1000
MAX_ATTEMPTS = 3


@dataclass
class SolveResult:
    """
    converged: all columns met the bound.
    iterations: iterations run (summed over attempts in solve_with_retries).
    wire_iterations / light_iterations: iterations during which the wire
      columns (all but the last) / the light column still exceeded the bound.
    residual_sq: (S,) final squared residual norm per column.
    history: worst squared column residual after each iteration.
    attempts: solve attempts used.
    """

    converged: bool
    iterations: int = 0
    wire_iterations: int = 0
    light_iterations: int = 0
    residual_sq: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float64))
    history: list[float] = field(default_factory=list)
    attempts: int = 1


def _column_norms_sq(r: np.ndarray) -> np.ndarray:
    return np.einsum("ij,ij->j", r, r)


def block_bicgstab(
    apply: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    b: np.ndarray,
    threshold: float,
    *,
    max_iterations: int = MAX_ITERATIONS,
    gemm: Gemm = blas_gemm,
) -> SolveResult:
    """
    Iterate on `x` in place until every column residual is below `threshold`.

    Args:
      apply: bundle -> A @ bundle, (L_col, S) -> (L_col, S).
      x: (L_col, S) initial guess, Fortran-ordered; overwritten with the solution.
      b: (L_col, S) right-hand sides.
      threshold: bound on each column's residual 2-norm.
    """
    if x.shape != b.shape or x.ndim != 2:
        raise ValueError("x and b must be 2-D bundles of the same shape.")
    n_cols = int(x.shape[1])
    tol_sq = float(threshold) ** 2

    r = np.asfortranarray(b - apply(x))
    norms = _column_norms_sq(r)
    if np.all(norms < tol_sq):
        return SolveResult(converged=True, residual_sq=norms)

    p = r.copy(order="F")
    r0hat = r.copy(order="F")

    small = np.zeros((n_cols, n_cols), dtype=np.float64, order="F")
    result = SolveResult(converged=False)
    for _ in range(int(max_iterations)):
        v = apply(p)
        m1 = gemm(1.0, r0hat, v, 0.0, small.copy(order="F"), trans_a=True)
        try:
            m1_inv = la.inv(m1, check_finite=False)
        except la.LinAlgError:
            logger.warning("Block-BiCGSTAB breakdown: R0^T A P is singular after %d iterations.", result.iterations)
            break
        m2 = gemm(1.0, r0hat, r, 0.0, small.copy(order="F"), trans_a=True)
        alpha = np.asfortranarray(m1_inv @ m2)
        r = gemm(-1.0, v, alpha, 1.0, r)

        t = apply(r)
        tt = float(np.vdot(t, t))
        omega = float(np.vdot(t, r)) / tt if tt > 0 else 0.0

        x = gemm(1.0, p, alpha, 1.0, x)
        x += omega * r
        r -= omega * t
        result.iterations += 1

        norms = _column_norms_sq(r)
        worst = float(np.max(norms))
        result.history.append(worst)
        if np.any(norms[:-1] > tol_sq):
            result.wire_iterations += 1
        if norms[-1] > tol_sq:
            result.light_iterations += 1
        if worst < tol_sq:
            result.converged = True
            break

        m2 = gemm(-1.0, r0hat, t, 0.0, small.copy(order="F"), trans_a=True)
        beta = np.asfortranarray(m1_inv @ m2)
        p -= omega * v
        p = gemm(1.0, p, beta, 0.0, np.zeros_like(p, order="F"))
        p += r

    result.residual_sq = _column_norms_sq(r)
    return result


def solve_with_retries(
    apply: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    b: np.ndarray,
    threshold: float,
    *,
    max_iterations: int = MAX_ITERATIONS,
    max_attempts: int = MAX_ATTEMPTS,
    gemm: Gemm = blas_gemm,
) -> SolveResult:
    """
    Run block_bicgstab up to `max_attempts` times, each restarting from the
    current x. An attempt that breaks down before its first iteration ends
    the retries. If no attempt converges, a ConvergenceFailure warning is
    issued and x holds the best-effort solution.
    """
    total = SolveResult(converged=False, attempts=0)
    for attempt in range(int(max_attempts)):
        res = block_bicgstab(apply, x, b, threshold, max_iterations=max_iterations, gemm=gemm)
        total.attempts = attempt + 1
        total.iterations += res.iterations
        total.wire_iterations += res.wire_iterations
        total.light_iterations += res.light_iterations
        total.history.extend(res.history)
        total.residual_sq = res.residual_sq
        if res.converged:
            total.converged = True
            break
        logger.debug("Solve attempt %d did not converge after %d iterations.", attempt + 1, res.iterations)
        if res.iterations == 0:
            # x and the shadow residual are unchanged, so a restart would break down the same way.
            break

    if not total.converged:
        worst = float(np.max(total.residual_sq)) if total.residual_sq.size else float("nan")
        msg = f"Solver failed to converge after {total.attempts} attempts (worst |r|^2 = {worst:.3e})."
        logger.warning(msg)
        warnings.warn(msg, ConvergenceFailure, stacklevel=2)
    return total
