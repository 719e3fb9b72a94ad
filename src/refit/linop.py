"""
Matrix-free refit operator A, applied to (L_col, S) coefficient bundles.

  A = N  +  sum_k p_k (L_k L_k^T)  +  [Lagrange coupling]

  - N: block-diagonal noise covariance, one dense block per frequency,
    applied with one GEMM per block over all S columns at once.
  - APD Poisson term, per APD index k: rank-one L L^T on channel k's rows,
    weighted by p_k = (E_expected / E_Th) * gain_k * Y[k].
  - Wire coupling, per wire signal m and template (chan, t):
    rows(chan) <-> Lagrange row m, symmetric.
  - Light coupling, per APD index k: rows(k) <-> light Lagrange row,
    symmetric.

The operator is symmetric; only the noise part is a stored matrix.
"""

from __future__ import annotations

import time

import numpy as np
import scipy.sparse.linalg as spla

from .errors import InvariantViolation
from .gemm import Gemm, blas_gemm
from .layout import ColumnLayout
from .noise import NoiseBlockStore
from .templates import WireModel


class RefitOperator:
    """
    Args:
      layout: column layout of the bundles.
      store: noise blocks and working channel set.
      wire_models: W, in column order.
      light: (template_length,) light template L.
      poisson_factors: (n_apd,) p_k for APD indices first_apd..|C|-1.
      gemm: GEMM backend for the noise blocks.
      timings: optional dict; 'matrix_mul' and 'matrix_mul_noise' seconds are accumulated.
    """

    def __init__(
        self,
        *,
        layout: ColumnLayout,
        store: NoiseBlockStore,
        wire_models: list[WireModel],
        light: np.ndarray,
        poisson_factors: np.ndarray,
        gemm: Gemm = blas_gemm,
        timings: dict | None = None,
    ) -> None:
        if layout.n_channels != store.n_channels or layout.n_freq != store.n_freq:
            raise InvariantViolation("Layout does not match the noise-block store.")
        if layout.n_wire_signals != len(wire_models):
            raise InvariantViolation("Layout does not match the number of wire models.")
        light = np.asarray(light, dtype=np.float64).reshape(-1)
        if light.size != layout.template_length:
            raise InvariantViolation(f"Light template has {light.size} entries, expected {layout.template_length}.")
        poisson_factors = np.asarray(poisson_factors, dtype=np.float64).reshape(-1)
        n_apd = store.n_channels - store.first_apd
        if poisson_factors.size != n_apd:
            raise InvariantViolation(f"Need {n_apd} Poisson factors, got {poisson_factors.size}.")

        self.layout = layout
        self.store = store
        self.light = light
        self.poisson_factors = poisson_factors
        self.gemm = gemm
        self.timings = timings

        # (n_apd, template_length) rows of each APD channel.
        self._apd_rows = np.array(
            [layout.channel_rows(k) for k in store.apd_indices], dtype=np.int64
        ).reshape(n_apd, layout.template_length)

        # Wire couplings flattened to (lagrange_row, channel_rows, template).
        self._wire_terms: list[tuple[int, np.ndarray, np.ndarray]] = []
        for m, model in enumerate(wire_models):
            lam = layout.wire_lagrange_row(m)
            for ch, template in model.templates.items():
                c = store.channel_index(ch)
                if c is None:
                    raise InvariantViolation(f"Wire template channel {ch} not in working set.")
                template = np.asarray(template, dtype=np.float64).reshape(-1)
                if template.size != layout.template_length:
                    raise InvariantViolation(f"Wire template on channel {ch} has wrong length {template.size}.")
                self._wire_terms.append((lam, layout.channel_rows(c), template))

    def _tick(self, key: str, t0: float) -> None:
        if self.timings is not None:
            self.timings[key] = self.timings.get(key, 0.0) + (time.perf_counter() - t0)

    def apply(self, v: np.ndarray) -> np.ndarray:
        """A @ v for an (L_col, S) bundle; returns a new Fortran-ordered bundle."""
        self.layout.check_bundle(v)
        return self._apply(v)

    def _apply(self, v: np.ndarray) -> np.ndarray:
        # Any number of columns; A acts on each column independently.
        layout = self.layout
        out = np.zeros((layout.column_length, v.shape[1]), dtype=np.float64, order="F")
        t0 = time.perf_counter()

        # Noise blocks: one GEMM per frequency, all columns together.
        t_noise = time.perf_counter()
        for g, block in enumerate(self.store.blocks):
            sl = layout.block_slice(g)
            out[sl, :] = self.gemm(1.0, block, v[sl, :], 1.0, out[sl, :])
        self._tick("matrix_mul_noise", t_noise)

        light = self.light
        apd_rows = self._apd_rows
        if apd_rows.size:
            v_apd = v[apd_rows, :]  # (n_apd, n_tmpl, S)

            # Poisson rank-one terms.
            common = self.poisson_factors[:, None] * np.einsum("j,kjs->ks", light, v_apd)
            out[apd_rows, :] += common[:, None, :] * light[None, :, None]

            # Light Lagrange coupling.
            lam_l = layout.light_lagrange_row
            out[apd_rows, :] += light[None, :, None] * v[lam_l, :][None, None, :]
            out[lam_l, :] += np.einsum("j,kjs->s", light, v_apd)

        # Wire Lagrange coupling.
        for lam, rows, template in self._wire_terms:
            out[rows, :] += template[:, None] * v[lam, :][None, :]
            out[lam, :] += template @ v[rows, :]

        self._tick("matrix_mul", t0)
        return out

    def matvec(self, x: np.ndarray) -> np.ndarray:
        """A @ x for a single column."""
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        if x.size != self.layout.column_length:
            raise InvariantViolation(f"Vector has {x.size} entries, expected {self.layout.column_length}.")
        return self._apply(np.asfortranarray(x[:, None]))[:, 0]

    def as_linear_operator(self) -> spla.LinearOperator:
        n = self.layout.column_length
        return spla.LinearOperator((n, n), matvec=self.matvec, rmatvec=self.matvec, dtype=np.float64)

    def to_dense(self) -> np.ndarray:
        """Materialize A by applying it to the identity; for diagnostics on small problems only."""
        n = self.layout.column_length
        return np.ascontiguousarray(self._apply(np.eye(n, dtype=np.float64, order="F")))


def poisson_factors(
    *,
    store: NoiseBlockStore,
    yields: dict[int, float],
    gains: dict[int, float],
    expected_energy_kev: float,
    thorium_energy_kev: float,
) -> np.ndarray:
    """p_k = (E_expected / E_Th) * gain_k * Y[k] for every APD index k."""
    ratio = float(expected_energy_kev) / float(thorium_energy_kev)
    gangs = store.channels[store.first_apd :]
    return np.array([ratio * gains[int(g)] * yields[int(g)] for g in gangs], dtype=np.float64)
