"""
Column layout shared by the assembler, operator, solver and projection.

A coefficient bundle X is an (L_col, S) Fortran-ordered array, S = n_wire + 1.
Within a column, with n = |C| channels and n_freq = f_max - f_min + 1 bins:

  rows [g*2n, g*2n + 2n)       bin f_min+g < f_max: (re, im) per channel
  rows [(n_freq-1)*2n, +n)      terminal bin f_max: re only
  rows noise_length + m         Lagrange multiplier of wire signal m
  row  L_col - 1                Lagrange multiplier of the light signal

  L_col = 2n(n_freq - 1) + n + n_wire + 1

`channel_rows(c)` lists the rows of channel c in the same interleaved order
as the templates ([re f_min, im f_min, ..., re f_max]), so template entry j
lives at row channel_rows(c)[j]. There is no row for the terminal imaginary
part.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import InvariantViolation


@dataclass(frozen=True)
class ColumnLayout:
    n_channels: int
    n_freq: int
    n_wire_signals: int

    def __post_init__(self) -> None:
        if int(self.n_channels) <= 0 or int(self.n_freq) <= 0 or int(self.n_wire_signals) < 0:
            raise ValueError("ColumnLayout needs n_channels > 0, n_freq > 0, n_wire_signals >= 0.")

    @property
    def noise_length(self) -> int:
        return int(2 * self.n_channels * (self.n_freq - 1) + self.n_channels)

    @property
    def column_length(self) -> int:
        return int(self.noise_length + self.n_wire_signals + 1)

    @property
    def n_columns(self) -> int:
        return int(self.n_wire_signals + 1)

    @property
    def template_length(self) -> int:
        return int(2 * self.n_freq - 1)

    def block_dim(self, g: int) -> int:
        return int(self.n_channels * (2 if g < self.n_freq - 1 else 1))

    def block_slice(self, g: int) -> slice:
        start = 2 * self.n_channels * int(g)
        return slice(start, start + self.block_dim(g))

    def channel_rows(self, channel_index: int) -> np.ndarray:
        c = int(channel_index)
        if c < 0 or c >= self.n_channels:
            raise InvariantViolation(f"Channel index {c} outside working set of {self.n_channels}.")
        base = 2 * self.n_channels * np.arange(self.n_freq - 1, dtype=np.int64) + 2 * c
        rows = np.empty((self.template_length,), dtype=np.int64)
        rows[0:-1:2] = base
        rows[1:-1:2] = base + 1
        rows[-1] = 2 * self.n_channels * (self.n_freq - 1) + c
        return rows

    def wire_lagrange_row(self, m: int) -> int:
        if m < 0 or m >= self.n_wire_signals:
            raise InvariantViolation(f"Wire signal {m} outside {self.n_wire_signals} signals.")
        return int(self.noise_length + m)

    @property
    def light_lagrange_row(self) -> int:
        return int(self.column_length - 1)

    @property
    def lagrange_rows(self) -> np.ndarray:
        return np.arange(self.noise_length, self.column_length, dtype=np.int64)

    def zeros(self) -> np.ndarray:
        return np.zeros((self.column_length, self.n_columns), dtype=np.float64, order="F")

    def rhs(self) -> np.ndarray:
        """B: column i is the unit vector on Lagrange row i."""
        b = self.zeros()
        b[self.lagrange_rows, np.arange(self.n_columns)] = 1.0
        return b

    def check_bundle(self, v: np.ndarray) -> None:
        if v.shape != (self.column_length, self.n_columns):
            raise InvariantViolation(
                f"Bundle shape {v.shape} does not match layout {(self.column_length, self.n_columns)}."
            )
