"""
Electronics shaping and the calibration-source interface.

`TransferFunction` models a shaper chain as a cascade of first-order analog
stages, discretized with the bilinear transform:

  integration stage (RC low-pass):     H(s) = 1 / (1 + s*tau)
  differentiation stage (CR high-pass): H(s) = s*tau / (1 + s*tau)

Its `gain` is the peak of the response to a unit step, so dividing a shaped
signal by `gain` normalizes a unit deposit to unit peak-minus-baseline.

Calibration lookups (shapers, u-wire gains, electron lifetime, grid
correction) are supplied by the host through `CalibrationSource`.
`StaticCalibration` is an in-memory implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol

import numpy as np
import scipy.signal as sps

from .errors import MissingCalibration
from .event import ChargeCluster, Event

# Step-response sampling used to measure the shaping gain.
GAIN_SAMPLE_TIME_NS = 10.0
GAIN_HORIZON_FACTOR = 20.0


@dataclass(frozen=True)
class TransferFunction:
    """
    Shaper chain.

    Args:
      integ_times_ns: time constants of the integration stages.
      diff_times_ns: time constants of the differentiation stages.
    """

    integ_times_ns: tuple[float, ...] = ()
    diff_times_ns: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        integ = tuple(float(t) for t in self.integ_times_ns)
        diff = tuple(float(t) for t in self.diff_times_ns)
        if any(t <= 0 or not np.isfinite(t) for t in integ + diff):
            raise ValueError("Shaping time constants must be finite and > 0.")
        object.__setattr__(self, "integ_times_ns", integ)
        object.__setattr__(self, "diff_times_ns", diff)
        object.__setattr__(self, "_gain", self._step_peak())

    @property
    def gain(self) -> float:
        return float(self._gain)

    def _stages(self, sample_time_ns: float) -> list[tuple[np.ndarray, np.ndarray]]:
        fs = 1.0 / float(sample_time_ns)
        stages = [sps.bilinear([1.0], [tau, 1.0], fs=fs) for tau in self.integ_times_ns]
        stages += [sps.bilinear([tau, 0.0], [tau, 1.0], fs=fs) for tau in self.diff_times_ns]
        return stages

    def transform(self, waveform: np.ndarray, sample_time_ns: float) -> np.ndarray:
        """Apply the shaper chain to a waveform sampled every `sample_time_ns`."""
        out = np.asarray(waveform, dtype=np.float64).reshape(-1)
        for b, a in self._stages(sample_time_ns):
            out = sps.lfilter(b, a, out)
        return out

    def _step_peak(self) -> float:
        if not self.integ_times_ns and not self.diff_times_ns:
            return 1.0
        span = sum(self.integ_times_ns)
        if self.diff_times_ns:
            span += min(self.diff_times_ns)
        n = int(np.ceil(GAIN_HORIZON_FACTOR * span / GAIN_SAMPLE_TIME_NS)) + 1
        response = self.transform(np.ones((n,), dtype=np.float64), GAIN_SAMPLE_TIME_NS)
        return float(np.max(np.abs(response)))


class CalibrationSource(Protocol):
    """Per-event calibration lookups; a method returns None when it has no entry."""

    def transfer_function(self, event: Event, channel: int) -> TransferFunction | None: ...

    def uwire_gain(self, event: Event, channel: int) -> float | None: ...

    def lifetime_ns(self, event: Event, tpc: str) -> float | None: ...

    def grid_correction(self, event: Event, cluster: ChargeCluster) -> float | None: ...


@dataclass
class StaticCalibration:
    """
    Calibration constants that do not vary between events.

    `default_transfer` / `default_uwire_gain` are used for channels without an
    explicit entry; leave them as None to make such channels a
    MissingCalibration.
    """

    transfer_functions: Mapping[int, TransferFunction] = field(default_factory=dict)
    uwire_gains: Mapping[int, float] = field(default_factory=dict)
    lifetimes_ns: Mapping[str, float] = field(default_factory=dict)
    grid_correction_factor: float = 1.0
    default_transfer: TransferFunction | None = None
    default_uwire_gain: float | None = None

    def transfer_function(self, event: Event, channel: int) -> TransferFunction | None:
        return self.transfer_functions.get(int(channel), self.default_transfer)

    def uwire_gain(self, event: Event, channel: int) -> float | None:
        return self.uwire_gains.get(int(channel), self.default_uwire_gain)

    def lifetime_ns(self, event: Event, tpc: str) -> float | None:
        return self.lifetimes_ns.get(tpc)

    def grid_correction(self, event: Event, cluster: ChargeCluster) -> float | None:
        return float(self.grid_correction_factor)


def require_transfer(source: CalibrationSource, event: Event, channel: int) -> TransferFunction:
    tf = source.transfer_function(event, channel)
    if tf is None:
        raise MissingCalibration(f"No electronics shaping for channel {int(channel)}.")
    return tf


def require_uwire_gain(source: CalibrationSource, event: Event, channel: int) -> float:
    gain = source.uwire_gain(event, channel)
    if gain is None or not np.isfinite(gain) or gain <= 0:
        raise MissingCalibration(f"No u-wire gain for channel {int(channel)}.")
    return float(gain)


def require_lifetime(source: CalibrationSource, event: Event, tpc: str) -> float:
    lifetime = source.lifetime_ns(event, tpc)
    if lifetime is None or not np.isfinite(lifetime) or lifetime <= 0:
        raise MissingCalibration(f"No electron lifetime for {tpc}.")
    return float(lifetime)


def require_grid_correction(source: CalibrationSource, event: Event, cluster: ChargeCluster) -> float:
    factor = source.grid_correction(event, cluster)
    if factor is None or not np.isfinite(factor):
        raise MissingCalibration("No grid correction for this event.")
    return float(factor)
