"""
Signal templates in the interleaved frequency-domain basis.

A template is a real vector of length 2*(f_max - f_min + 1) - 1:

  [Re X(f_min), Im X(f_min), ..., Re X(f_max - 1), Im X(f_max - 1), Re X(f_max)]

where X is the numpy rfft of a 2048-sample trace. DC is outside the window
and the terminal (Nyquist) bin is strictly real, so its imaginary part is
dropped.

Light template: unit step at the scintillation time, shaped by the APD
electronics (two 3 us integrators; 10, 10, 300 us differentiators) and
normalized to unit peak. It is generated in the time domain (5x oversampled,
then decimated) for every call so that pulses near the end of the trace
keep their aperiodic shape.

Wire templates: the unshaped deposit (or induction) waveform from the
detector simulation, sampled at the high-bandwidth rate with the deposit at
256 us, shaped by the channel's transfer function, divided by a gain, and
resampled onto the 2048-sample grid at the signal time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from .calibration import CalibrationSource, TransferFunction, require_transfer, require_uwire_gain
from .detector import (
    N_SAMPLES,
    SAMPLE_TIME_HIGH_BANDWIDTH_NS,
    SAMPLE_TIME_NS,
    ChannelMap,
    ChannelType,
)
from .errors import InvariantViolation
from .event import ChargeCluster, Event, UWireSignal

logger = logging.getLogger(__name__)

LIGHT_OVERSAMPLE = 5
LIGHT_SHAPING = TransferFunction(
    integ_times_ns=(3000.0, 3000.0),
    diff_times_ns=(10000.0, 10000.0, 300000.0),
)
WIRE_DEPOSIT_TIME_NS = 256000.0


def interleave_spectrum(spectrum: np.ndarray, f_min: int, f_max: int) -> np.ndarray:
    """Complex rfft bins -> interleaved real template over [f_min, f_max]."""
    spectrum = np.asarray(spectrum)
    if spectrum.ndim != 1 or spectrum.size <= int(f_max):
        raise ValueError("spectrum must be 1-D and cover bin f_max.")
    window = spectrum[int(f_min) : int(f_max) + 1]
    out = np.empty((2 * window.size - 1,), dtype=np.float64)
    out[0::2] = window.real
    out[1::2] = window.imag[:-1]
    return out


def light_template(time_ns: float, f_min: int, f_max: int, *, n_samples: int = N_SAMPLES) -> np.ndarray:
    """Normalized scintillation template for a pulse at `time_ns`."""
    dt_fine = SAMPLE_TIME_NS / LIGHT_OVERSAMPLE
    fine = np.zeros((n_samples * LIGHT_OVERSAMPLE,), dtype=np.float64)
    start = max(int(float(time_ns) / dt_fine), 0)
    fine[start:] = 1.0

    shaped = LIGHT_SHAPING.transform(fine, dt_fine) / LIGHT_SHAPING.gain
    coarse = shaped[::LIGHT_OVERSAMPLE]
    return interleave_spectrum(np.fft.rfft(coarse), f_min, f_max)


def wire_template(
    unshaped: np.ndarray,
    transfer: TransferFunction,
    gain: float,
    time_ns: float,
    f_min: int,
    f_max: int,
    *,
    unshaped_sample_time_ns: float = SAMPLE_TIME_HIGH_BANDWIDTH_NS,
    n_samples: int = N_SAMPLES,
) -> np.ndarray:
    """Shaped wire template for a signal at `time_ns` on one channel."""
    shaped = transfer.transform(unshaped, unshaped_sample_time_ns) / float(gain)

    rel_time = SAMPLE_TIME_NS * np.arange(n_samples, dtype=np.float64) - float(time_ns)
    hb_index = np.trunc((WIRE_DEPOSIT_TIME_NS + rel_time) / float(unshaped_sample_time_ns)).astype(np.int64)
    ok = (hb_index >= 0) & (hb_index < shaped.size)

    wf = np.zeros((n_samples,), dtype=np.float64)
    wf[ok] = shaped[hb_index[ok]]
    return interleave_spectrum(np.fft.rfft(wf), f_min, f_max)


@dataclass(frozen=True)
class UnshapedWireTemplates:
    """
    Unshaped wire responses to a unit deposit, high-bandwidth sampled.

    deposit: collecting-wire waveform, deposit at 256 us, peak 1.
    induction: mean of the two neighbouring wires, same normalization.
    """

    deposit: np.ndarray
    induction: np.ndarray
    sample_time_ns: float = SAMPLE_TIME_HIGH_BANDWIDTH_NS

    def __post_init__(self) -> None:
        dep = np.asarray(self.deposit, dtype=np.float64).reshape(-1)
        ind = np.asarray(self.induction, dtype=np.float64).reshape(-1)
        if dep.shape != ind.shape:
            raise ValueError("deposit and induction waveforms must have the same length.")
        object.__setattr__(self, "deposit", dep)
        object.__setattr__(self, "induction", ind)


def prepare_unshaped_wire_templates(
    *,
    deposit: np.ndarray,
    induction_left: np.ndarray,
    induction_right: np.ndarray,
    hit_time_ns: float,
    sample_time_ns: float = SAMPLE_TIME_HIGH_BANDWIDTH_NS,
) -> UnshapedWireTemplates:
    """
    Turn simulated wire waveforms into `UnshapedWireTemplates`.

    The two induction neighbours are averaged, both waveforms are shifted
    earlier so the wire hit at `hit_time_ns` lands at 256 us, and both are
    divided by the deposit's maximum.
    """
    dep = np.asarray(deposit, dtype=np.float64).reshape(-1).copy()
    ind = 0.5 * (
        np.asarray(induction_left, dtype=np.float64).reshape(-1)
        + np.asarray(induction_right, dtype=np.float64).reshape(-1)
    )
    if ind.shape != dep.shape:
        raise ValueError("Simulated wire waveforms must have the same length.")

    shift = int(float(hit_time_ns) / sample_time_ns) - int(round(WIRE_DEPOSIT_TIME_NS / sample_time_ns))
    if shift < 0 or shift >= dep.size:
        raise ValueError(f"Wire hit time {hit_time_ns} ns cannot be moved to 256 us in this trace.")
    if shift > 0:
        dep[: dep.size - shift] = dep[shift:].copy()
        ind[: ind.size - shift] = ind[shift:].copy()

    peak = float(np.max(dep))
    if not np.isfinite(peak) or peak <= 0:
        raise ValueError("Deposit waveform must have a positive maximum.")
    return UnshapedWireTemplates(deposit=dep / peak, induction=ind / peak, sample_time_ns=sample_time_ns)


@dataclass(eq=False)
class WireModel:
    """One u-wire signal and its templates keyed by readout channel."""

    signal: UWireSignal
    templates: dict[int, np.ndarray] = field(default_factory=dict)


def collect_wire_signals(clusters: list[ChargeCluster]) -> list[UWireSignal]:
    """Distinct collection (non-induction) signals, in first-seen order."""
    seen: set[int] = set()
    out: list[UWireSignal] = []
    for clu in clusters:
        for sig in clu.uwire_signals:
            if sig.is_induction or id(sig) in seen:
                continue
            seen.add(id(sig))
            out.append(sig)
    return out


def build_wire_models(
    *,
    signals: list[UWireSignal],
    event: Event,
    calibration: CalibrationSource,
    unshaped: UnshapedWireTemplates,
    channel_map: ChannelMap,
    channels: tuple[int, ...],
    f_min: int,
    f_max: int,
) -> list[WireModel]:
    """
    Templates for every collection signal.

    The deposit channel always gets a deposit template. Each neighbour
    (channel +- 1) that is a u wire in the working set gets an induction
    template; its gain is the deposit shaper gain times
    gain_db(neighbour) / gain_db(deposit).
    """
    live = set(int(c) for c in channels)
    models: list[WireModel] = []
    for sig in signals:
        ch = int(sig.channel)
        if ch not in live:
            raise InvariantViolation(f"Collection signal on channel {ch} is not in the working channel set.")
        transfer_dep = require_transfer(calibration, event, ch)
        shaper_gain = transfer_dep.gain
        dep_gain_db = require_uwire_gain(calibration, event, ch)

        model = WireModel(signal=sig)
        model.templates[ch] = wire_template(
            unshaped.deposit,
            transfer_dep,
            shaper_gain,
            sig.time,
            f_min,
            f_max,
            unshaped_sample_time_ns=unshaped.sample_time_ns,
        )
        for nb in (ch - 1, ch + 1):
            if channel_map.channel_type(nb) != ChannelType.U_WIRE:
                continue
            if nb not in live:
                logger.debug("Induction neighbour %d of channel %d is not live; skipped.", nb, ch)
                continue
            transfer_nb = require_transfer(calibration, event, nb)
            nb_gain = shaper_gain * require_uwire_gain(calibration, event, nb) / dep_gain_db
            model.templates[nb] = wire_template(
                unshaped.induction,
                transfer_nb,
                nb_gain,
                sig.time,
                f_min,
                f_max,
                unshaped_sample_time_ns=unshaped.sample_time_ns,
            )
        models.append(model)
    return models
