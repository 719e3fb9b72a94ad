"""
Projection of the solved coefficients onto the raw waveforms, and
translation of the amplitudes into energies on the event.

  r_i = sum_c < X[rows(c), i], WF_c >

with WF_c the interleaved rfft of channel c's raw waveform over the window.
r_0..r_{S-2} are wire amplitudes (ADC), r_{S-1} the light amplitude in units
of the 2615 keV reference.
"""

from __future__ import annotations

import numpy as np

from .calibration import CalibrationSource, require_grid_correction, require_lifetime, require_uwire_gain
from .detector import UWIRE_KEV_PER_ADC
from .errors import InvariantViolation
from .event import Event, ScintillationCluster
from .layout import ColumnLayout
from .templates import WireModel, interleave_spectrum


def waveform_spectra(event: Event, channels: tuple[int, ...], f_min: int, f_max: int) -> np.ndarray:
    """(|C|, template_length) interleaved spectra of the raw waveforms."""
    rows = []
    for ch in channels:
        wf = event.waveform(ch)
        if wf is None:
            raise InvariantViolation(f"Waveform for channel {ch} disappeared.")
        spectrum = np.fft.rfft(np.asarray(wf, dtype=np.float64))
        rows.append(interleave_spectrum(spectrum, f_min, f_max))
    return np.array(rows, dtype=np.float64)


def project(x: np.ndarray, layout: ColumnLayout, spectra: np.ndarray) -> np.ndarray:
    """(S,) amplitudes from the solved bundle."""
    layout.check_bundle(x)
    spectra = np.asarray(spectra, dtype=np.float64)
    if spectra.shape != (layout.n_channels, layout.template_length):
        raise InvariantViolation("Waveform spectra do not match the layout.")
    results = np.zeros((layout.n_columns,), dtype=np.float64)
    for c in range(layout.n_channels):
        results += spectra[c] @ x[layout.channel_rows(c), :]
    return results


def tpc_of(z: float) -> str:
    return "TPC1" if z > 0 else "TPC2"


def write_back(
    *,
    event: Event,
    scint: ScintillationCluster,
    wire_models: list[WireModel],
    results: np.ndarray,
    calibration: CalibrationSource,
    thorium_energy_kev: float,
) -> None:
    """
    Write denoised energies onto the event.

    Wire signal: r_i * gain_db(channel) / 300 * UWIRE_KEV_PER_ADC.
    Charge cluster: sum over its signals, * exp(drift_time / lifetime) * grid correction.
    Scintillation: r_{S-1} * thorium_energy_kev.

    All calibration lookups happen before anything is written, so a
    MissingCalibration leaves the event untouched.
    """
    results = np.asarray(results, dtype=np.float64)
    if results.size != len(wire_models) + 1:
        raise InvariantViolation("Result count does not match the wire models.")

    wire_scale = [
        require_uwire_gain(calibration, event, m.signal.channel) / 300.0 * UWIRE_KEV_PER_ADC for m in wire_models
    ]
    cluster_factors = [
        np.exp(clu.drift_time / require_lifetime(calibration, event, tpc_of(clu.z)))
        * require_grid_correction(calibration, event, clu)
        for clu in event.charge_clusters
    ]

    for model, r, scale in zip(wire_models, results[:-1], wire_scale):
        model.signal.denoised_energy = float(r * scale)
    for clu, factor in zip(event.charge_clusters, cluster_factors):
        total = sum(sig.denoised_energy for sig in clu.uwire_signals)
        clu.denoised_energy = float(total * factor)
    scint.denoised_energy = float(results[-1] * thorium_energy_kev)
