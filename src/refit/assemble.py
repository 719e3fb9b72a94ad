"""
Per-event system assembly: cluster selection, expected APD yields, gates,
and the closed-form initial guess X0.

Expected yield per gang (ADC counts, peak minus baseline, at the 2615 keV
reference scale):

  Y[g] = sum_c lightmap_g(x_c, y_c, z_c) * gainmap_g(t_event) * E_c / sum_c E_c

over fully reconstructed charge clusters c (|x|,|y|,|z| <= 200 mm,
purity-corrected energy E_c >= 1 keV).
"""

from __future__ import annotations

import logging

import numpy as np

from .errors import InvariantViolation, Skipped
from .event import ChargeCluster, Event, ScintillationCluster
from .layout import ColumnLayout
from .lightmap import LightMap
from .noise import NoiseBlockStore
from .templates import WireModel

logger = logging.getLogger(__name__)


def check_event_shape(event: Event, *, required_sample_count: int) -> ScintillationCluster:
    """Sample-count and scintillation-count gates; returns the one scintillation cluster."""
    if int(event.sample_count) != int(required_sample_count):
        raise Skipped(f"sample count {event.sample_count} != {required_sample_count}")
    n_scint = len(event.scintillation_clusters)
    if n_scint != 1:
        raise Skipped(f"{n_scint} scintillation clusters (need exactly 1)")
    return event.scintillation_clusters[0]


def full_charge_clusters(
    scint: ScintillationCluster,
    *,
    fiducial_limit_mm: float,
    min_energy_kev: float,
) -> list[ChargeCluster]:
    out = []
    for clu in scint.charge_clusters:
        if abs(clu.x) > fiducial_limit_mm or abs(clu.y) > fiducial_limit_mm or abs(clu.z) > fiducial_limit_mm:
            continue
        if clu.purity_corrected_energy < min_energy_kev:
            continue
        out.append(clu)
    if not out:
        raise Skipped("no fully reconstructed charge cluster")
    return out


def expected_yields(
    *,
    channels: tuple[int, ...],
    first_apd: int,
    clusters: list[ChargeCluster],
    lightmap: LightMap,
    event_time_s: float,
) -> tuple[dict[int, float], float]:
    """
    Returns:
      yields: {gang: Y[g]} for every APD gang in the working set
      expected_energy_kev: total purity-corrected energy of the clusters
    """
    gangs = channels[int(first_apd) :]
    yields = {int(g): 0.0 for g in gangs}
    expected_energy = 0.0
    gain_now = {int(g): lightmap.gainmap_value(g, event_time_s) for g in gangs}
    for clu in clusters:
        energy = float(clu.purity_corrected_energy)
        expected_energy += energy
        for g in gangs:
            light = lightmap.lightmap_value(g, clu.x, clu.y, clu.z)
            yields[int(g)] += light * gain_now[int(g)] * energy
    for g in yields:
        yields[g] /= expected_energy
    return yields, expected_energy


def check_yield(yields: dict[int, float], *, min_expected_yield_adc: float) -> None:
    """Drop events where no gang would see more than the threshold at the reference energy."""
    if not any(y > min_expected_yield_adc for y in yields.values()):
        raise Skipped("no APD gang with expected yield above threshold")


def initial_guess(
    *,
    layout: ColumnLayout,
    store: NoiseBlockStore,
    wire_models: list[WireModel],
    light: np.ndarray,
    yields: dict[int, float],
) -> np.ndarray:
    """
    Closed-form starting point for the solver.

    Wire column i, deposit channel c, template t:
      X0[rows(c), i] = t / (diag_N(c)^2 * <t, t> * sum_f 1/diag_N(f, c)^2)
    where diag_N runs over the interleaved (re, im) noise diagonal.
    Light column, every APD index k:
      X0[rows(k), S-1] = Y[k] / (|Y|^2 |L|^2) * L
    Lagrange rows stay zero.
    """
    x = layout.zeros()
    for i, model in enumerate(wire_models):
        ch = int(model.signal.channel)
        c = store.channel_index(ch)
        if c is None:
            raise InvariantViolation(f"Channel {ch} not in working set.")
        template = model.templates[ch]
        re, im = store.diagonal(c)
        diag = np.empty((layout.template_length,), dtype=np.float64)
        diag[0::2] = re
        diag[1::2] = im
        inv_sq = 1.0 / (diag * diag)
        normalization = float(np.dot(template, template)) * float(np.sum(inv_sq))
        x[layout.channel_rows(c), i] = template * inv_sq / normalization

    light = np.asarray(light, dtype=np.float64)
    gangs = store.channels[store.first_apd :]
    y = np.array([yields[int(g)] for g in gangs], dtype=np.float64)
    scale = float(np.dot(y, y)) * float(np.dot(light, light))
    col = layout.n_columns - 1
    for k, y_k in zip(store.apd_indices, y):
        x[layout.channel_rows(k), col] = (y_k / scale) * light
    return x
