"""
Shared synthetic fixtures: noise artifacts, lightmaps, events, calibration.

Working channel set used throughout: u wires 0, 1, 2 and APD gangs 152, 153.
"""
from __future__ import annotations

import numpy as np
import pytest

from refit.calibration import StaticCalibration, TransferFunction
from refit.detector import ChannelMap, N_SAMPLES
from refit.event import ChargeCluster, Event, ScintillationCluster, UWireSignal
from refit.lightmap import GangMaps, save_lightmap
from refit.noise import NoiseBlockStore, NoiseCorrelations, save_noise_correlations
from refit.templates import UnshapedWireTemplates

CHANNELS = (0, 1, 2, 152, 153)
APD_GANGS = (152, 153)
WIRE_TRANSFER = TransferFunction(integ_times_ns=(3000.0,), diff_times_ns=(10000.0,))


def random_correlations(
    channels: tuple[int, ...],
    frequencies: range,
    *,
    seed: int = 0,
    diag: float = 4.0,
    coupling: float = 0.3,
) -> NoiseCorrelations:
    """SPD interleaved covariance per bin, split into RR / II / RI."""
    rng = np.random.default_rng(seed)
    n = len(channels)
    n_f = len(frequencies)
    rr = np.empty((n_f, n, n))
    ii = np.empty((n_f, n, n))
    ri = np.empty((n_f, n, n))
    for k in range(n_f):
        g = rng.standard_normal((2 * n, 2 * n))
        m = diag * np.eye(2 * n) + coupling * (g @ g.T) / (2 * n)
        m = 0.5 * (m + m.T)
        rr[k] = m[0::2, 0::2]
        ii[k] = m[1::2, 1::2]
        ri[k] = m[0::2, 1::2]
    return NoiseCorrelations(
        channels=np.array(channels, dtype=np.int64),
        frequencies=np.array(list(frequencies), dtype=np.int64),
        rr=rr,
        ii=ii,
        ri=ri,
    )


def build_store(
    channels: tuple[int, ...] = CHANNELS, f_min: int = 1, f_max: int = 3, seed: int = 0
) -> NoiseBlockStore:
    corr = random_correlations(channels, range(f_min, f_max + 1), seed=seed)
    return NoiseBlockStore.build(
        channels=channels, correlations=corr, f_min=f_min, f_max=f_max, channel_map=ChannelMap()
    )


def unshaped_templates(length: int = 30000) -> UnshapedWireTemplates:
    """Collection step and a bipolar induction bump, deposit at 256 us."""
    i = np.arange(length, dtype=np.float64)
    deposit = np.clip((i - 2460.0) / 100.0, 0.0, 1.0)
    induction = 0.2 * np.exp(-0.5 * ((i - 2460.0) / 40.0) ** 2) - 0.2 * np.exp(-0.5 * ((i - 2560.0) / 40.0) ** 2)
    return UnshapedWireTemplates(deposit=deposit, induction=induction)


def static_calibration(**overrides) -> StaticCalibration:
    kwargs = dict(
        default_transfer=WIRE_TRANSFER,
        default_uwire_gain=300.0,
        lifetimes_ns={"TPC1": 3.0e6, "TPC2": 3.0e6},
        grid_correction_factor=1.0,
    )
    kwargs.update(overrides)
    return StaticCalibration(**kwargs)


def gang_maps(value: float) -> GangMaps:
    axis = np.array([-200.0, 0.0, 200.0])
    return GangMaps(
        x=axis,
        y=axis,
        z=axis,
        values=np.full((3, 3, 3), float(value)),
        gain_t=np.array([0.0, 2.0e9]),
        gain=np.array([1.0, 1.0]),
    )


def make_event(*, seed: int = 1, sample_count: int = 2047, n_scint: int = 1) -> Event:
    rng = np.random.default_rng(seed)
    waveforms = {ch: 5.0 * rng.standard_normal(N_SAMPLES) for ch in CHANNELS}
    waveforms[40] = rng.standard_normal(N_SAMPLES)  # v wire, never fitted
    signal = UWireSignal(channel=1, time=1.0e6, denoised_energy=-1.0)
    induction = UWireSignal(channel=2, time=1.0e6, is_induction=True)
    cluster = ChargeCluster(
        x=10.0,
        y=10.0,
        z=10.0,
        drift_time=5.0e4,
        purity_corrected_energy=1000.0,
        uwire_signals=[signal, induction],
        denoised_energy=-1.0,
    )
    scints = [ScintillationCluster(time=9.5e5, charge_clusters=[cluster], denoised_energy=-1.0) for _ in range(n_scint)]
    return Event(
        waveforms=waveforms,
        sample_count=sample_count,
        trigger_seconds=1355409118,
        scintillation_clusters=scints,
        charge_clusters=[cluster],
    )


@pytest.fixture
def store() -> NoiseBlockStore:
    return build_store()


@pytest.fixture
def artifacts(tmp_path):
    """Noise (bins 1..8) and lightmap NPZ files; returns a writer for lightmaps."""
    corr = random_correlations(CHANNELS, range(1, 9), seed=3)
    noise_path = save_noise_correlations(
        tmp_path / "noise.npz",
        channels=corr.channels,
        frequencies=corr.frequencies,
        rr=corr.rr,
        ii=corr.ii,
        ri=corr.ri,
    )

    def write_lightmap(values: dict[int, float]):
        return save_lightmap(tmp_path / "lightmap.npz", {g: gang_maps(v) for g, v in values.items()})

    return noise_path, write_lightmap
