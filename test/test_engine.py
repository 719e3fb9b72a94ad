"""
End-to-end tests of the event driver on synthetic artifacts.
"""
from __future__ import annotations

import logging
import time

import numpy as np
import pytest

from conftest import gang_maps, make_event, random_correlations, static_calibration, unshaped_templates
from refit.engine import RefitConfig, Status, initialize, process, process_events, summarize
from refit.errors import ConfigurationError
from refit.lightmap import save_lightmap
from refit.noise import save_noise_correlations


def make_state(artifacts, yields: dict[int, float] | None = None, **overrides):
    noise_path, write_lightmap = artifacts
    lightmap_path = write_lightmap(yields if yields is not None else {152: 50.0, 153: 40.0})
    kwargs = dict(
        lightmap_path=lightmap_path,
        noise_path=noise_path,
        f_min=1,
        f_max=8,
        residual_threshold=1e-6,
        max_iterations=200,
    )
    kwargs.update(overrides)
    return initialize(RefitConfig(**kwargs))


def run(state, event, **cal):
    return process(state, event, calibration=static_calibration(**cal), unshaped=unshaped_templates())


def energies(event) -> np.ndarray:
    clu = event.charge_clusters[0]
    return np.array(
        [clu.uwire_signals[0].denoised_energy, clu.denoised_energy, event.scintillation_clusters[0].denoised_energy]
    )


# --- Configuration ---

def test_config_validation():
    with pytest.raises(ConfigurationError):
        RefitConfig(lightmap_path="a.npz", noise_path="b.npz", f_min=0)
    with pytest.raises(ConfigurationError):
        RefitConfig(lightmap_path="a.npz", noise_path="b.npz", f_min=10, f_max=5)
    with pytest.raises(ConfigurationError):
        RefitConfig(lightmap_path="a.npz", noise_path="b.npz", residual_threshold=0.0)
    with pytest.raises(ConfigurationError):
        RefitConfig(lightmap_path="a.npz", noise_path="b.npz", gemm_backend="cublas")

    cfg = RefitConfig.from_mapping({"lightmap_path": "a.npz", "noise_path": "b.npz", "f_max": 16, "colour": "red"})
    assert cfg.f_max == 16
    assert cfg.residual_threshold == 1e-11


def test_initialize_requires_artifacts(tmp_path, artifacts):
    noise_path, write_lightmap = artifacts
    lightmap_path = write_lightmap({152: 50.0, 153: 40.0})
    with pytest.raises(ConfigurationError):
        initialize(RefitConfig(lightmap_path=lightmap_path, noise_path=tmp_path / "none.npz"))
    with pytest.raises(ConfigurationError):
        initialize(RefitConfig(lightmap_path=tmp_path / "none.npz", noise_path=noise_path))


def test_missing_lightmap_gang_is_fatal(artifacts):
    state = make_state(artifacts, yields={152: 50.0})
    with pytest.raises(ConfigurationError):
        run(state, make_event())


# --- Gates ---

def test_event_without_scintillation_passes_through(artifacts):
    state = make_state(artifacts)
    event = make_event()
    event.scintillation_clusters = []
    outcome = run(state, event)
    assert outcome.status == Status.PASSED
    assert event.charge_clusters[0].denoised_energy == -1.0


def test_wrong_sample_count_is_dropped_untouched(artifacts):
    state = make_state(artifacts)
    event = make_event(sample_count=2048)
    outcome = run(state, event)
    assert outcome.status == Status.DROPPED
    clu = event.charge_clusters[0]
    assert clu.denoised_energy == -1.0
    assert clu.uwire_signals[0].denoised_energy == -1.0
    assert event.scintillation_clusters[0].denoised_energy == 0.0
    assert state.n_solved == 0


def test_two_scintillation_clusters_are_dropped(artifacts):
    state = make_state(artifacts)
    event = make_event(n_scint=2)
    outcome = run(state, event)
    assert outcome.status == Status.DROPPED
    assert all(s.denoised_energy == 0.0 for s in event.scintillation_clusters)


def test_zero_yields_are_dropped(artifacts):
    state = make_state(artifacts, yields={152: 0.0, 153: 0.0})
    outcome = run(state, make_event())
    assert outcome.status == Status.DROPPED
    assert "yield" in outcome.reason


def test_cluster_outside_fiducial_volume_is_dropped(artifacts):
    state = make_state(artifacts)
    event = make_event()
    event.charge_clusters[0].z = 250.0
    assert run(state, event).status == Status.DROPPED


def test_single_gang_yield_passes_gate(artifacts):
    state = make_state(artifacts, yields={152: 50.0, 153: 0.0})
    outcome = run(state, make_event())
    assert outcome.status == Status.OK


def test_missing_calibration_drops_event(artifacts, caplog):
    state = make_state(artifacts)
    event = make_event()
    with caplog.at_level(logging.ERROR, logger="refit.engine"):
        outcome = run(state, event, default_transfer=None)
    assert outcome.status == Status.DROPPED
    assert event.charge_clusters[0].uwire_signals[0].denoised_energy == -1.0
    assert any("calibration" in r.getMessage() for r in caplog.records)


def test_missing_lifetime_leaves_energies_unwritten(artifacts):
    state = make_state(artifacts)
    event = make_event()
    outcome = run(state, event, lifetimes_ns={})
    assert outcome.status == Status.DROPPED
    assert event.charge_clusters[0].uwire_signals[0].denoised_energy == -1.0
    assert event.charge_clusters[0].denoised_energy == -1.0


# --- Full pipeline ---

def test_pipeline_writes_energies_deterministically(artifacts):
    results = []
    for _ in range(2):
        state = make_state(artifacts)
        event = make_event(seed=9)
        outcome = run(state, event)
        assert outcome.status == Status.OK
        assert outcome.converged
        assert outcome.iterations > 0
        results.append(energies(event))
    np.testing.assert_array_equal(results[0], results[1])
    assert np.all(np.isfinite(results[0]))
    assert np.all(results[0] != -1.0)


def test_cluster_energy_is_corrected_signal_sum(artifacts):
    state = make_state(artifacts)
    event = make_event(seed=4)
    assert run(state, event, grid_correction_factor=1.5).status == Status.OK
    clu = event.charge_clusters[0]
    expected = clu.uwire_signals[0].denoised_energy * np.exp(clu.drift_time / 3.0e6) * 1.5
    assert clu.denoised_energy == pytest.approx(expected, rel=1e-12)


def test_channel_refresh_is_idempotent(artifacts):
    state = make_state(artifacts)
    event = make_event()
    first = state.refresh_channels(event)
    assert state.refresh_channels(event) is first

    del event.waveforms[0]
    second = state.refresh_channels(event)
    assert second is not first
    assert second.channels == (1, 2, 152, 153)


def test_timers_accumulate_per_key(artifacts):
    state = make_state(artifacts)
    state.tick("custom", time.perf_counter())
    first = state.timings["custom"]
    state.tick("custom", time.perf_counter())
    assert state.timings["custom"] >= first >= 0.0

    run(state, make_event(seed=3))
    assert {"get_noise", "initial_guess", "solve", "process_event", "matrix_mul"} <= set(state.timings)
    assert summarize(state)["time_custom_s"] == state.timings["custom"]


def test_process_events_counts_and_summary(artifacts):
    state = make_state(artifacts)
    no_scint = make_event()
    no_scint.scintillation_clusters = []
    events = [make_event(seed=2), no_scint, make_event(sample_count=2048)]
    counts = process_events(
        state, events, calibration=static_calibration(), unshaped=unshaped_templates(), progress=False
    )
    assert counts == {"ok": 1, "passed": 1, "dropped": 1}

    summary = summarize(state)
    assert summary["events_solved"] == 1.0
    assert summary["mean_iterations"] >= summary["mean_light_only_iterations"]
    assert "time_process_event_s" in summary
    assert "time_solve_s" in summary


def test_gang_without_laser_gain_is_logged(tmp_path, caplog):
    channels = (0, 1, 2, 152, 163)
    corr = random_correlations(channels, range(1, 9), seed=6)
    noise_path = save_noise_correlations(
        tmp_path / "noise.npz", channels=corr.channels, frequencies=corr.frequencies, rr=corr.rr, ii=corr.ii, ri=corr.ri
    )
    lightmap_path = save_lightmap(tmp_path / "lightmap.npz", {152: gang_maps(50.0), 163: gang_maps(50.0)})
    state = initialize(RefitConfig(lightmap_path=lightmap_path, noise_path=noise_path, f_max=8))

    event = make_event()
    event.waveforms[163] = event.waveforms.pop(153)
    with caplog.at_level(logging.WARNING, logger="refit.engine"):
        store = state.refresh_channels(event)
    assert store.channels == channels
    assert any("163" in r.getMessage() and "laser" in r.getMessage() for r in caplog.records)
