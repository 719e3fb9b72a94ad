"""
Event-level driver: `initialize(config) -> EngineState` and
`process(state, event, ...) -> Outcome`.

EngineState owns everything that outlives an event (lightmap, cached channel
set and noise blocks, GEMM backend, timers, iteration counters). One state
per worker; nothing is shared between states.

Per event:
  1. reset scintillation denoised energies
  2. gates: >= 1 scintillation cluster (else passed through), sample count,
     exactly one scintillation cluster
  3. refresh channel set / noise blocks if the live set changed
  4. full charge clusters, expected yields, yield gate
  5. light template, wire templates (MissingCalibration drops the event)
  6. initial guess, block-BiCGSTAB with retries
  7. projection onto the raw waveforms, write-back
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np
from tqdm import tqdm

from . import assemble, projection, templates
from .calibration import CalibrationSource
from .detector import THORIUM_ENERGY_KEV, ChannelMap
from .errors import ConfigurationError, MissingCalibration, Skipped
from .event import Event
from .gemm import Gemm, available_backends, get_gemm
from .layout import ColumnLayout
from .lightmap import LASER_GAINS, LightMap, apd_gain
from .linop import RefitOperator, poisson_factors
from .noise import NoiseBlockStore, NoiseCorrelations, select_channels
from .solver import solve_with_retries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefitConfig:
    lightmap_path: str | Path
    noise_path: str | Path
    residual_threshold: float = 1e-11
    f_min: int = 1
    f_max: int = 1024
    max_iterations: int = 1000
    max_attempts: int = 3
    gemm_backend: str = "blas"
    thorium_energy_kev: float = THORIUM_ENERGY_KEV
    fiducial_limit_mm: float = 200.0
    min_cluster_energy_kev: float = 1.0
    min_expected_yield_adc: float = 1.0
    required_sample_count: int = 2047

    def __post_init__(self) -> None:
        if not str(self.lightmap_path):
            raise ConfigurationError("lightmap_path is required.")
        if not str(self.noise_path):
            raise ConfigurationError("noise_path is required.")
        if not (1 <= int(self.f_min) <= int(self.f_max)):
            raise ConfigurationError("Frequency window must satisfy 1 <= f_min <= f_max.")
        if not (np.isfinite(self.residual_threshold) and self.residual_threshold > 0):
            raise ConfigurationError("residual_threshold must be finite and > 0.")
        if int(self.max_iterations) <= 0 or int(self.max_attempts) <= 0:
            raise ConfigurationError("max_iterations and max_attempts must be positive.")
        if str(self.gemm_backend).lower() not in available_backends():
            raise ConfigurationError(f"Unknown GEMM backend '{self.gemm_backend}'.")

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "RefitConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in values.items() if k in known})


class Status(enum.Enum):
    OK = "ok"
    PASSED = "passed"
    DROPPED = "dropped"


@dataclass
class Outcome:
    status: Status
    reason: str = ""
    converged: bool | None = None
    iterations: int = 0


@dataclass
class EngineState:
    config: RefitConfig
    lightmap: LightMap
    gemm: Gemm
    channel_map: ChannelMap = field(default_factory=ChannelMap)
    store: NoiseBlockStore | None = None
    timings: dict[str, float] = field(default_factory=dict)
    n_solved: int = 0
    n_iterations: int = 0
    n_wire_iterations: int = 0
    n_light_iterations: int = 0

    def tick(self, key: str, t0: float) -> None:
        self.timings[key] = self.timings.get(key, 0.0) + (time.perf_counter() - t0)

    def refresh_channels(self, event: Event) -> NoiseBlockStore:
        """Rebuild C and N only when the live channel set changed."""
        t0 = time.perf_counter()
        channels = select_channels(event, self.channel_map)
        if self.store is not None and self.store.channels == channels:
            self.tick("get_noise", t0)
            return self.store

        cfg = self.config
        correlations = NoiseCorrelations.load(Path(cfg.noise_path))
        store = NoiseBlockStore.build(
            channels=channels,
            correlations=correlations,
            f_min=cfg.f_min,
            f_max=cfg.f_max,
            channel_map=self.channel_map,
        )
        for gang in store.channels[store.first_apd :]:
            self.lightmap.gang(gang)
            if gang not in LASER_GAINS:
                logger.warning("APD gang %d has no laser gain; its Poisson term is zero.", gang)
        logger.info(
            "Channel set rebuilt: %d channels (%d APD gangs), %d noise blocks.",
            store.n_channels,
            store.n_channels - store.first_apd,
            len(store.blocks),
        )
        self.store = store
        self.tick("get_noise", t0)
        return store


def initialize(config: RefitConfig, *, channel_map: ChannelMap | None = None) -> EngineState:
    """Load the lightmap, check the noise artifact, pick the GEMM backend."""
    noise_path = Path(config.noise_path)
    if not noise_path.is_file():
        raise ConfigurationError(f"Noise correlations file not found: {noise_path}")
    lightmap = LightMap.load(Path(config.lightmap_path))
    gemm = get_gemm(config.gemm_backend)
    return EngineState(
        config=config,
        lightmap=lightmap,
        gemm=gemm,
        channel_map=channel_map if channel_map is not None else ChannelMap(),
    )


def process(
    state: EngineState,
    event: Event,
    *,
    calibration: CalibrationSource,
    unshaped: templates.UnshapedWireTemplates,
) -> Outcome:
    """Refit one event in place. Fatal errors (configuration, invariants) propagate."""
    t0 = time.perf_counter()
    try:
        return _process(state, event, calibration=calibration, unshaped=unshaped)
    except Skipped as err:
        logger.debug("Event dropped: %s", err.reason)
        return Outcome(status=Status.DROPPED, reason=err.reason)
    except MissingCalibration as err:
        logger.error("Event dropped, calibration unavailable: %s", err)
        return Outcome(status=Status.DROPPED, reason=str(err))
    finally:
        state.tick("process_event", t0)


def _process(
    state: EngineState,
    event: Event,
    *,
    calibration: CalibrationSource,
    unshaped: templates.UnshapedWireTemplates,
) -> Outcome:
    cfg = state.config
    for scint in event.scintillation_clusters:
        scint.denoised_energy = 0.0
    if not event.scintillation_clusters:
        return Outcome(status=Status.PASSED, reason="no scintillation cluster")

    scint = assemble.check_event_shape(event, required_sample_count=cfg.required_sample_count)
    store = state.refresh_channels(event)
    clusters = assemble.full_charge_clusters(
        scint,
        fiducial_limit_mm=cfg.fiducial_limit_mm,
        min_energy_kev=cfg.min_cluster_energy_kev,
    )

    event_time = event.unix_time
    yields, expected_energy = assemble.expected_yields(
        channels=store.channels,
        first_apd=store.first_apd,
        clusters=clusters,
        lightmap=state.lightmap,
        event_time_s=event_time,
    )
    assemble.check_yield(yields, min_expected_yield_adc=cfg.min_expected_yield_adc)

    light = templates.light_template(scint.time, cfg.f_min, cfg.f_max)
    wire_models = templates.build_wire_models(
        signals=templates.collect_wire_signals(clusters),
        event=event,
        calibration=calibration,
        unshaped=unshaped,
        channel_map=state.channel_map,
        channels=store.channels,
        f_min=cfg.f_min,
        f_max=cfg.f_max,
    )
    layout = ColumnLayout(n_channels=store.n_channels, n_freq=store.n_freq, n_wire_signals=len(wire_models))

    t_guess = time.perf_counter()
    x = assemble.initial_guess(layout=layout, store=store, wire_models=wire_models, light=light, yields=yields)
    state.tick("initial_guess", t_guess)

    gains = {int(g): apd_gain(g, state.lightmap, event_time) for g in store.channels[store.first_apd :]}
    op = RefitOperator(
        layout=layout,
        store=store,
        wire_models=wire_models,
        light=light,
        poisson_factors=poisson_factors(
            store=store,
            yields=yields,
            gains=gains,
            expected_energy_kev=expected_energy,
            thorium_energy_kev=cfg.thorium_energy_kev,
        ),
        gemm=state.gemm,
        timings=state.timings,
    )

    t_solve = time.perf_counter()
    result = solve_with_retries(
        op.apply,
        x,
        layout.rhs(),
        cfg.residual_threshold,
        max_iterations=cfg.max_iterations,
        max_attempts=cfg.max_attempts,
        gemm=state.gemm,
    )
    state.tick("solve", t_solve)
    state.n_solved += 1
    state.n_iterations += result.iterations
    state.n_wire_iterations += result.wire_iterations
    state.n_light_iterations += result.light_iterations
    logger.debug(
        "Solved %d columns in %d iterations (converged=%s).", layout.n_columns, result.iterations, result.converged
    )

    spectra = projection.waveform_spectra(event, store.channels, cfg.f_min, cfg.f_max)
    results = projection.project(x, layout, spectra)
    projection.write_back(
        event=event,
        scint=scint,
        wire_models=wire_models,
        results=results,
        calibration=calibration,
        thorium_energy_kev=cfg.thorium_energy_kev,
    )
    return Outcome(status=Status.OK, converged=result.converged, iterations=result.iterations)


def process_events(
    state: EngineState,
    events: Iterable[Event],
    *,
    calibration: CalibrationSource,
    unshaped: templates.UnshapedWireTemplates,
    progress: bool = True,
) -> dict[str, int]:
    """Process a sequence of events one at a time; returns counts per status."""
    counts = {s.value: 0 for s in Status}
    for event in tqdm(events, desc="refit-signals", leave=True, disable=not progress):
        outcome = process(state, event, calibration=calibration, unshaped=unshaped)
        counts[outcome.status.value] += 1
    return counts


def summarize(state: EngineState) -> dict[str, float]:
    """Timers and average iteration counts, also written to the log."""
    n = max(state.n_solved, 1)
    summary = {f"time_{k}_s": float(v) for k, v in sorted(state.timings.items())}
    summary["events_solved"] = float(state.n_solved)
    summary["mean_iterations"] = state.n_iterations / n
    summary["mean_wire_only_iterations"] = state.n_wire_iterations / n
    summary["mean_light_only_iterations"] = state.n_light_iterations / n
    for key, value in summary.items():
        logger.info("%s = %.6g", key, value)
    return summary
