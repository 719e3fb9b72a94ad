"""
In-memory event model consumed by the refit engine.

Only the fields the fit reads or writes are modeled. Clusters and signals are
shared by reference: a scintillation cluster lists the charge clusters
attributed to it, and each charge cluster lists its u-wire signals; the
engine writes `denoised_energy` back onto those same objects.

Units: times in ns, positions in mm, energies in keV.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass(eq=False)
class UWireSignal:
    channel: int
    time: float
    is_induction: bool = False
    denoised_energy: float = 0.0


@dataclass(eq=False)
class ChargeCluster:
    x: float
    y: float
    z: float
    drift_time: float
    purity_corrected_energy: float
    uwire_signals: list[UWireSignal] = field(default_factory=list)
    denoised_energy: float = 0.0


@dataclass(eq=False)
class ScintillationCluster:
    time: float
    charge_clusters: list[ChargeCluster] = field(default_factory=list)
    denoised_energy: float = 0.0


@dataclass(eq=False)
class Event:
    """
    One triggered readout.

    Fields:
      waveforms: {channel: (2048,) digitized samples}
      sample_count: index of the last sample (2047 for a full-length trace)
      trigger_seconds, trigger_microseconds: trigger unix time
      scintillation_clusters, charge_clusters: preliminary reconstruction
    """

    waveforms: dict[int, np.ndarray]
    sample_count: int = 2047
    trigger_seconds: int = 0
    trigger_microseconds: int = 0
    scintillation_clusters: list[ScintillationCluster] = field(default_factory=list)
    charge_clusters: list[ChargeCluster] = field(default_factory=list)

    @property
    def unix_time(self) -> float:
        return float(self.trigger_seconds) + float(self.trigger_microseconds) / 1e6

    def waveform(self, channel: int) -> np.ndarray | None:
        return self.waveforms.get(int(channel))
