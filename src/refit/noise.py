"""
Noise-correlation artifact and the per-frequency noise-block store.

The artifact holds, for each FFT bin f, the real-arithmetic pieces of the
Hermitian channel-channel noise covariance:

  RR[f][a, b] = <Re n_a, Re n_b>,  II[f][a, b] = <Im n_a, Im n_b>,
  RI[f][a, b] = <Re n_a, Im n_b>

indexed by position in the artifact's own channel list.

For a working channel set C the store keeps one dense block per frequency
in the window [f_min, f_max], column-major, acting on interleaved
(re, im) channel coefficients:

  f < f_max (dim 2|C|):
    B[2i,   2j]   = RR[i, j]      B[2i,   2j+1] = RI[i, j]
    B[2i+1, 2j]   = RI[j, i]      B[2i+1, 2j+1] = II[i, j]
  f = f_max (dim |C|, strictly real):
    B[i, j] = RR[i, j]
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .detector import ChannelMap, ChannelType
from .errors import ConfigurationError
from .event import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoiseCorrelations:
    """
    Noise-correlations artifact.

    Shapes:
      channels: (n,) int64 readout channel ids
      frequencies: (n_f,) int64 FFT bins present
      rr, ii, ri: (n_f, n, n) float64
    """

    channels: np.ndarray
    frequencies: np.ndarray
    rr: np.ndarray
    ii: np.ndarray
    ri: np.ndarray

    def __post_init__(self) -> None:
        n = int(np.asarray(self.channels).size)
        n_f = int(np.asarray(self.frequencies).size)
        for name in ("rr", "ii", "ri"):
            arr = np.asarray(getattr(self, name), dtype=np.float64)
            if arr.shape != (n_f, n, n):
                raise ConfigurationError(f"Noise artifact '{name}' must have shape {(n_f, n, n)}, got {arr.shape}.")
            object.__setattr__(self, name, arr)
        chans = np.asarray(self.channels, dtype=np.int64)
        freqs = np.asarray(self.frequencies, dtype=np.int64)
        object.__setattr__(self, "channels", chans)
        object.__setattr__(self, "frequencies", freqs)
        object.__setattr__(self, "_chan_pos", {int(c): i for i, c in enumerate(chans)})
        object.__setattr__(self, "_freq_pos", {int(f): i for i, f in enumerate(freqs)})

    @classmethod
    def load(cls, path: Path) -> "NoiseCorrelations":
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(f"Noise correlations file not found: {path}")
        try:
            with np.load(path, allow_pickle=False) as z:
                return cls(
                    channels=np.asarray(z["channels"], dtype=np.int64),
                    frequencies=np.asarray(z["frequencies"], dtype=np.int64),
                    rr=np.asarray(z["rr"], dtype=np.float64),
                    ii=np.asarray(z["ii"], dtype=np.float64),
                    ri=np.asarray(z["ri"], dtype=np.float64),
                )
        except KeyError as err:
            raise ConfigurationError(f"Noise correlations file {path} lacks entry {err}.") from err
        except (OSError, ValueError, zipfile.BadZipFile) as err:
            raise ConfigurationError(f"Cannot read noise correlations file {path}: {err}") from err

    def index_of_channel(self, channel: int) -> int:
        try:
            return int(self._chan_pos[int(channel)])
        except KeyError as err:
            raise ConfigurationError(f"Noise correlations lack channel {int(channel)}.") from err

    def index_of_frequency(self, f: int) -> int:
        try:
            return int(self._freq_pos[int(f)])
        except KeyError as err:
            raise ConfigurationError(f"Noise correlations lack frequency bin {int(f)}.") from err


def save_noise_correlations(
    path: Path,
    *,
    channels: np.ndarray,
    frequencies: np.ndarray,
    rr: np.ndarray,
    ii: np.ndarray,
    ri: np.ndarray,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        channels=np.asarray(channels, dtype=np.int64),
        frequencies=np.asarray(frequencies, dtype=np.int64),
        rr=np.asarray(rr, dtype=np.float64),
        ii=np.asarray(ii, dtype=np.float64),
        ri=np.asarray(ri, dtype=np.float64),
    )
    return path


def select_channels(event: Event, channel_map: ChannelMap) -> tuple[int, ...]:
    """
    Live working set for an event, in readout-channel order.

    V wires, DAQ-suppressed and bad channels, and channels without a waveform
    are excluded. With the detector numbering, u wires precede APD gangs.
    """
    out: list[int] = []
    for ch in sorted(int(c) for c in event.waveforms):
        kind = channel_map.channel_type(ch)
        if kind not in (ChannelType.U_WIRE, ChannelType.APD_GANG):
            continue
        if not channel_map.is_live(ch):
            continue
        if event.waveform(ch) is None:
            continue
        out.append(ch)
    return tuple(out)


@dataclass(frozen=True)
class NoiseBlockStore:
    """
    Channel working set C plus one Fortran-ordered noise block per frequency.

    blocks[g] belongs to FFT bin f_min + g; the last one is the terminal block.
    """

    channels: tuple[int, ...]
    f_min: int
    f_max: int
    first_apd: int
    blocks: tuple[np.ndarray, ...]

    @property
    def n_channels(self) -> int:
        return len(self.channels)

    @property
    def n_freq(self) -> int:
        return int(self.f_max - self.f_min + 1)

    @property
    def apd_indices(self) -> range:
        return range(int(self.first_apd), self.n_channels)

    def channel_index(self, channel: int) -> int | None:
        try:
            return self.channels.index(int(channel))
        except ValueError:
            return None

    @classmethod
    def build(
        cls,
        *,
        channels: tuple[int, ...],
        correlations: NoiseCorrelations,
        f_min: int,
        f_max: int,
        channel_map: ChannelMap,
    ) -> "NoiseBlockStore":
        channels = tuple(int(c) for c in channels)
        f_min, f_max = int(f_min), int(f_max)
        if f_min < 1 or f_max < f_min:
            raise ConfigurationError("Frequency window must satisfy 1 <= f_min <= f_max.")
        idx = np.array([correlations.index_of_channel(c) for c in channels], dtype=np.int64)
        n = len(channels)

        blocks: list[np.ndarray] = []
        for f in range(f_min, f_max + 1):
            k = correlations.index_of_frequency(f)
            rr = correlations.rr[k][np.ix_(idx, idx)]
            if f == f_max:
                blocks.append(np.asfortranarray(rr))
                continue
            ii = correlations.ii[k][np.ix_(idx, idx)]
            ri = correlations.ri[k][np.ix_(idx, idx)]
            block = np.empty((2 * n, 2 * n), dtype=np.float64, order="F")
            block[0::2, 0::2] = rr
            block[1::2, 0::2] = ri.T
            block[0::2, 1::2] = ri
            block[1::2, 1::2] = ii
            blocks.append(block)

        first_apd = next(
            (i for i, c in enumerate(channels) if channel_map.channel_type(c) == ChannelType.APD_GANG),
            n,
        )
        return cls(channels=channels, f_min=f_min, f_max=f_max, first_apd=int(first_apd), blocks=tuple(blocks))

    def diagonal(self, channel_index: int) -> tuple[np.ndarray, np.ndarray]:
        """
        Noise diagonal of one channel across the window.

        Returns:
          re: (n_freq,) B[2c, 2c] (B[c, c] at the terminal bin)
          im: (n_freq - 1,) B[2c+1, 2c+1]; the terminal bin has no imaginary part
        """
        c = int(channel_index)
        re = np.empty((self.n_freq,), dtype=np.float64)
        im = np.empty((self.n_freq - 1,), dtype=np.float64)
        for g, block in enumerate(self.blocks[:-1]):
            re[g] = block[2 * c, 2 * c]
            im[g] = block[2 * c + 1, 2 * c + 1]
        re[-1] = self.blocks[-1][c, c]
        return re, im
