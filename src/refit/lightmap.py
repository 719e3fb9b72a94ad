"""
Lightmap / gainmap artifact and APD gain model.

Per APD gang g:
  - lightmap_g(x, y, z): light collected per unit energy at a position
    (trilinear on bin centers; zero outside [first center, last center)),
  - gainmap_g(t): relative time dependence of the response (linear
    interpolation between points, linear extrapolation outside).

The APD gain converts photons on a gang to ADC counts (peak minus baseline):

  gain = 1.9 * laser(g) * gainmap_g(t) / gainmap_g(t_ref)
         * 32e-9 V/e (preamp) * 12.10 (shapers) * 4096 / 2.5 V (ADC)

with laser(g) from laser run 4540. Gangs without a laser value get gain 0,
which switches off their Poisson term.
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy.interpolate import RegularGridInterpolator, interp1d

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PAIRS_PER_PHOTON = 1.9
PREAMP_VOLTS_PER_ELECTRON = 32.0e-9
SHAPER_GAIN = 12.10
ADC_COUNTS_PER_VOLT = 4096.0 / 2.5
GAINMAP_REFERENCE_TIME_S = 1355409118.254096

# Laser run 4540; gangs 163, 178, 191 and 205 are bad and omitted.
LASER_GAINS: dict[int, float] = {
    152: 201.230438146, 153: 178.750438779, 154: 194.228589338, 155: 183.33801615,
    156: 218.485999976, 157: 222.139259152, 158: 169.982559736, 159: 140.385120552,
    160: 137.602725389, 161: 197.78183714, 162: 155.478773762, 164: 175.875067527,
    165: 160.014408865, 166: 183.408055613, 167: 189.600819126, 168: 160.339214431,
    169: 168.547991045, 170: 182.670039836, 171: 205.567802982, 172: 195.87450621,
    173: 224.956647122, 174: 232.062359991, 175: 241.822881767, 176: 194.740435753,
    177: 189.867775084, 179: 206.755206938, 180: 207.822617603, 181: 207.501985741,
    182: 218.213137769, 183: 234.369354843, 184: 99.908111992, 185: 238.381809313,
    186: 225.118270743, 187: 199.078450518, 188: 221.863823239, 189: 177.032783679,
    190: 196.787332164, 192: 194.923448865, 193: 197.027984846, 194: 202.757086104,
    195: 194.432937658, 196: 208.992809367, 197: 224.762562055, 198: 217.696006443,
    199: 222.380158829, 200: 218.358804472, 201: 209.573057132, 202: 194.684536629,
    203: 182.543842783, 204: 193.469930111, 206: 193.627191472, 207: 196.073150574,
    208: 189.597962521, 209: 198.824317108, 210: 222.747770671, 211: 216.928470825,
    212: 223.437239807, 213: 224.316404923, 214: 216.26783603, 215: 209.612423384,
    216: 223.041660884, 217: 202.642254512, 218: 213.904993632, 219: 221.988942321,
    220: 201.427174798, 221: 196.689200146, 222: 191.457656123, 223: 186.183873541,
    224: 217.033080346, 225: 205.858374653,
}


def _lightmap_key(gang: int) -> str:
    return f"lightmap_{int(gang):03d}"


def _gainmap_key(gang: int) -> str:
    return f"gainmap_{int(gang):03d}"


@dataclass(frozen=True)
class GangMaps:
    """Lightmap grid (values on bin centers) and gainmap graph of one gang."""

    x: np.ndarray
    y: np.ndarray
    z: np.ndarray
    values: np.ndarray  # (nx, ny, nz)
    gain_t: np.ndarray
    gain: np.ndarray

    def __post_init__(self) -> None:
        axes = [np.asarray(a, dtype=np.float64).reshape(-1) for a in (self.x, self.y, self.z)]
        values = np.asarray(self.values, dtype=np.float64)
        if values.shape != tuple(a.size for a in axes):
            raise ConfigurationError("Lightmap values must have shape (nx, ny, nz) matching its axes.")
        gain_t = np.asarray(self.gain_t, dtype=np.float64).reshape(-1)
        gain = np.asarray(self.gain, dtype=np.float64).reshape(-1)
        if gain_t.size != gain.size or gain_t.size < 2:
            raise ConfigurationError("Gainmap needs at least two (t, gain) points.")
        order = np.argsort(gain_t, kind="stable")
        object.__setattr__(self, "x", axes[0])
        object.__setattr__(self, "y", axes[1])
        object.__setattr__(self, "z", axes[2])
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "gain_t", gain_t[order])
        object.__setattr__(self, "gain", gain[order])
        object.__setattr__(
            self,
            "_interp",
            RegularGridInterpolator(tuple(axes), values, method="linear", bounds_error=False, fill_value=0.0),
        )
        object.__setattr__(
            self,
            "_gain_graph",
            interp1d(gain_t[order], gain[order], kind="linear", fill_value="extrapolate", assume_sorted=True),
        )

    def lightmap_value(self, x: float, y: float, z: float) -> float:
        inside = all(
            float(ax[0]) <= float(v) < float(ax[-1]) for ax, v in ((self.x, x), (self.y, y), (self.z, z))
        )
        if not inside:
            return 0.0
        return float(self._interp([[float(x), float(y), float(z)]])[0])

    def gainmap_value(self, t: float) -> float:
        return float(self._gain_graph(float(t)))


@dataclass(frozen=True)
class LightMap:
    maps: dict[int, GangMaps]

    @property
    def gangs(self) -> tuple[int, ...]:
        return tuple(sorted(self.maps))

    def gang(self, gang: int) -> GangMaps:
        try:
            return self.maps[int(gang)]
        except KeyError as err:
            raise ConfigurationError(f"Lightmap has no entry for APD gang {int(gang)}.") from err

    def lightmap_value(self, gang: int, x: float, y: float, z: float) -> float:
        return self.gang(gang).lightmap_value(x, y, z)

    def gainmap_value(self, gang: int, t: float) -> float:
        return self.gang(gang).gainmap_value(t)

    @classmethod
    def load(cls, path: Path) -> "LightMap":
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(f"Lightmap file not found: {path}")
        maps: dict[int, GangMaps] = {}
        try:
            with np.load(path, allow_pickle=False) as z:
                for gang in np.asarray(z["apds"], dtype=np.int64).reshape(-1):
                    lk, gk = _lightmap_key(gang), _gainmap_key(gang)
                    maps[int(gang)] = GangMaps(
                        x=z[f"{lk}_x"],
                        y=z[f"{lk}_y"],
                        z=z[f"{lk}_z"],
                        values=z[lk],
                        gain_t=z[f"{gk}_t"],
                        gain=z[f"{gk}_gain"],
                    )
        except KeyError as err:
            raise ConfigurationError(f"Lightmap file {path} lacks entry {err}.") from err
        except (OSError, ValueError, zipfile.BadZipFile) as err:
            raise ConfigurationError(f"Cannot read lightmap file {path}: {err}") from err
        logger.info("Loaded lightmap for %d APD gangs from %s", len(maps), path)
        return cls(maps=maps)


def save_lightmap(path: Path, maps: dict[int, GangMaps]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    arrays: dict[str, np.ndarray] = {"apds": np.array(sorted(maps), dtype=np.int64)}
    for gang, m in maps.items():
        lk, gk = _lightmap_key(gang), _gainmap_key(gang)
        arrays[lk] = m.values
        arrays[f"{lk}_x"] = m.x
        arrays[f"{lk}_y"] = m.y
        arrays[f"{lk}_z"] = m.z
        arrays[f"{gk}_t"] = m.gain_t
        arrays[f"{gk}_gain"] = m.gain
    np.savez_compressed(path, **arrays)
    return path


def apd_gain(channel: int, lightmap: LightMap, event_time_s: float) -> float:
    """Photons -> ADC counts on one gang; 0 for gangs without a laser value."""
    laser = LASER_GAINS.get(int(channel))
    if laser is None:
        return 0.0
    maps = lightmap.gang(channel)
    gain = PAIRS_PER_PHOTON * laser
    gain *= maps.gainmap_value(event_time_s) / maps.gainmap_value(GAINMAP_REFERENCE_TIME_S)
    return gain * PREAMP_VOLTS_PER_ELECTRON * SHAPER_GAIN * ADC_COUNTS_PER_VOLT
