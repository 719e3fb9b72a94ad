"""
Detector constants and readout-channel classification.

Channel numbering (226 readout channels):
  0..37     U wires, TPC1
  38..75    V wires, TPC1
  76..113   U wires, TPC2
  114..151  V wires, TPC2
  152..225  APD gangs

Times are in ns throughout the package.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

NUMBER_READOUT_CHANNELS = 226
NCHANNEL_PER_WIREPLANE = 38
FIRST_APD_CHANNEL = 4 * NCHANNEL_PER_WIREPLANE

N_SAMPLES = 2048
SAMPLE_TIME_NS = 1000.0
BANDWIDTH_FACTOR = 10
SAMPLE_TIME_HIGH_BANDWIDTH_NS = SAMPLE_TIME_NS / BANDWIDTH_FACTOR

# Wire readout: ADC full scale in electrons, W-value of LXe, ADC depth.
ADC_FULL_SCALE_ELECTRONS_WIRE = 300000.0
W_VALUE_LXE_KEV_PER_ELECTRON = 15.6e-3
ADC_BITS = 4096
UWIRE_KEV_PER_ADC = ADC_FULL_SCALE_ELECTRONS_WIRE * W_VALUE_LXE_KEV_PER_ELECTRON / ADC_BITS

THORIUM_ENERGY_KEV = 2615.0


class ChannelType(enum.Enum):
    U_WIRE = "u"
    V_WIRE = "v"
    APD_GANG = "apd"
    INVALID = "invalid"


def channel_type(channel: int) -> ChannelType:
    """Classify a readout channel id; ids outside the readout range are INVALID."""
    channel = int(channel)
    if channel < 0 or channel >= NUMBER_READOUT_CHANNELS:
        return ChannelType.INVALID
    if channel >= FIRST_APD_CHANNEL:
        return ChannelType.APD_GANG
    plane = channel // NCHANNEL_PER_WIREPLANE
    return ChannelType.U_WIRE if plane % 2 == 0 else ChannelType.V_WIRE


@dataclass(frozen=True)
class ChannelMap:
    """
    Per-run channel status.

    `suppressed` holds channels the DAQ did not read out; `bad` holds channels
    flagged as not good. Channel types follow `channel_type`.
    """

    suppressed: frozenset[int] = field(default_factory=frozenset)
    bad: frozenset[int] = field(default_factory=frozenset)

    def channel_type(self, channel: int) -> ChannelType:
        return channel_type(channel)

    def is_live(self, channel: int) -> bool:
        return int(channel) not in self.suppressed and int(channel) not in self.bad
