"""
refit: noise-aware refit of u-wire and scintillation energies.

The main public entry points are:
  - `initialize` / `process` (one event at a time)
  - `process_events` (an event sequence, with progress)
  - `summarize` (timers and iteration statistics)
"""

from .calibration import StaticCalibration, TransferFunction
from .detector import ChannelMap, ChannelType
from .engine import EngineState, Outcome, RefitConfig, Status, initialize, process, process_events, summarize
from .errors import (
    ConfigurationError,
    ConvergenceFailure,
    InvariantViolation,
    MissingCalibration,
    RefitError,
    Skipped,
)
from .event import ChargeCluster, Event, ScintillationCluster, UWireSignal
from .templates import UnshapedWireTemplates, prepare_unshaped_wire_templates

__all__ = [
    "RefitConfig",
    "EngineState",
    "Outcome",
    "Status",
    "initialize",
    "process",
    "process_events",
    "summarize",
    "StaticCalibration",
    "TransferFunction",
    "ChannelMap",
    "ChannelType",
    "Event",
    "ScintillationCluster",
    "ChargeCluster",
    "UWireSignal",
    "UnshapedWireTemplates",
    "prepare_unshaped_wire_templates",
    "RefitError",
    "ConfigurationError",
    "MissingCalibration",
    "Skipped",
    "InvariantViolation",
    "ConvergenceFailure",
]
