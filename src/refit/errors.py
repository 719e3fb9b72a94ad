"""
Exception and warning classes.

Policy:
  - ConfigurationError, InvariantViolation: fatal, propagate to the host.
  - MissingCalibration, Skipped: the event is dropped, processing continues.
  - ConvergenceFailure: a warning; the best-effort solution is still written.
"""

from __future__ import annotations


class RefitError(Exception):
    """Base class for errors raised by the refit core."""


class ConfigurationError(RefitError):
    """Missing or unreadable artifact, or a configuration value out of range."""


class MissingCalibration(RefitError):
    """The calibration source cannot serve this event."""


class Skipped(RefitError):
    """The event fails a gate and is dropped."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvariantViolation(RefitError):
    """Internal layout contract broken (e.g. channel not in the working set)."""


class ConvergenceFailure(RuntimeWarning):
    """Block-BiCGSTAB did not meet the residual bound on any attempt."""
