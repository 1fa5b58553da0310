# -*- coding: utf-8 -*-
"""Exceptions raised by the snowcoupler package."""

from __future__ import annotations


class SnowCouplerError(Exception):
    """Base class for all coupler errors."""


class ConfigurationError(SnowCouplerError, ValueError):
    """Invalid or inconsistent configuration."""


class TimingMismatchError(SnowCouplerError, ValueError):
    """A producer pushed data tagged for another step than the expected one."""

    def __init__(self, producer: str, provided, expected) -> None:
        self.producer = producer
        self.provided = provided
        self.expected = expected
        super().__init__(
            f"{producer} and snow cover time steps don't match: "
            f"got {provided}, expected {expected}"
        )


class GeolocationMismatchError(SnowCouplerError, IndexError):
    """Two grids (or a grid and the domain) do not share geolocation/dimensions."""


class MissingDataError(SnowCouplerError, RuntimeError):
    """Mandatory input is absent when a step is otherwise ready to run."""


class ReadFailureError(SnowCouplerError, IOError):
    """Initial cell state could not be read or initialized."""


class CellModelError(SnowCouplerError, RuntimeError):
    """A per-cell model failed to advance one step."""


class StepFailedError(SnowCouplerError, RuntimeError):
    """At least one cell failed during a step; the run cannot continue."""

    def __init__(self, timestamp, failures: int) -> None:
        self.timestamp = timestamp
        self.failures = int(failures)
        super().__init__(f"{self.failures} cell(s) failed at {timestamp}")


__all__ = [
    "SnowCouplerError",
    "ConfigurationError",
    "TimingMismatchError",
    "GeolocationMismatchError",
    "MissingDataError",
    "ReadFailureError",
    "CellModelError",
    "StepFailedError",
]
