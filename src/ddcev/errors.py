"""
Error Types for ddcev

All failures are fatal for the current operation. Messages name the
offending field together with the expected and actual values.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """A required option is missing or outside its valid range."""


class DataFormatError(ValueError):
    """Input arrays have the wrong dtype, rank or shape."""


class ConsistencyError(DataFormatError):
    """
    Stored concentration data disagrees with caller-supplied dimensions.

    Raised when a header's channel count does not match the Fourier data,
    or when a voxel record arrives out of the mandated descending order.
    """


class ConcentrationIOError(OSError):
    """Opening, reading, writing or closing a concentration file failed."""
