"""
Spectral Module

Multi-taper Fourier transforms producing the sensor-domain tensors
consumed by the power localizer.
"""

from .multitaper import (
    MultitaperResult,
    compute_dpss,
    default_taper_count,
    multitaper_fourier,
)

__all__ = [
    "MultitaperResult",
    "compute_dpss",
    "default_taper_count",
    "multitaper_fourier",
]
