"""
ddcev - Concentration-Eigenvalue Source Power Localization

This package contains:
- Concentration: per-voxel concentration eigenproblem, the binary
  concentration file, and multi-taper power localization
- Geometry: voxel spacing and ROI neighbour search
- Spectral: multi-taper Fourier transforms of sensor recordings
- Validation: input and configuration checks

Usage:
    # After installing with: pip install -e .
    from ddcev.config import load_config
    from ddcev.concentration import dd_concentration, localize_power_from_config
    from ddcev.spectral import multitaper_fourier
"""

__version__ = "0.1.0"
__all__ = ["concentration", "geometry", "spectral", "validation", "config", "errors"]
