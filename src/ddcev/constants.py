"""
Numerical Constants for ddcev

Binary layout types, tolerances and the rejected-voxel sentinel.
"""

from __future__ import annotations

import numpy as np

# =============================================================================
# Concentration File Layout
# =============================================================================

# Little-endian on disk regardless of host byte order
INDEX_DTYPE: np.dtype = np.dtype("<u4")
FLOAT_DTYPE: np.dtype = np.dtype("<f8")

# Kernel columns per voxel (x, y, z dipole moments)
DIPOLE_COMPONENTS: int = 3

# =============================================================================
# Power Output
# =============================================================================

# Written into every cell of a voxel whose leading concentration eigenvalue
# falls below threshold. Positive so log-scale maps and ratios stay finite.
REJECTED_POWER: float = float(np.finfo(np.float64).tiny)

# =============================================================================
# Tolerances
# =============================================================================

# Slack for orthonormality and [0, 1] eigenvalue checks in debug mode
ORTHONORMALITY_ATOL: float = 1e-8
EIGENVALUE_ATOL: float = 1e-10

# Relative slack on the ROI ball radius so grid points exactly on the
# boundary are included
ROI_RADIUS_RTOL: float = 1e-9
