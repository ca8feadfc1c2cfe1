"""
Validation Module for ddcev

Provides input validation for kernels, voxel geometry, Fourier tensors
and YAML configuration files.
"""

from __future__ import annotations

from ddcev.validation.input_validators import (
    ConfigValidationResult,
    validate_centroids,
    validate_config_file,
    validate_fourier_data,
    validate_kernel,
)

__all__ = [
    "ConfigValidationResult",
    "validate_centroids",
    "validate_config_file",
    "validate_fourier_data",
    "validate_kernel",
]
