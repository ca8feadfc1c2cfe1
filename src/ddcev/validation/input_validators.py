"""
Input Validators for ddcev

Provides validation for:
- Forward kernels and voxel centroid geometry
- Multi-taper Fourier tensors
- YAML configuration files

The array validators raise at operation entry so that no concentration
file is opened for inputs that cannot succeed. ``validate_config_file``
instead collects every problem into a result object with recovery
suggestions, for interactive use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from ddcev.constants import DIPOLE_COMPONENTS
from ddcev.errors import ConfigurationError, DataFormatError


# =============================================================================
# Validation Result Types
# =============================================================================


@dataclass
class ConfigValidationResult:
    """Result of YAML configuration file validation.

    Attributes
    ----------
    is_valid : bool
        True if config loaded and validated successfully.
    config : dict | None
        Loaded ``localization`` section (None if load failed).
    file_path : Path | None
        Path to the config file (None if it does not exist).
    warnings : list[str]
        Non-fatal warnings (e.g., options only one phase needs are missing).
    errors : list[str]
        Fatal errors (e.g., parse failures, out-of-range values).
    recovery_suggestions : list[str]
        Actionable suggestions for fixing issues.
    """

    is_valid: bool
    config: dict[str, Any] | None
    file_path: Path | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    recovery_suggestions: list[str] = field(default_factory=list)


# Expected type and inclusive range for each numeric option
CONFIG_TYPE_SPECS: dict[str, tuple[type, float, float]] = {
    "roi_volume": (float, 0.0, float("inf")),
    "cutoff": (float, 0.0, 1.0),
    "threshold": (float, 0.0, 1.0),
}


# =============================================================================
# Array Validation
# =============================================================================


def validate_kernel(kernel: np.ndarray, n_voxels: int | None = None) -> np.ndarray:
    """
    Check a forward kernel and return it as a float64 array.

    Parameters
    ----------
    kernel : np.ndarray
        Kernel with shape (n_channels, 3 * n_voxels).
    n_voxels : int, optional
        Expected voxel count.

    Returns
    -------
    np.ndarray
        The kernel as float64.

    Raises
    ------
    DataFormatError
        If the kernel is complex, not 2-D, non-finite, or its column count
        is not three per voxel.
    """
    kernel = np.asarray(kernel)
    if np.iscomplexobj(kernel):
        raise DataFormatError("kernel must be real-valued, got a complex array")
    kernel = kernel.astype(np.float64, copy=False)

    if kernel.ndim != 2:
        raise DataFormatError(
            f"kernel must have shape (n_channels, 3 * n_voxels), got {kernel.shape}"
        )
    if kernel.shape[0] == 0 or kernel.shape[1] == 0:
        raise DataFormatError(f"kernel must not be empty, got {kernel.shape}")
    if kernel.shape[1] % DIPOLE_COMPONENTS != 0:
        raise DataFormatError(
            f"kernel column count must be a multiple of {DIPOLE_COMPONENTS}, "
            f"got {kernel.shape[1]}"
        )
    if n_voxels is not None and kernel.shape[1] != DIPOLE_COMPONENTS * n_voxels:
        raise DataFormatError(
            f"kernel has {kernel.shape[1]} columns, expected "
            f"{DIPOLE_COMPONENTS * n_voxels} for {n_voxels} voxels"
        )
    if not np.all(np.isfinite(kernel)):
        raise DataFormatError("kernel contains NaN or infinite values")
    return kernel


def validate_centroids(centroids: np.ndarray) -> np.ndarray:
    """
    Check voxel centroids and return them as a float64 array.

    Raises
    ------
    DataFormatError
        If centroids are not (n_voxels, 3), empty or non-finite.
    """
    centroids = np.asarray(centroids, dtype=np.float64)
    if centroids.ndim != 2 or centroids.shape[1] != 3:
        raise DataFormatError(
            f"centroids must have shape (n_voxels, 3), got {centroids.shape}"
        )
    if centroids.shape[0] == 0:
        raise DataFormatError("centroids must contain at least one voxel")
    if not np.all(np.isfinite(centroids)):
        raise DataFormatError("centroids contain NaN or infinite values")
    return centroids


def validate_fourier_data(data: np.ndarray) -> np.ndarray:
    """
    Check a multi-taper Fourier tensor and return it with a time axis.

    Parameters
    ----------
    data : np.ndarray
        Complex tensor with shape (channels, tapers, frequency) or
        (channels, tapers, frequency, time).

    Returns
    -------
    np.ndarray
        Complex128 tensor of rank 4; a rank-3 input gets a trailing
        singleton time axis.

    Raises
    ------
    DataFormatError
        If the data are not complex or not of rank 3 or 4.
    """
    data = np.asarray(data)
    if not np.iscomplexobj(data):
        raise DataFormatError(
            f"Fourier data must be complex, got dtype {data.dtype}"
        )
    if data.ndim == 3:
        data = data[..., np.newaxis]
    elif data.ndim != 4:
        raise DataFormatError(
            "Fourier data must have shape (channels, tapers, frequency[, time]), "
            f"got rank {data.ndim} with shape {data.shape}"
        )
    if data.shape[1] == 0:
        raise DataFormatError("Fourier data must contain at least one taper")
    return data.astype(np.complex128, copy=False)


# =============================================================================
# Configuration File Validation
# =============================================================================


def validate_config_file(
    config_path: Path | str | None = None,
    strict: bool = False,
) -> ConfigValidationResult:
    """
    Load and validate a YAML configuration file without raising.

    Parameters
    ----------
    config_path : Path or str, optional
        Path to YAML config file. If None, uses default_localization.yaml.
    strict : bool
        If True, treat warnings as errors. Default False.

    Returns
    -------
    ConfigValidationResult
        Validation result with the loaded section and any issues found.

    Examples
    --------
    >>> result = validate_config_file("configs/default_localization.yaml")
    >>> result.is_valid
    True
    """
    from ddcev.config import CONFIG_SECTION, DEFAULT_CONFIG_PATH, LocalizationConfig

    warnings = []
    errors = []
    suggestions = []

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    file_exists = config_path.exists()
    if not file_exists:
        errors.append(f"CONFIG FILE NOT FOUND: '{config_path}' does not exist.")
        suggestions.append(
            f"Create '{config_path}' with a '{CONFIG_SECTION}:' section, "
            "or pass an explicit LocalizationConfig."
        )
        return ConfigValidationResult(
            is_valid=False,
            config=None,
            file_path=None,
            warnings=warnings,
            errors=errors,
            recovery_suggestions=suggestions,
        )

    section = None
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        if not isinstance(raw, dict) or not isinstance(raw.get(CONFIG_SECTION), dict):
            errors.append(
                f"MISSING SECTION: '{CONFIG_SECTION}' not found in '{config_path}'."
            )
            suggestions.append(
                f"Put all options under a top-level '{CONFIG_SECTION}:' key."
            )
        else:
            section = raw[CONFIG_SECTION]
    except yaml.YAMLError as e:
        errors.append(f"YAML PARSE ERROR in '{config_path}': {str(e)}")
        suggestions.append(
            "Check YAML syntax: proper indentation (2 spaces), "
            "colons after keys, no tabs."
        )
    except IOError as e:
        errors.append(f"FILE READ ERROR for '{config_path}': {str(e)}")
        suggestions.append("Check file permissions and path.")

    if section is not None:
        try:
            LocalizationConfig.from_dict(section)
        except ConfigurationError as e:
            errors.append(f"INVALID OPTIONS: {e}")

        for param, (expected_type, min_val, max_val) in CONFIG_TYPE_SPECS.items():
            if section.get(param) is None:
                warnings.append(
                    f"MISSING OPTION: '{param}' is not set; operations that "
                    "need it will refuse to run."
                )
                continue
            value = section[param]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(
                    f"TYPE ERROR: {param} should be {expected_type.__name__}, "
                    f"got {type(value).__name__}."
                )
                continue
            if value < min_val or value > max_val:
                errors.append(
                    f"RANGE ERROR: {param}={value} is outside [{min_val}, {max_val}]."
                )
        if section.get("roi_volume") == 0:
            errors.append("RANGE ERROR: roi_volume must be strictly positive.")
        if section.get("cutoff") == 1:
            errors.append("RANGE ERROR: cutoff=1 would truncate every global mode.")
            suggestions.append("Use a small cutoff such as 1e-3.")
        if not section.get("filename"):
            warnings.append("MISSING OPTION: 'filename' is not set.")
            suggestions.append("Set 'filename' to the concentration file name.")

    is_valid = len(errors) == 0
    if strict:
        is_valid = is_valid and len(warnings) == 0

    return ConfigValidationResult(
        is_valid=is_valid,
        config=section,
        file_path=config_path,
        warnings=warnings,
        errors=errors,
        recovery_suggestions=suggestions,
    )
