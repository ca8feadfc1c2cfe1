"""
Power Localizer - Concentration-Weighted Multi-Taper Source Power

Streams a concentration file voxel by voxel and projects multi-taper
sensor Fourier coefficients onto each voxel's well-concentrated modes.

Pipeline (per voxel v, from the last voxel down to the first):
1. Accept the voxel if its leading concentration eigenvalue >= threshold.
2. Keep the m* local modes whose eigenvalues are >= threshold.
3. Spatial filters:  W = U[:, :cut] @ diag(1/S[:cut]) @ Vp[:cut, :m*]
4. Tapered modes:    Y[m, k] = sum_c conj(W[c, m]) * X[c, k, f, t]
5. Power:            P[f, t, v] = sum_{m,k} lambda_m |Y[m, k]|^2 / n_tapers

Rejected voxels get REJECTED_POWER in every cell and their leakage
10*log10(1 - lambda_0) dB is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, ClassVar

import numpy as np

from ddcev.config import LocalizationConfig, validate_truncation
from ddcev.constants import REJECTED_POWER
from ddcev.concentration.record_io import ConcentrationReader, VoxelRecord
from ddcev.errors import ConsistencyError
from ddcev.validation.input_validators import validate_fourier_data

logger = logging.getLogger(__name__)


@dataclass
class PowerMap:
    """
    Localized power estimates.

    Attributes
    ----------
    power : np.ndarray
        Power with shape (n_frequencies, n_times, n_voxels). Voxel v
        (1-based) is stored at index v - 1.
    rejected : np.ndarray
        True for voxels whose leading eigenvalue fell below threshold,
        shape (n_voxels,). Their cells hold ``REJECTED_POWER``.
    leakage_db : np.ndarray
        10*log10(1 - leading eigenvalue) for rejected voxels, NaN for
        accepted ones, shape (n_voxels,).
    n_modes : np.ndarray
        Number of local modes used per voxel (m*), 0 for rejected voxels.
    cut_index : int
        Number of global singular modes kept.
    """

    REJECTED_POWER: ClassVar[float] = REJECTED_POWER

    power: np.ndarray
    rejected: np.ndarray
    leakage_db: np.ndarray
    n_modes: np.ndarray
    cut_index: int

    @property
    def n_voxels(self) -> int:
        return self.power.shape[2]

    @property
    def accepted(self) -> np.ndarray:
        return ~self.rejected


def cut_index(singular_values: np.ndarray, cutoff: float) -> int:
    """
    Number of global modes with S > S[0] * cutoff.

    Parameters
    ----------
    singular_values : np.ndarray
        Global singular values, descending.
    cutoff : float
        Fraction of the leading singular value, in [0, 1).

    Returns
    -------
    int
        Truncation index; non-decreasing as ``cutoff`` decreases and equal
        to the full length at ``cutoff=0`` when every value is positive.

    Examples
    --------
    >>> cut_index(np.array([4.0, 2.0, 1.0, 0.5]), 0.3)
    2
    >>> cut_index(np.array([4.0, 2.0, 1.0, 0.5]), 0.0)
    4
    """
    singular_values = np.asarray(singular_values, dtype=np.float64)
    if singular_values.size == 0:
        return 0
    above = singular_values > singular_values[0] * cutoff
    # Leading run only: S is descending so this equals the count
    if np.all(above):
        return int(singular_values.size)
    return int(np.argmin(above))


def whitened_basis(u: np.ndarray, singular_values: np.ndarray, cut: int) -> np.ndarray:
    """U[:, :cut] @ diag(1 / S[:cut]), shape (n_channels, cut)."""
    return u[:, :cut] / singular_values[:cut][np.newaxis, :]


def leakage_db(leading_eigenvalue: float) -> float:
    """Energy leaking out of the ROI, 10*log10(1 - lambda_0), in dB."""
    with np.errstate(divide="ignore"):
        return float(10.0 * np.log10(max(1.0 - leading_eigenvalue, 0.0)))


def voxel_power(
    data: np.ndarray,
    cut_us: np.ndarray,
    record: VoxelRecord,
    threshold: float,
) -> tuple[np.ndarray, int]:
    """
    Eigenvalue-weighted multi-taper power for one accepted voxel.

    Parameters
    ----------
    data : np.ndarray
        Fourier tensor, shape (n_channels, n_tapers, n_frequencies, n_times).
    cut_us : np.ndarray
        Whitened global basis from ``whitened_basis``, shape (n_channels, cut).
    record : VoxelRecord
        The voxel's concentration record.
    threshold : float
        Minimum eigenvalue of a retained local mode.

    Returns
    -------
    power : np.ndarray
        Shape (n_frequencies, n_times), non-negative.
    m_star : int
        Number of local modes used.
    """
    eigenvalues = record.eigenvalues
    m_star = int(np.count_nonzero(eigenvalues >= threshold))
    cut = cut_us.shape[1]
    if record.vp.shape[0] < cut:
        raise ConsistencyError(
            f"Voxel {record.voxel_index}: Vp has {record.vp.shape[0]} rows, "
            f"need at least cut index {cut}"
        )

    conc_vectors = cut_us @ record.vp[:cut, :m_star]  # (n_channels, m*)
    c_v = conc_vectors.conj().T  # (m*, n_channels)

    n_tapers = data.shape[1]
    # (m*, n_tapers, n_frequencies, n_times)
    tapered_modes = np.tensordot(c_v, data, axes=([1], [0]))
    weighted = np.einsum(
        "m,mkft->ft", eigenvalues[:m_star], np.abs(tapered_modes) ** 2
    )
    return weighted / n_tapers, m_star


def localize_power(
    data: np.ndarray,
    concentration_file: str | Path | BinaryIO,
    cutoff: float,
    threshold: float,
) -> PowerMap:
    """
    Localize multi-taper sensor power into every voxel of a concentration file.

    Parameters
    ----------
    data : np.ndarray
        Complex Fourier tensor with shape (channels, tapers, frequency) or
        (channels, tapers, frequency, time).
    concentration_file : str, Path or binary file object
        Output of ``dd_concentration``.
    cutoff : float
        Fraction of the leading global singular value defining the rank
        truncation, in [0, 1).
    threshold : float
        Minimum leading concentration eigenvalue to accept a voxel, in [0, 1].

    Returns
    -------
    PowerMap
        Power with shape (frequency, time, voxels) plus rejection diagnostics.

    Raises
    ------
    ConfigurationError
        If ``cutoff`` or ``threshold`` is out of range.
    DataFormatError
        If ``data`` is not complex or not of rank 3 or 4.
    ConsistencyError
        If the file's channel count differs from ``data`` or its records
        are not in descending voxel order, or bytes follow the last record.
    ConcentrationIOError
        If the file cannot be opened, read or closed, or is truncated.
    """
    validate_truncation(cutoff, threshold)
    data = validate_fourier_data(data)
    n_channels, n_tapers, n_frequencies, n_times = data.shape

    with ConcentrationReader(concentration_file) as reader:
        header = reader.read_header()
        if header.n_channels != n_channels:
            raise ConsistencyError(
                f"Channel count mismatch: concentration file {reader.name} has "
                f"{header.n_channels} channels, Fourier data has {n_channels}"
            )

        cut = cut_index(header.singular_values, cutoff)
        cut_us = whitened_basis(header.u, header.singular_values, cut)
        logger.info(
            "Localizing %d tapers x %d frequencies x %d times into %d voxels "
            "(cut index %d of %d)",
            n_tapers,
            n_frequencies,
            n_times,
            header.n_voxels,
            cut,
            header.n_channels,
        )

        power = np.empty((n_frequencies, n_times, header.n_voxels), dtype=np.float64)
        rejected = np.zeros(header.n_voxels, dtype=bool)
        leakage = np.full(header.n_voxels, np.nan)
        n_modes = np.zeros(header.n_voxels, dtype=np.int64)

        for expected_index in range(header.n_voxels, 0, -1):
            record = reader.read_record()
            if record.voxel_index != expected_index:
                raise ConsistencyError(
                    f"Out-of-order record in {reader.name}: expected voxel "
                    f"{expected_index}, got {record.voxel_index}"
                )
            slot = expected_index - 1

            leading = record.leading_eigenvalue
            if record.eigenvalues.size and leading >= threshold:
                power[:, :, slot], n_modes[slot] = voxel_power(
                    data, cut_us, record, threshold
                )
            else:
                power[:, :, slot] = REJECTED_POWER
                rejected[slot] = True
                leakage[slot] = leakage_db(leading)
                logger.warning(
                    "Voxel %d rejected: leading eigenvalue %.6f < %.6f, "
                    "leakage %.2f dB",
                    expected_index,
                    leading,
                    threshold,
                    leakage[slot],
                )
        reader.expect_end()

    logger.info(
        "Localized %d voxels, rejected %d",
        header.n_voxels - int(rejected.sum()),
        int(rejected.sum()),
    )
    return PowerMap(
        power=power,
        rejected=rejected,
        leakage_db=leakage,
        n_modes=n_modes,
        cut_index=cut,
    )


def localize_power_from_config(data: np.ndarray, config: LocalizationConfig) -> PowerMap:
    """Run ``localize_power`` with the file location and parameters of ``config``."""
    config.require_localizer()
    return localize_power(
        data,
        config.output_path,
        cutoff=config.cutoff,
        threshold=config.threshold,
    )
