"""
Concentration Solver - Discrete-Discrete Concentration Eigenproblem

Precomputes, for every voxel, the orthonormal basis of source patterns in
the span of the forward kernel that concentrates the most energy inside
the voxel's ROI.

Mathematical Foundation
-----------------------
With the economy SVD of the transposed kernel

    K^T = B @ diag(S) @ A^T

the rows of K span exactly the source patterns b = B @ c with c a unit
vector in mode space. The fraction of such a pattern's energy that lies in
the ROI columns R is

    ||B[R] @ c||^2

so the SVD B[R] = Up @ diag(E) @ Vp^T gives the concentration eigenvalues
E**2 (in [0, 1] because B has orthonormal columns) and the corresponding
mode-space eigenvectors Vp.

Only S and A are persisted globally; B is consumed voxel by voxel and
discarded. Records are written from the last voxel down to the first.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np
from scipy import linalg
from scipy.spatial import cKDTree

from ddcev.config import LocalizationConfig
from ddcev.constants import (
    DIPOLE_COMPONENTS,
    EIGENVALUE_ATOL,
    ORTHONORMALITY_ATOL,
)
from ddcev.concentration.record_io import (
    ConcentrationHeader,
    ConcentrationWriter,
    VoxelRecord,
)
from ddcev.errors import ConcentrationIOError, ConsistencyError
from ddcev.geometry.voxels import source_volume, voxel_neighbours, voxel_spacing
from ddcev.validation.input_validators import validate_centroids, validate_kernel

logger = logging.getLogger(__name__)

NeighbourSearch = Callable[..., tuple[np.ndarray, np.ndarray]]


@dataclass
class ConcentrationResult:
    """Summary of a finished concentration solve."""

    path: Path
    n_voxels: int
    n_channels: int
    roi_volume: float
    spacing: float
    source_volume: float
    singular_values: np.ndarray


def global_basis(kernel: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Economy SVD of the transposed kernel.

    Parameters
    ----------
    kernel : np.ndarray
        Forward kernel, shape (n_channels, 3 * n_voxels).

    Returns
    -------
    source_basis : np.ndarray
        B, shape (3 * n_voxels, k) with orthonormal columns.
    singular_values : np.ndarray
        S, shape (k,), descending.
    sensor_basis : np.ndarray
        A, shape (n_channels, k).

    Notes
    -----
    k = min(n_channels, 3 * n_voxels). The transpose keeps the dense factor
    small since channels are far fewer than kernel columns.
    """
    source_basis, singular_values, sensor_basis_t = linalg.svd(
        kernel.T, full_matrices=False
    )
    return source_basis, singular_values, sensor_basis_t.T


def local_concentration(
    source_basis: np.ndarray,
    roi_columns: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Solve the concentration eigenproblem restricted to one ROI.

    Parameters
    ----------
    source_basis : np.ndarray
        Global source-side singular vectors B, shape (3 * n_voxels, k).
    roi_columns : np.ndarray
        1-based kernel columns of the ROI.

    Returns
    -------
    eigenvalues : np.ndarray
        Squared local singular values, descending, shape (r,) with
        r = min(len(roi_columns), k).
    vp : np.ndarray
        Mode-space eigenvectors, shape (k, r), orthonormal columns.
    """
    rows = np.asarray(roi_columns, dtype=np.int64) - 1
    _, local_singular, vp_t = linalg.svd(source_basis[rows, :], full_matrices=False)
    return local_singular**2, vp_t.T


def check_record(record: VoxelRecord) -> None:
    """
    Verify a record's numerical invariants.

    Raises
    ------
    ConsistencyError
        If Vp is not orthonormal, or the eigenvalues are not descending or
        fall outside [0, 1].
    """
    vp = record.vp
    gram = vp.T @ vp
    if not np.allclose(gram, np.eye(vp.shape[1]), atol=ORTHONORMALITY_ATOL):
        deviation = float(np.max(np.abs(gram - np.eye(vp.shape[1]))))
        raise ConsistencyError(
            f"Voxel {record.voxel_index}: Vp is not orthonormal "
            f"(max deviation {deviation:.3e})"
        )
    eigenvalues = record.eigenvalues
    if np.any(np.diff(eigenvalues) > EIGENVALUE_ATOL):
        raise ConsistencyError(
            f"Voxel {record.voxel_index}: eigenvalues are not descending"
        )
    if eigenvalues.size and (
        eigenvalues.min() < -EIGENVALUE_ATOL or eigenvalues.max() > 1.0 + EIGENVALUE_ATOL
    ):
        raise ConsistencyError(
            f"Voxel {record.voxel_index}: eigenvalues span "
            f"[{eigenvalues.min():.6g}, {eigenvalues.max():.6g}], expected [0, 1]"
        )


def dd_concentration(
    kernel: np.ndarray,
    centroids: np.ndarray,
    config: LocalizationConfig,
    n_channels: int | None = None,
    neighbours: NeighbourSearch | None = None,
) -> ConcentrationResult:
    """
    Solve the per-voxel concentration problem and write the concentration file.

    Parameters
    ----------
    kernel : np.ndarray
        Forward kernel with shape (n_channels, 3 * n_voxels).
    centroids : np.ndarray
        Voxel centroids with shape (n_voxels, 3).
    config : LocalizationConfig
        Needs ``roi_volume`` and ``filename``; ``directory`` and ``debug``
        are optional.
    n_channels : int, optional
        Channel count expected downstream; checked against the kernel.
    neighbours : callable, optional
        ROI search with the signature of ``voxel_neighbours``. Defaults to
        ``voxel_neighbours`` sharing the KD-tree built for the spacing.

    Returns
    -------
    ConcentrationResult
        Location and global parameters of the written file.

    Raises
    ------
    ConfigurationError
        If ``roi_volume`` or ``filename`` is missing.
    DataFormatError
        If kernel and centroid shapes disagree.
    ConsistencyError
        If ``n_channels`` disagrees with the kernel, or a debug check fails.
    ConcentrationIOError
        If the file cannot be written or closed. The partial file is removed.
    """
    config.require_solver()
    centroids = validate_centroids(centroids)
    n_voxels = centroids.shape[0]
    kernel = validate_kernel(kernel, n_voxels=n_voxels)
    if n_channels is not None and kernel.shape[0] != n_channels:
        raise ConsistencyError(
            f"kernel has {kernel.shape[0]} rows, expected n_channels={n_channels}"
        )
    n_channels = kernel.shape[0]
    roi_volume = float(config.roi_volume)
    output_path = config.output_path

    source_basis, singular_values, sensor_basis = global_basis(kernel)
    if singular_values.size < n_channels:
        raise ConsistencyError(
            f"kernel has {n_channels} channels but only "
            f"{DIPOLE_COMPONENTS * n_voxels} columns; need at least as many "
            "columns as channels"
        )
    logger.info(
        "Global SVD: %d channels x %d columns, S[0]=%.6g, S[-1]=%.6g",
        n_channels,
        kernel.shape[1],
        singular_values[0],
        singular_values[-1],
    )

    tree = cKDTree(centroids)
    spacing = voxel_spacing(centroids, tree=tree)
    total_volume = source_volume(n_voxels, spacing)
    logger.info(
        "Voxel spacing %.6g, source volume %.6g, ROI volume %.6g",
        spacing,
        total_volume,
        roi_volume,
    )
    if neighbours is None:
        neighbours = functools.partial(voxel_neighbours, tree=tree)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConcentrationIOError(
            f"Cannot create output directory {output_path.parent}: {e}"
        ) from e
    # Opening failures leave whatever is at output_path untouched
    writer = ConcentrationWriter(output_path)
    try:
        with writer:
            writer.write_header(
                ConcentrationHeader(
                    n_voxels=n_voxels,
                    roi_volume=roi_volume,
                    n_channels=n_channels,
                    singular_values=singular_values,
                    u=sensor_basis,
                )
            )
            for voxel_index in range(n_voxels, 0, -1):
                roi_columns, roi_voxels = neighbours(
                    roi_volume, voxel_index, centroids, spacing, total_volume
                )
                eigenvalues, vp = local_concentration(source_basis, roi_columns)
                record = VoxelRecord(
                    voxel_index=voxel_index,
                    roi_columns=roi_columns,
                    roi_voxels=roi_voxels,
                    eigenvalues=eigenvalues,
                    vp=vp,
                )
                if config.debug:
                    check_record(record)
                writer.write_record(record)
                logger.debug(
                    "Voxel %d: %d ROI columns, leading eigenvalue %.6f",
                    voxel_index,
                    roi_columns.size,
                    record.leading_eigenvalue,
                )
    except Exception:
        # No resync markers: a partial file is unusable
        output_path.unlink(missing_ok=True)
        raise

    logger.info("Wrote %d voxel records to %s", n_voxels, output_path)
    return ConcentrationResult(
        path=output_path,
        n_voxels=n_voxels,
        n_channels=n_channels,
        roi_volume=roi_volume,
        spacing=spacing,
        source_volume=total_volume,
        singular_values=singular_values,
    )
