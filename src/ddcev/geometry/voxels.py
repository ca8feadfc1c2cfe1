"""
Voxel Geometry - Grid Spacing and ROI Neighbour Search

The concentration solver sizes each ROI by volume rather than by voxel
count, so the grid spacing and total source volume are derived from the
centroids once and passed to the neighbour search for every voxel.

Conventions
-----------
- Voxel indices are 1-based (voxel v occupies row v - 1 of the centroids).
- Kernel columns are 1-based; voxel v owns columns 3(v-1)+1 .. 3v.
- Volumes are in the cubed units of the centroid coordinates.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.spatial import cKDTree

from ddcev.constants import DIPOLE_COMPONENTS, ROI_RADIUS_RTOL
from ddcev.errors import DataFormatError

logger = logging.getLogger(__name__)


def voxel_spacing(centroids: np.ndarray, tree: cKDTree | None = None) -> float:
    """
    Characteristic grid spacing: the minimum nearest-neighbour distance.

    Parameters
    ----------
    centroids : np.ndarray
        Voxel centroids with shape (n_voxels, 3).
    tree : cKDTree, optional
        Prebuilt tree over the centroids.

    Returns
    -------
    float
        Smallest distance between two distinct voxels. A single voxel has
        spacing 1.0.

    Raises
    ------
    DataFormatError
        If two voxels share a centroid.

    Examples
    --------
    >>> line = np.column_stack([np.arange(4.0), np.zeros(4), np.zeros(4)])
    >>> voxel_spacing(line)
    1.0
    """
    centroids = np.asarray(centroids, dtype=np.float64)
    if centroids.shape[0] < 2:
        return 1.0

    if tree is None:
        tree = cKDTree(centroids)
    # k=2: the first neighbour of each point is itself
    distances, _ = tree.query(centroids, k=2)
    spacing = float(np.min(distances[:, 1]))
    if spacing <= 0.0:
        raise DataFormatError("centroids contain coincident voxels (zero spacing)")
    return spacing


def source_volume(n_voxels: int, spacing: float) -> float:
    """Implied source-space volume: one cube of side ``spacing`` per voxel."""
    return float(n_voxels) * spacing**3


def roi_radius(roi_volume: float) -> float:
    """Radius of the ball whose volume is ``roi_volume``."""
    return float((3.0 * roi_volume / (4.0 * np.pi)) ** (1.0 / 3.0))


def voxel_columns(voxel_indices: np.ndarray) -> np.ndarray:
    """
    Expand 1-based voxel indices to their 1-based kernel columns.

    Examples
    --------
    >>> voxel_columns(np.array([1, 3]))
    array([1, 2, 3, 7, 8, 9], dtype=uint32)
    """
    voxel_indices = np.asarray(voxel_indices, dtype=np.int64)
    offsets = np.arange(1, DIPOLE_COMPONENTS + 1)
    columns = DIPOLE_COMPONENTS * (voxel_indices[:, np.newaxis] - 1) + offsets
    return columns.ravel().astype(np.uint32)


def voxel_neighbours(
    roi_volume: float,
    voxel_index: int,
    centroids: np.ndarray,
    spacing: float,
    total_volume: float,
    tree: cKDTree | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Find the ROI around a voxel: every voxel inside a ball of ``roi_volume``.

    Parameters
    ----------
    roi_volume : float
        Target ROI volume.
    voxel_index : int
        1-based index of the centre voxel.
    centroids : np.ndarray
        Voxel centroids with shape (n_voxels, 3).
    spacing : float
        Grid spacing from ``voxel_spacing``. Only used for the debug summary.
    total_volume : float
        Source volume from ``source_volume``. When the ROI is at least this
        large every voxel is included.
    tree : cKDTree, optional
        Prebuilt tree over the centroids; saves rebuilding it per voxel.

    Returns
    -------
    roi_columns : np.ndarray
        1-based kernel columns of the ROI voxels, ascending, uint32.
    roi_voxels : np.ndarray
        1-based ROI voxel indices, ascending, uint32. Always contains
        ``voxel_index``.

    Raises
    ------
    DataFormatError
        If ``voxel_index`` is outside 1 .. n_voxels.
    """
    centroids = np.asarray(centroids, dtype=np.float64)
    n_voxels = centroids.shape[0]
    if not 1 <= voxel_index <= n_voxels:
        raise DataFormatError(
            f"voxel_index must lie in [1, {n_voxels}], got {voxel_index}"
        )

    if roi_volume >= total_volume:
        members = np.arange(n_voxels)
    else:
        if tree is None:
            tree = cKDTree(centroids)
        radius = roi_radius(roi_volume) * (1.0 + ROI_RADIUS_RTOL)
        members = np.asarray(
            tree.query_ball_point(centroids[voxel_index - 1], r=radius),
            dtype=np.int64,
        )
        if not np.any(members == voxel_index - 1):
            members = np.append(members, voxel_index - 1)
        members = np.sort(members)

    roi_voxels = (members + 1).astype(np.uint32)
    logger.debug(
        "Voxel %d: %d ROI voxels (expected ~%.1f from spacing %.4g)",
        voxel_index,
        roi_voxels.size,
        min(roi_volume, total_volume) / spacing**3,
        spacing,
    )
    return voxel_columns(roi_voxels), roi_voxels
