"""
Geometry Module

Voxel grid spacing, source volume and ROI neighbour search.
"""

from .voxels import (
    roi_radius,
    source_volume,
    voxel_columns,
    voxel_neighbours,
    voxel_spacing,
)

__all__ = [
    "roi_radius",
    "source_volume",
    "voxel_columns",
    "voxel_neighbours",
    "voxel_spacing",
]
