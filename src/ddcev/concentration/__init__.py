"""
Concentration Module

The concentration solver, the power localizer and the binary record
format that connects them.
"""

from .record_io import (
    ConcentrationHeader,
    ConcentrationReader,
    ConcentrationWriter,
    VoxelRecord,
    read_concentration_file,
)
from .solver import (
    ConcentrationResult,
    dd_concentration,
    global_basis,
    local_concentration,
)
from .localizer import (
    PowerMap,
    cut_index,
    localize_power,
    localize_power_from_config,
)

__all__ = [
    "ConcentrationHeader",
    "ConcentrationReader",
    "ConcentrationWriter",
    "VoxelRecord",
    "read_concentration_file",
    "ConcentrationResult",
    "dd_concentration",
    "global_basis",
    "local_concentration",
    "PowerMap",
    "cut_index",
    "localize_power",
    "localize_power_from_config",
]
