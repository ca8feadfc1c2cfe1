"""
Concentration File I/O - Streaming Binary Records

The concentration file is an append-only sequence of fixed-width fields
followed by length-prefixed arrays. There is no magic number, version
field or resynchronisation marker, so readers must consume records in the
exact order the solver wrote them (descending voxel index).

Layout (little-endian; u32 counts/indices, f64 reals, 2-D arrays stored
column-major after a u32[2] shape):

    u32 voxelCount
    f64 roiVolume
    u32 channelCount
    f64[channelCount] singularValues
    u32[2] U_shape, f64[...] U
    voxelCount times, voxel index descending:
        u32 voxelIndex
        u32 n, u32[n] roiColumns
        u32 n, u32[n] roiVoxelIndices
        u32 n, f64[n] eigenvalues
        u32[2] Vp_shape, f64[...] Vp

Usage:
    from ddcev.concentration.record_io import ConcentrationReader

    with ConcentrationReader(path) as reader:
        header = reader.read_header()
        for record in reader.iter_records():
            ...
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Generator

import numpy as np

from ddcev.constants import FLOAT_DTYPE, INDEX_DTYPE
from ddcev.errors import ConcentrationIOError, ConsistencyError

logger = logging.getLogger(__name__)


@dataclass
class ConcentrationHeader:
    """
    Global part of a concentration file.

    Attributes
    ----------
    n_voxels : int
        Number of voxel records that follow.
    roi_volume : float
        ROI volume the records were solved for.
    n_channels : int
        Sensor count of the kernel.
    singular_values : np.ndarray
        Global singular values, shape (n_channels,), descending.
    u : np.ndarray
        Sensor-side global singular vectors, shape (n_channels, n_channels).
    """

    n_voxels: int
    roi_volume: float
    n_channels: int
    singular_values: np.ndarray
    u: np.ndarray


@dataclass
class VoxelRecord:
    """
    Local concentration solution for one voxel.

    Attributes
    ----------
    voxel_index : int
        1-based voxel identity.
    roi_columns : np.ndarray
        1-based kernel columns of the ROI, uint32.
    roi_voxels : np.ndarray
        1-based voxel indices of the ROI, uint32.
    eigenvalues : np.ndarray
        Concentration ratios, descending, within [0, 1].
    vp : np.ndarray
        Local right singular vectors, shape (n_channels, n_eigenvalues).
        Rows are indexed by global mode.
    """

    voxel_index: int
    roi_columns: np.ndarray
    roi_voxels: np.ndarray
    eigenvalues: np.ndarray
    vp: np.ndarray

    @property
    def leading_eigenvalue(self) -> float:
        """Largest concentration ratio, 0.0 for an empty record."""
        return float(self.eigenvalues[0]) if self.eigenvalues.size else 0.0


class _RecordFile:
    """Shared open/close handling for the reader and writer."""

    _mode = "rb"

    def __init__(self, target: str | Path | BinaryIO) -> None:
        if isinstance(target, (str, Path)):
            self.path: Path | None = Path(target)
            try:
                self._file: BinaryIO = open(self.path, self._mode)
            except OSError as e:
                raise ConcentrationIOError(
                    f"Cannot open concentration file {self.path} ({self._mode}): {e}"
                ) from e
            self._owns_file = True
        else:
            self.path = None
            self._file = target
            self._owns_file = False

    @property
    def name(self) -> str:
        return str(self.path) if self.path is not None else "<stream>"

    @property
    def closed(self) -> bool:
        return self._file.closed

    def close(self) -> None:
        """Close the underlying file if this object opened it."""
        if not self._owns_file or self._file.closed:
            return
        try:
            self._file.close()
        except OSError as e:
            raise ConcentrationIOError(
                f"Closing concentration file {self.name} failed: {e}"
            ) from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ConcentrationWriter(_RecordFile):
    """
    Sequential writer for concentration files.

    Parameters
    ----------
    target : str, Path or binary file object
        Output path (opened and owned by the writer) or an open binary
        stream (left open on close).
    """

    _mode = "wb"

    def __init__(self, target: str | Path | BinaryIO) -> None:
        super().__init__(target)
        self._n_channels: int | None = None

    def _write(self, payload: bytes) -> None:
        try:
            self._file.write(payload)
        except OSError as e:
            raise ConcentrationIOError(
                f"Writing to concentration file {self.name} failed: {e}"
            ) from e

    def _write_indices(self, values) -> None:
        values = np.asarray(values)
        if values.size and (np.min(values) < 0 or np.max(values) > np.iinfo(np.uint32).max):
            raise ConsistencyError(
                f"Index values must fit in u32, got range "
                f"[{np.min(values)}, {np.max(values)}]"
            )
        self._write(values.astype(INDEX_DTYPE).tobytes())

    def _write_floats(self, values) -> None:
        self._write(np.asarray(values, dtype=FLOAT_DTYPE).tobytes(order="F"))

    def _write_matrix(self, matrix: np.ndarray) -> None:
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise ConsistencyError(f"Expected a 2-D matrix, got shape {matrix.shape}")
        self._write_indices(matrix.shape)
        self._write_floats(matrix)

    def write_header(self, header: ConcentrationHeader) -> None:
        """Write the global header. Must be called once, before any record."""
        singular_values = np.asarray(header.singular_values, dtype=np.float64).ravel()
        if singular_values.size != header.n_channels:
            raise ConsistencyError(
                f"singular_values has {singular_values.size} entries, "
                f"expected n_channels={header.n_channels}"
            )
        u = np.asarray(header.u, dtype=np.float64)
        if u.ndim != 2 or u.shape[0] != header.n_channels:
            raise ConsistencyError(
                f"u must have {header.n_channels} rows, got shape {u.shape}"
            )

        self._write_indices([header.n_voxels])
        self._write_floats([header.roi_volume])
        self._write_indices([header.n_channels])
        self._write_floats(singular_values)
        self._write_matrix(u)
        self._n_channels = header.n_channels

    def write_record(self, record: VoxelRecord) -> None:
        """Append one voxel record after the header."""
        if self._n_channels is None:
            raise ConsistencyError("write_header must be called before write_record")
        eigenvalues = np.asarray(record.eigenvalues, dtype=np.float64).ravel()
        vp = np.asarray(record.vp, dtype=np.float64)
        if vp.ndim != 2 or vp.shape[1] != eigenvalues.size:
            raise ConsistencyError(
                f"Voxel {record.voxel_index}: Vp shape {vp.shape} does not pair "
                f"with {eigenvalues.size} eigenvalues"
            )

        roi_columns = np.asarray(record.roi_columns).ravel()
        roi_voxels = np.asarray(record.roi_voxels).ravel()
        self._write_indices([record.voxel_index])
        self._write_indices([roi_columns.size])
        self._write_indices(roi_columns)
        self._write_indices([roi_voxels.size])
        self._write_indices(roi_voxels)
        self._write_indices([eigenvalues.size])
        self._write_floats(eigenvalues)
        self._write_matrix(vp)


class ConcentrationReader(_RecordFile):
    """
    Sequential reader for concentration files.

    Records are read in file order. ``build_index`` scans the file once to
    map voxel indices to byte offsets for random access.

    Parameters
    ----------
    target : str, Path or binary file object
        Input path (opened and owned by the reader) or an open, seekable
        binary stream positioned at the start of the header.
    """

    _mode = "rb"

    def __init__(self, target: str | Path | BinaryIO) -> None:
        super().__init__(target)
        self.header: ConcentrationHeader | None = None
        self._records_start: int | None = None
        self._records_read = 0
        self._index: dict[int, int] | None = None

    def _remaining_bytes(self) -> int:
        """Bytes between the current position and the end of the file."""
        try:
            position = self._file.tell()
            end = self._file.seek(0, io.SEEK_END)
            self._file.seek(position)
        except OSError as e:
            raise ConcentrationIOError(
                f"Cannot determine size of concentration file {self.name}: {e}"
            ) from e
        return end - position

    def _read(self, n_bytes: int, what: str) -> bytes:
        # Counts come from disk; bound them before allocating
        remaining = self._remaining_bytes()
        if n_bytes > remaining:
            raise ConcentrationIOError(
                f"Truncated or corrupt concentration file {self.name}: {what} "
                f"declares {n_bytes} bytes, {remaining} remain"
            )
        try:
            payload = self._file.read(n_bytes)
        except OSError as e:
            raise ConcentrationIOError(
                f"Reading {what} from {self.name} failed: {e}"
            ) from e
        if len(payload) != n_bytes:
            raise ConcentrationIOError(
                f"Truncated concentration file {self.name}: expected {n_bytes} "
                f"bytes for {what}, got {len(payload)}"
            )
        return payload

    def _read_indices(self, count: int, what: str) -> np.ndarray:
        payload = self._read(count * INDEX_DTYPE.itemsize, what)
        return np.frombuffer(payload, dtype=INDEX_DTYPE).astype(np.uint32)

    def _read_floats(self, count: int, what: str) -> np.ndarray:
        payload = self._read(count * FLOAT_DTYPE.itemsize, what)
        return np.frombuffer(payload, dtype=FLOAT_DTYPE).astype(np.float64)

    def _read_count(self, what: str) -> int:
        return int(self._read_indices(1, what)[0])

    def _read_matrix(self, what: str) -> np.ndarray:
        rows, cols = (int(n) for n in self._read_indices(2, f"{what} shape"))
        values = self._read_floats(rows * cols, what)
        return values.reshape((rows, cols), order="F")

    def read_header(self) -> ConcentrationHeader:
        """Read the global header. Must be the first call on a fresh reader."""
        n_voxels = self._read_count("voxel count")
        roi_volume = float(self._read_floats(1, "ROI volume")[0])
        n_channels = self._read_count("channel count")
        singular_values = self._read_floats(n_channels, "singular values")
        u = self._read_matrix("U")
        if u.shape[0] != n_channels:
            raise ConsistencyError(
                f"U has {u.shape[0]} rows in {self.name}, "
                f"header channel count is {n_channels}"
            )

        self.header = ConcentrationHeader(
            n_voxels=n_voxels,
            roi_volume=roi_volume,
            n_channels=n_channels,
            singular_values=singular_values,
            u=u,
        )
        self._records_start = self._file.tell()
        self._records_read = 0
        logger.debug(
            "Read header of %s: %d voxels, %d channels, ROI volume %g",
            self.name,
            n_voxels,
            n_channels,
            roi_volume,
        )
        return self.header

    def read_record(self) -> VoxelRecord:
        """Read the next voxel record in file order."""
        if self.header is None:
            raise ConsistencyError("read_header must be called before read_record")
        if self._records_read >= self.header.n_voxels:
            raise ConsistencyError(
                f"All {self.header.n_voxels} records of {self.name} already read"
            )

        voxel_index = self._read_count("voxel index")
        what = f"voxel {voxel_index}"
        roi_columns = self._read_indices(self._read_count(f"{what} column count"), f"{what} columns")
        roi_voxels = self._read_indices(self._read_count(f"{what} ROI size"), f"{what} ROI voxels")
        eigenvalues = self._read_floats(
            self._read_count(f"{what} eigenvalue count"), f"{what} eigenvalues"
        )
        vp = self._read_matrix(f"{what} Vp")
        if vp.shape[1] != eigenvalues.size:
            raise ConsistencyError(
                f"{what}: Vp shape {vp.shape} does not pair with "
                f"{eigenvalues.size} eigenvalues"
            )

        self._records_read += 1
        return VoxelRecord(
            voxel_index=voxel_index,
            roi_columns=roi_columns,
            roi_voxels=roi_voxels,
            eigenvalues=eigenvalues,
            vp=vp,
        )

    def iter_records(self) -> Generator[VoxelRecord, None, None]:
        """Yield the remaining records in file order."""
        if self.header is None:
            self.read_header()
        while self._records_read < self.header.n_voxels:
            yield self.read_record()

    def expect_end(self) -> None:
        """
        Check that the last declared record ends the file.

        Raises
        ------
        ConsistencyError
            If bytes follow the last record the header declares.
        """
        remaining = self._remaining_bytes()
        if remaining:
            raise ConsistencyError(
                f"Concentration file {self.name} has {remaining} trailing bytes "
                f"after the {self.header.n_voxels} records its header declares"
            )

    def build_index(self) -> dict[int, int]:
        """
        Map each voxel index to the byte offset of its record.

        Scans every record once and rewinds to where sequential reading
        left off.
        """
        if self.header is None:
            self.read_header()
        if self._index is not None:
            return self._index

        resume_at = self._file.tell()
        resume_count = self._records_read
        self._file.seek(self._records_start)
        self._records_read = 0

        index: dict[int, int] = {}
        for _ in range(self.header.n_voxels):
            offset = self._file.tell()
            record = self.read_record()
            if record.voxel_index in index:
                raise ConsistencyError(
                    f"Voxel {record.voxel_index} appears twice in {self.name}"
                )
            index[record.voxel_index] = offset

        self._file.seek(resume_at)
        self._records_read = resume_count
        self._index = index
        return index

    def read_record_at(self, voxel_index: int) -> VoxelRecord:
        """Random-access read of one voxel's record via ``build_index``."""
        index = self.build_index()
        if voxel_index not in index:
            raise ConsistencyError(
                f"Voxel {voxel_index} has no record in {self.name}"
            )

        resume_at = self._file.tell()
        resume_count = self._records_read
        self._file.seek(index[voxel_index])
        self._records_read = 0
        try:
            return self.read_record()
        finally:
            self._file.seek(resume_at)
            self._records_read = resume_count


def read_concentration_file(
    path: str | Path | BinaryIO,
) -> tuple[ConcentrationHeader, list[VoxelRecord]]:
    """
    Load a whole concentration file into memory.

    Intended for inspection and tests; the localizer streams instead.
    """
    with ConcentrationReader(path) as reader:
        header = reader.read_header()
        records = list(reader.iter_records())
        reader.expect_end()
    return header, records
