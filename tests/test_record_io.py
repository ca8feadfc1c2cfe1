"""
Concentration File Format Tests

Validates the binary layout, exact round trips, random-access indexing
and failure modes of truncated or inconsistent files.
"""

from __future__ import annotations

import io
from pathlib import Path

import numpy as np
import pytest

from ddcev.concentration.record_io import (
    ConcentrationHeader,
    ConcentrationReader,
    ConcentrationWriter,
    VoxelRecord,
    read_concentration_file,
)
from ddcev.errors import ConcentrationIOError, ConsistencyError


def make_header(n_voxels: int = 3, n_channels: int = 4) -> ConcentrationHeader:
    np.random.seed(7)
    u, _ = np.linalg.qr(np.random.randn(n_channels, n_channels))
    return ConcentrationHeader(
        n_voxels=n_voxels,
        roi_volume=12.5,
        n_channels=n_channels,
        singular_values=np.sort(np.random.rand(n_channels))[::-1] + 0.1,
        u=u,
    )


def make_records(n_voxels: int = 3, n_channels: int = 4) -> list[VoxelRecord]:
    """Records with varying ROI sizes, in descending voxel order."""
    np.random.seed(11)
    records = []
    for voxel_index in range(n_voxels, 0, -1):
        roi_voxels = np.arange(1, voxel_index + 1, dtype=np.uint32)
        roi_columns = np.concatenate(
            [np.arange(3 * (v - 1) + 1, 3 * v + 1) for v in roi_voxels]
        ).astype(np.uint32)
        rank = min(roi_columns.size, n_channels)
        vp, _ = np.linalg.qr(np.random.randn(n_channels, rank))
        eigenvalues = np.sort(np.random.rand(rank))[::-1]
        records.append(
            VoxelRecord(
                voxel_index=voxel_index,
                roi_columns=roi_columns,
                roi_voxels=roi_voxels,
                eigenvalues=eigenvalues,
                vp=vp,
            )
        )
    return records


def write_file(target, header, records) -> None:
    with ConcentrationWriter(target) as writer:
        writer.write_header(header)
        for record in records:
            writer.write_record(record)


def expected_size(header: ConcentrationHeader, records: list[VoxelRecord]) -> int:
    size = 4 + 8 + 4 + 8 * header.n_channels + 8 + 8 * header.u.size
    for record in records:
        size += 4
        size += 4 + 4 * record.roi_columns.size
        size += 4 + 4 * record.roi_voxels.size
        size += 4 + 8 * record.eigenvalues.size
        size += 8 + 8 * record.vp.size
    return size


class TestRoundTrip:
    """Written files must read back bit for bit."""

    def test_path_round_trip_is_exact(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)

        loaded_header, loaded_records = read_concentration_file(path)

        assert loaded_header.n_voxels == header.n_voxels
        assert loaded_header.roi_volume == header.roi_volume
        assert loaded_header.n_channels == header.n_channels
        np.testing.assert_array_equal(loaded_header.singular_values, header.singular_values)
        np.testing.assert_array_equal(loaded_header.u, header.u)
        assert len(loaded_records) == len(records)
        for loaded, original in zip(loaded_records, records):
            assert loaded.voxel_index == original.voxel_index
            np.testing.assert_array_equal(loaded.roi_columns, original.roi_columns)
            np.testing.assert_array_equal(loaded.roi_voxels, original.roi_voxels)
            np.testing.assert_array_equal(loaded.eigenvalues, original.eigenvalues)
            np.testing.assert_array_equal(loaded.vp, original.vp)

    def test_stream_round_trip(self) -> None:
        header, records = make_header(), make_records()
        buffer = io.BytesIO()
        write_file(buffer, header, records)
        assert not buffer.closed
        buffer.seek(0)

        loaded_header, loaded_records = read_concentration_file(buffer)

        np.testing.assert_array_equal(loaded_header.u, header.u)
        assert [r.voxel_index for r in loaded_records] == [3, 2, 1]

    def test_non_square_vp_keeps_shape(self) -> None:
        header = make_header(n_voxels=1, n_channels=4)
        record = VoxelRecord(
            voxel_index=1,
            roi_columns=np.array([1, 2, 3], dtype=np.uint32),
            roi_voxels=np.array([1], dtype=np.uint32),
            eigenvalues=np.array([0.9, 0.5, 0.1]),
            vp=np.eye(4)[:, :3],
        )
        buffer = io.BytesIO()
        write_file(buffer, header, [record])
        buffer.seek(0)

        _, (loaded,) = read_concentration_file(buffer)

        assert loaded.vp.shape == (4, 3)
        np.testing.assert_array_equal(loaded.vp, np.eye(4)[:, :3])


class TestLayout:
    """The byte layout is fixed: little-endian, column-major, length-prefixed."""

    def test_file_size(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)

        assert path.stat().st_size == expected_size(header, records)

    def test_header_fields(self) -> None:
        header = make_header(n_voxels=3, n_channels=4)
        buffer = io.BytesIO()
        with ConcentrationWriter(buffer) as writer:
            writer.write_header(header)
        raw = buffer.getvalue()

        assert np.frombuffer(raw[0:4], dtype="<u4")[0] == 3
        assert np.frombuffer(raw[4:12], dtype="<f8")[0] == 12.5
        assert np.frombuffer(raw[12:16], dtype="<u4")[0] == 4
        np.testing.assert_array_equal(
            np.frombuffer(raw[16:48], dtype="<f8"), header.singular_values
        )
        np.testing.assert_array_equal(np.frombuffer(raw[48:56], dtype="<u4"), [4, 4])
        u_flat = np.frombuffer(raw[56:56 + 128], dtype="<f8")
        np.testing.assert_array_equal(u_flat, header.u.ravel(order="F"))


class TestRandomAccess:
    """Offset index built over the sequential format."""

    def test_build_index_and_read_at(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)

        with ConcentrationReader(path) as reader:
            reader.read_header()
            index = reader.build_index()
            assert sorted(index) == [1, 2, 3]

            record = reader.read_record_at(1)
            np.testing.assert_array_equal(record.vp, records[-1].vp)

            # Sequential reading is unaffected by random access
            assert reader.read_record().voxel_index == 3

    def test_missing_voxel(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)

        with ConcentrationReader(path) as reader:
            with pytest.raises(ConsistencyError, match="no record"):
                reader.read_record_at(9)


class TestFailures:
    """Fail fast on anything structurally wrong."""

    def test_truncated_file(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)
        path.write_bytes(path.read_bytes()[:-5])

        with pytest.raises(ConcentrationIOError, match="Truncated"):
            read_concentration_file(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConcentrationIOError, match="Cannot open"):
            ConcentrationReader(tmp_path / "absent.bin")

    def test_record_before_header(self) -> None:
        with ConcentrationWriter(io.BytesIO()) as writer:
            with pytest.raises(ConsistencyError):
                writer.write_record(make_records()[0])

    def test_vp_must_pair_with_eigenvalues(self) -> None:
        record = make_records()[0]
        record.eigenvalues = record.eigenvalues[:1]
        with ConcentrationWriter(io.BytesIO()) as writer:
            writer.write_header(make_header())
            with pytest.raises(ConsistencyError, match="does not pair"):
                writer.write_record(record)

    def test_singular_value_count_checked(self) -> None:
        header = make_header()
        header.singular_values = header.singular_values[:2]
        with ConcentrationWriter(io.BytesIO()) as writer:
            with pytest.raises(ConsistencyError, match="singular_values"):
                writer.write_header(header)

    def test_reading_past_last_record(self) -> None:
        header, records = make_header(), make_records()
        buffer = io.BytesIO()
        write_file(buffer, header, records)
        buffer.seek(0)

        reader = ConcentrationReader(buffer)
        list(reader.iter_records())
        with pytest.raises(ConsistencyError, match="already read"):
            reader.read_record()

    def test_corrupt_matrix_shape(self) -> None:
        """A U shape larger than the file is reported, not allocated."""
        payload = (
            np.array([1], dtype="<u4").tobytes()
            + np.array([12.5], dtype="<f8").tobytes()
            + np.array([1], dtype="<u4").tobytes()
            + np.array([1.0], dtype="<f8").tobytes()
            + np.array([0xFFFFFFFF, 0xFFFFFFFF], dtype="<u4").tobytes()
        )
        reader = ConcentrationReader(io.BytesIO(payload))
        with pytest.raises(ConcentrationIOError, match="corrupt"):
            reader.read_header()

    def test_corrupt_array_count(self) -> None:
        header, records = make_header(), make_records()
        buffer = io.BytesIO()
        write_file(buffer, header, records)
        raw = bytearray(buffer.getvalue())
        # First record: u32 voxel index, then the ROI column count
        count_offset = expected_size(header, []) + 4
        raw[count_offset:count_offset + 4] = np.array([0x7FFFFFFF], dtype="<u4").tobytes()

        reader = ConcentrationReader(io.BytesIO(bytes(raw)))
        reader.read_header()
        with pytest.raises(ConcentrationIOError, match="voxel 3 columns declares"):
            reader.read_record()

    def test_trailing_bytes(self, tmp_path: Path) -> None:
        header, records = make_header(), make_records()
        path = tmp_path / "conc.bin"
        write_file(path, header, records)
        with open(path, "ab") as f:
            f.write(np.array([7], dtype="<u4").tobytes())

        with pytest.raises(ConsistencyError, match="4 trailing bytes"):
            read_concentration_file(path)

    def test_expect_end_on_complete_file(self) -> None:
        header, records = make_header(), make_records()
        buffer = io.BytesIO()
        write_file(buffer, header, records)
        buffer.seek(0)

        reader = ConcentrationReader(buffer)
        reader.read_header()
        list(reader.iter_records())
        reader.expect_end()

    def test_owned_file_closed_on_error(self, tmp_path: Path) -> None:
        path = tmp_path / "conc.bin"
        path.write_bytes(b"\x01\x00")

        reader = ConcentrationReader(path)
        with pytest.raises(ConcentrationIOError):
            with reader:
                reader.read_header()
        assert reader.closed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
