"""Tests for chunk listing, ordering and lazy streaming."""
import pytest

from csv_worker.errors import ErrorKind, StorageError
from csv_worker.services.chunk_reader import (
    ChunkStreamReader,
    cleanup_upload_chunks,
    list_upload_chunks,
)
from csv_worker.services.retry import RetryPolicy
from csv_worker.services.storage import part_index


def test_part_index():
    assert part_index("file.csv.part0") == 0
    assert part_index("file.csv.part12") == 12
    assert part_index("file.csv") == 0


@pytest.mark.asyncio
async def test_chunks_sorted_numerically(storage):
    for index in (10, 2, 0, 1, 3, 4, 5, 6, 7, 8, 9):
        storage.put("u1", f"data.csv.part{index}", f"<{index}>".encode())

    chunks = await list_upload_chunks(storage, "u1", "data.csv")

    assert [chunk.index for chunk in chunks] == list(range(11))


@pytest.mark.asyncio
async def test_unrelated_objects_ignored(storage):
    storage.put_parts("u1", "data.csv", [b"a", b"b"])
    storage.put("u1", "other.csv.part0", b"x")

    chunks = await list_upload_chunks(storage, "u1", "data.csv")

    assert [chunk.name for chunk in chunks] == ["data.csv.part0", "data.csv.part1"]


@pytest.mark.asyncio
async def test_sibling_files_sharing_prefix_ignored(storage):
    storage.put_parts("u1", "data.csv", [b"a", b"b"])
    storage.put("u1", "data.csv.orig.part0", b"x")
    storage.put("u1", "data.csv2.part0", b"y")
    storage.put("u1", "data.csv", b"z")

    chunks = await list_upload_chunks(storage, "u1", "data.csv")

    assert [chunk.name for chunk in chunks] == ["data.csv.part0", "data.csv.part1"]


@pytest.mark.asyncio
async def test_no_chunks_is_terminal(storage):
    with pytest.raises(StorageError) as exc_info:
        await list_upload_chunks(storage, "missing", "data.csv")
    assert exc_info.value.kind == ErrorKind.TERMINAL


@pytest.mark.asyncio
async def test_gap_in_sequence_rejected(storage):
    storage.put("u1", "data.csv.part0", b"a")
    storage.put("u1", "data.csv.part2", b"c")

    with pytest.raises(StorageError, match="Incomplete chunk sequence"):
        await list_upload_chunks(storage, "u1", "data.csv")


@pytest.mark.asyncio
async def test_stream_concatenates_in_order(storage):
    storage.put_parts("u1", "data.csv", [b"first,", b"second,", b"third"])
    reader = ChunkStreamReader(storage, "u1", "data.csv", piece_size=4)

    data = b"".join([piece async for piece in reader])

    assert data == b"first,second,third"
    assert reader.bytes_read == len(data)
    assert reader.chunks_fetched == 3


@pytest.mark.asyncio
async def test_parts_fetched_lazily(storage):
    storage.put_parts("u1", "data.csv", [b"aaaa", b"bbbb", b"cccc"])
    reader = ChunkStreamReader(storage, "u1", "data.csv", piece_size=2)
    stream = reader.__aiter__()

    first = await stream.__anext__()

    assert first == b"aa"
    assert storage.fetched == ["u1/data.csv.part0"]
    await stream.aclose()


@pytest.mark.asyncio
async def test_pieces_bounded_by_piece_size(storage):
    storage.put_parts("u1", "data.csv", [b"x" * 10])
    reader = ChunkStreamReader(storage, "u1", "data.csv", piece_size=4)

    sizes = [len(piece) async for piece in reader]

    assert sizes == [4, 4, 2]


@pytest.mark.asyncio
async def test_transient_fetch_failure_retried(storage, sleeps):
    storage.put_parts("u1", "data.csv", [b"ok"])
    storage.fetch_failures["u1/data.csv.part0"] = 1
    reader = ChunkStreamReader(
        storage, "u1", "data.csv", retry_policy=RetryPolicy(max_attempts=3), sleep=sleeps
    )

    data = b"".join([piece async for piece in reader])

    assert data == b"ok"
    assert sleeps.delays == [1.0]


@pytest.mark.asyncio
async def test_cleanup_removes_every_part(storage):
    storage.put_parts("u1", "data.csv", [b"a", b"b"])

    deleted = await cleanup_upload_chunks(storage, "u1")

    assert deleted == 2
    assert storage.objects["u1"] == {}


@pytest.mark.asyncio
async def test_cleanup_failure_is_not_raised(storage):
    async def broken(paths):
        raise StorageError("bucket gone")

    storage.put_parts("u1", "data.csv", [b"a"])
    storage.delete_parts = broken

    assert await cleanup_upload_chunks(storage, "u1") == 0
