"""Reassemble an upload's stored parts into one lazily-read byte stream."""
import logging
import re
from typing import AsyncIterator, Optional

from csv_worker.errors import ErrorKind, StorageError
from csv_worker.services.retry import RetryPolicy, with_retry
from csv_worker.services.storage import ChunkDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PIECE_SIZE = 64 * 1024


async def list_upload_chunks(storage, upload_id: str, filename: str) -> list[ChunkDescriptor]:
    """
    List an upload's parts sorted by their numeric part index.

    Only names of the form ``<filename>.part<N>`` count; other objects under
    the upload prefix are ignored.

    Raises:
        StorageError: no parts at all, or the index sequence has gaps
    """
    pattern = re.compile(rf"{re.escape(filename)}\.part\d+")
    listed = await storage.list_parts(upload_id)
    chunks = sorted(
        (chunk for chunk in listed if pattern.fullmatch(chunk.name)),
        key=lambda chunk: chunk.index,
    )
    if not chunks:
        raise StorageError(
            f"No chunks found for upload {upload_id}",
            kind=ErrorKind.TERMINAL,
            upload_id=upload_id,
        )

    indexes = [chunk.index for chunk in chunks]
    if indexes != list(range(len(chunks))):
        raise StorageError(
            f"Incomplete chunk sequence for upload {upload_id}: {indexes}",
            kind=ErrorKind.TERMINAL,
            upload_id=upload_id,
        )
    return chunks


class ChunkStreamReader:
    """
    Pull-based byte stream over an upload's parts.

    A part is fetched only when the consumer asks for bytes past the end of
    the previous one, and each fetched part is handed out in pieces of at
    most ``piece_size`` bytes. Iterating twice lists and fetches again.
    """

    def __init__(
        self,
        storage,
        upload_id: str,
        filename: str,
        piece_size: int = DEFAULT_PIECE_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=None,
    ):
        self.storage = storage
        self.upload_id = upload_id
        self.filename = filename
        self.piece_size = piece_size
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1)
        self._sleep = sleep
        self.chunks: list[ChunkDescriptor] = []
        self.chunks_fetched = 0
        self.bytes_read = 0

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._stream()

    async def _stream(self) -> AsyncIterator[bytes]:
        self.chunks = await with_retry(
            lambda: list_upload_chunks(self.storage, self.upload_id, self.filename),
            f"List chunks for upload {self.upload_id}",
            self.retry_policy,
            sleep=self._sleep,
        )
        logger.info(f"📥 Streaming {len(self.chunks)} chunks for upload {self.upload_id}")

        for position, chunk in enumerate(self.chunks, start=1):
            logger.debug(f"📄 Fetching chunk {position}/{len(self.chunks)}: {chunk.path}")
            data = await with_retry(
                lambda path=chunk.path: self.storage.fetch_part(path),
                f"Download chunk {chunk.path}",
                self.retry_policy,
                sleep=self._sleep,
            )
            if data is None:
                raise StorageError(
                    f"No data received for chunk {chunk.path}",
                    kind=ErrorKind.TERMINAL,
                    upload_id=self.upload_id,
                )
            self.chunks_fetched += 1

            view = memoryview(data)
            for start in range(0, len(view), self.piece_size):
                piece = bytes(view[start:start + self.piece_size])
                self.bytes_read += len(piece)
                yield piece

        logger.info(
            f"✅ Streamed {self.chunks_fetched} chunks ({self.bytes_read} bytes) "
            f"for upload {self.upload_id}"
        )


async def cleanup_upload_chunks(storage, upload_id: str) -> int:
    """
    Delete every stored object under the upload's prefix.

    Best effort: failures are logged and reported as zero deletions.
    """
    try:
        parts = await storage.list_parts(upload_id)
        paths = [part.path for part in parts]
        if not paths:
            return 0
        logger.info(f"🧹 Cleaning up {len(paths)} chunks for upload {upload_id}")
        await storage.delete_parts(paths)
    except Exception as e:
        logger.warning(f"⚠️ Failed to clean up chunks for upload {upload_id}: {e}")
        return 0

    logger.info(f"✅ Cleaned up chunks for upload {upload_id}")
    return len(paths)
