"""Object storage client for uploaded chunk parts (Supabase Storage REST API)."""
import logging
import re
from typing import Optional

import httpx
from pydantic import BaseModel

from csv_worker.config import Settings, get_settings
from csv_worker.errors import StorageError

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
PART_INDEX_RE = re.compile(r"\.part(\d+)$")


class ChunkDescriptor(BaseModel):
    """One stored part of an upload's raw file."""

    name: str
    path: str
    size: int = 0

    @property
    def index(self) -> int:
        return part_index(self.name)


def part_index(name: str) -> int:
    """Sequence index embedded in a part name (``file.csv.part12`` -> 12)."""
    match = PART_INDEX_RE.search(name)
    return int(match.group(1)) if match else 0


class SupabaseStorage:
    """
    Thin async client over the storage bucket holding chunk parts.

    Parts live under ``<upload_id>/<filename>.part<N>``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.bucket = self.settings.storage_bucket
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{self.settings.supabase_url.rstrip('/')}/storage/v1",
            headers={
                "Authorization": f"Bearer {self.settings.supabase_service_role_key}",
                "apikey": self.settings.supabase_service_role_key,
            },
            timeout=self.settings.storage_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def list_parts(self, upload_id: str) -> list[ChunkDescriptor]:
        """
        List every object stored under the upload's prefix.

        Args:
            upload_id: Upload ID (storage folder)

        Returns:
            Chunk descriptors in listing order (not yet sorted by part index)
        """
        parts: list[ChunkDescriptor] = []
        offset = 0
        while True:
            response = await self._request(
                "POST",
                f"/object/list/{self.bucket}",
                json={
                    "prefix": upload_id,
                    "limit": LIST_PAGE_SIZE,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
                context=f"list chunks for upload {upload_id}",
                upload_id=upload_id,
            )
            page = response.json() or []
            for item in page:
                metadata = item.get("metadata") or {}
                parts.append(
                    ChunkDescriptor(
                        name=item["name"],
                        path=f"{upload_id}/{item['name']}",
                        size=metadata.get("size") or 0,
                    )
                )
            if len(page) < LIST_PAGE_SIZE:
                return parts
            offset += LIST_PAGE_SIZE

    async def fetch_part(self, path: str) -> bytes:
        """Download one part's bytes."""
        response = await self._request(
            "GET", f"/object/{self.bucket}/{path}", context=f"download chunk {path}"
        )
        return response.content

    async def delete_parts(self, paths: list[str]) -> None:
        """Remove parts from the bucket."""
        if not paths:
            return
        await self._request(
            "DELETE",
            f"/object/{self.bucket}",
            json={"prefixes": paths},
            context=f"delete {len(paths)} chunks",
        )

    async def check_connection(self) -> bool:
        """Return True when the configured bucket is reachable."""
        try:
            await self._request("GET", f"/bucket/{self.bucket}", context="bucket lookup")
        except StorageError as e:
            logger.error(f"❌ Storage connection test failed: {e}")
            return False
        logger.info(f"✅ Storage connection test passed (bucket={self.bucket})")
        return True

    async def _request(
        self,
        method: str,
        url: str,
        context: str,
        upload_id: Optional[str] = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to {context}: {e}", upload_id=upload_id) from e

        if response.status_code >= 400:
            raise StorageError(
                f"Failed to {context}: HTTP {response.status_code} {response.text[:200]}",
                upload_id=upload_id,
            )
        return response
