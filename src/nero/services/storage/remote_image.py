"""Local image storage for generated results and reference inputs.

Files land under the uploads root and are addressed by a public path of the
form /uploads/<folder>/<epoch-ms>-<random>.<ext>, served by the static file
layer of the deployment.
"""

import asyncio
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx
import structlog

from nero.services.exceptions import MaterializationError

logger = structlog.get_logger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}
GENERIC_CONTENT_TYPES = ("application/octet-stream", "binary/octet-stream")
DEFAULT_EXTENSION = "jpg"
PUBLIC_PREFIX = "/uploads"

_NAME_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class SavedImage:
    """A stored image.

    Attributes:
        url: Public path served under /uploads
        public_id: Path relative to the uploads root (for deletion)
        file_path: Absolute path on disk
    """

    url: str
    public_id: str
    file_path: Path


def extension_for(content_type: str | None, url: str | None = None) -> str:
    """Pick a file extension from the content type, then the URL path, then default.

    Raises:
        MaterializationError: If the content type is present but not an image
    """
    if content_type:
        media_type = content_type.split(";")[0].strip().lower()
        if media_type in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[media_type]
        if not media_type.startswith("image/") and media_type not in GENERIC_CONTENT_TYPES:
            raise MaterializationError(f"Unsupported content type: {media_type}")

    if url:
        suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".").lower()
        if suffix and suffix.isalnum():
            return suffix

    return DEFAULT_EXTENSION


def unique_filename(extension: str) -> str:
    """Collision-free name: millisecond timestamp plus 8 random [a-z0-9] characters."""
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(8))
    return f"{int(time.time() * 1000)}-{suffix}.{extension}"


class RemoteImageFetcher:
    """Downloads remote images into the uploads root.

    Every call writes a new file; callers are responsible for invoking
    materialize() once per logical result.
    """

    def __init__(
        self,
        uploads_root: str | Path,
        http_client: httpx.AsyncClient,
        timeout: float = 60.0,
    ):
        """Initialize fetcher.

        Args:
            uploads_root: Directory served as /uploads
            http_client: Shared async HTTP client
            timeout: Download timeout in seconds
        """
        self.uploads_root = Path(uploads_root).resolve()
        self.http_client = http_client
        self.timeout = timeout

    async def materialize(self, remote_url: str, folder: str = "nero/generated") -> SavedImage:
        """Download remote_url and store it under folder.

        Args:
            remote_url: HTTP/HTTPS URL of the provider result
            folder: Destination folder relative to the uploads root

        Returns:
            SavedImage with the public reference

        Raises:
            MaterializationError: Network error, non-2xx response, unsupported
                content type or local write failure
        """
        try:
            response = await self.http_client.get(
                remote_url, timeout=self.timeout, follow_redirects=True
            )
        except httpx.HTTPError as e:
            raise MaterializationError(f"Download failed for {remote_url}: {e}") from e

        if not response.is_success:
            raise MaterializationError(
                f"Download failed for {remote_url}: HTTP {response.status_code}"
            )

        if not response.content:
            raise MaterializationError(f"Download failed for {remote_url}: empty body")

        extension = extension_for(response.headers.get("content-type"), remote_url)
        saved = await self._write(response.content, extension, folder)

        logger.info(
            "image.materialized",
            remote_url=remote_url,
            url=saved.url,
            size_bytes=len(response.content),
        )
        return saved

    async def save_bytes(self, data: bytes, content_type: str | None, folder: str) -> SavedImage:
        """Store raw image bytes (e.g. an uploaded reference input).

        Raises:
            MaterializationError: Unsupported content type or write failure
        """
        extension = extension_for(content_type)
        return await self._write(data, extension, folder)

    async def _write(self, data: bytes, extension: str, folder: str) -> SavedImage:
        relative_folder = self._safe_folder(folder)
        filename = unique_filename(extension)
        directory = self.uploads_root / relative_folder
        file_path = directory / filename

        def _write_file() -> None:
            directory.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(data)

        try:
            await asyncio.to_thread(_write_file)
        except OSError as e:
            raise MaterializationError(f"Could not write {file_path}: {e}") from e

        public_id = f"{relative_folder.as_posix()}/{filename}"
        return SavedImage(
            url=f"{PUBLIC_PREFIX}/{public_id}",
            public_id=public_id,
            file_path=file_path,
        )

    @staticmethod
    def _safe_folder(folder: str) -> PurePosixPath:
        """Normalize folder and refuse anything that escapes the uploads root."""
        relative = PurePosixPath(folder.replace("\\", "/").strip("/"))
        if not relative.parts or any(part in ("..", ".") for part in relative.parts):
            raise ValueError(f"Invalid upload folder: {folder!r}")
        return relative
