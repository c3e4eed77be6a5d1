"""Original-file attachments for delivered notes.

This module provides:
- AttachmentSource: Where a job's original file can be fetched from
- find_attachment_source: Pick the source from a job, in priority order
- AttachmentFetcher: Download the original and place it in the vault

Embedding the original is best effort: every failure is logged and the
note is delivered without it.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote, urlparse

import httpx

from flowvault.client.api import GatewayError, parse_storage_url
from flowvault.client.sync.types import AttachmentError

if TYPE_CHECKING:
    from flowvault.client.api import Job
    from flowvault.client.vault import Vault

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "original"


class StorageSource(Protocol):
    """Anything that can download storage objects (the backend gateway)."""

    async def download_attachment(self, bucket: str, name: str) -> bytes: ...


@dataclass(frozen=True)
class AttachmentSource:
    """Location of a job's original file: a storage object or a URL."""

    bucket: str | None = None
    name: str | None = None
    url: str | None = None

    @property
    def filename(self) -> str:
        """Filename to store the attachment under."""
        if self.name:
            tail = self.name.rsplit("/", 1)[-1]
        elif self.url:
            tail = unquote(posixpath.basename(urlparse(self.url).path))
        else:
            tail = ""
        return tail or DEFAULT_ATTACHMENT_NAME


def find_attachment_source(job: Job) -> AttachmentSource | None:
    """Find where a job's original file lives.

    Priority: direct URL on the job, storage object in metadata, direct URL
    in metadata. Storage-shaped URLs are turned into storage objects so
    they go through the authenticated gateway.

    Args:
        job: Job to inspect.

    Returns:
        AttachmentSource, or None if the job has no original file.
    """
    meta = job.metadata or {}
    url: str | None = None
    if job.original_file_url:
        url = job.original_file_url
    else:
        original = meta.get("original_object")
        if isinstance(original, dict) and original.get("bucket") and original.get("name"):
            return AttachmentSource(bucket=str(original["bucket"]), name=str(original["name"]))
        if meta.get("original_file_url"):
            url = str(meta["original_file_url"])

    if not url:
        return None
    storage = parse_storage_url(url)
    if storage:
        bucket, name = storage
        return AttachmentSource(bucket=bucket, name=name, url=url)
    return AttachmentSource(url=url)


class AttachmentFetcher:
    """Downloads original files and writes them next to delivered notes."""

    def __init__(
        self,
        storage: StorageSource,
        vault: Vault,
        http: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the fetcher.

        Args:
            storage: Gateway used for storage objects.
            vault: Vault receiving the attachment.
            http: Client for plain URLs (created on demand if omitted).
            timeout: Timeout for plain URL downloads.
        """
        self._storage = storage
        self._vault = vault
        self._http = http
        self._owns_http = http is None
        self._timeout = timeout

    async def close(self) -> None:
        """Close the plain-URL client if this fetcher created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def download(self, source: AttachmentSource) -> bytes:
        """Fetch the bytes of an attachment.

        Raises:
            AttachmentError: If the download fails.
        """
        if source.bucket and source.name:
            logger.debug("Downloading original from storage %s/%s", source.bucket, source.name)
            try:
                return await self._storage.download_attachment(source.bucket, source.name)
            except GatewayError as e:
                raise AttachmentError(f"Storage download failed: {e}") from e

        if not source.url:
            raise AttachmentError("Attachment source has neither object nor URL")

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        logger.debug("Downloading original from %s", source.url)
        try:
            response = await self._http.get(source.url)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise AttachmentError(f"Download of {source.url} failed: {e}") from e
        return response.content

    async def store(self, job: Job, base_folder: str) -> str | None:
        """Download a job's original file into the vault.

        Args:
            job: Job whose original should be embedded.
            base_folder: Folder holding the note that will reference it.

        Returns:
            Vault path of the attachment, or None if unavailable.
        """
        source = find_attachment_source(job)
        if source is None:
            logger.debug("Job %s has no original file", job.id)
            return None
        try:
            data = await self.download(source)
            path = await self._vault.write_binary_to_attachments(
                source.filename, data, base_folder=base_folder
            )
        except (AttachmentError, ValueError, OSError) as e:
            logger.warning("Attachment for job %s skipped: %s", job.id, e)
            return None
        logger.info("Saved original of job %s to %s", job.id, path)
        return path
