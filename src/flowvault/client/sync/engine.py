"""Delivery engine writing jobs into the vault.

This module provides:
- DeliveryEngine: Materializes one job as a note (new file or append)
- note_title, append_heading, display_title: Title derivation helpers

Write modes:
    | Route mode  | Destination | Path returned                         |
    |-------------|-------------|---------------------------------------|
    | new file    | folder      | "<folder>/<safe title>.md", suffixed  |
    |             |             | " 1", " 2", ... when taken            |
    | append      | note file   | the configured file, never renamed    |
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import TYPE_CHECKING

from flowvault.client.sync.types import InvalidJobError, InvalidRouteError
from flowvault.client.vault import (
    NOTE_EXTENSION,
    UNTITLED,
    build_safe_note_filename,
    join_path,
    parent_folder,
    with_note_extension,
)

if TYPE_CHECKING:
    from datetime import datetime

    from flowvault.client.api import Job
    from flowvault.client.sync.attachments import AttachmentFetcher
    from flowvault.client.sync.routes import ResolvedRoute, RouteCache
    from flowvault.client.vault import Vault

logger = logging.getLogger(__name__)

_TEMPLATE_TOKEN_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_HEADING_STRIP_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


def _strip_extension(filename: str) -> str:
    base, _ = posixpath.splitext(filename)
    return base or filename


def render_title_template(template: str, created_at: datetime | None, title: str = "") -> str:
    """Render a route title template.

    Supported tokens: {{yyyy}}, {{mm}}, {{dd}}, {{HH}}, {{MM}}, {{title}}.
    Unknown tokens are left as-is; a trailing note extension is dropped.
    """
    values: dict[str, str] = {"title": title}
    if created_at is not None:
        values.update(
            yyyy=f"{created_at.year:04d}",
            mm=f"{created_at.month:02d}",
            dd=f"{created_at.day:02d}",
            HH=f"{created_at.hour:02d}",
            MM=f"{created_at.minute:02d}",
        )
    rendered = _TEMPLATE_TOKEN_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template).strip()
    if rendered.endswith(NOTE_EXTENSION):
        rendered = rendered[: -len(NOTE_EXTENSION)]
    return rendered.strip()


def note_title(job: Job, route: ResolvedRoute | None = None) -> str | None:
    """Title used to name a note.

    Fallback order: finalized title, original filename without extension,
    the route's title template.
    """
    if job.final_title:
        return job.final_title
    if job.original_filename:
        return _strip_extension(job.original_filename)
    if route is not None and route.title_template:
        return render_title_template(route.title_template, job.created_at) or None
    return None


def append_heading(job: Job, route: ResolvedRoute | None = None) -> str:
    """Markdown heading separating appended jobs."""
    title = note_title(job, route) or UNTITLED
    safe = _WHITESPACE_RE.sub(" ", _HEADING_STRIP_RE.sub("", title)).strip()
    return f"# {safe or UNTITLED}"


def display_title(job: Job, path: str) -> str:
    """Title shown for a delivered job in sync reports."""
    return job.final_title or job.original_filename or posixpath.basename(path) or UNTITLED


def attachment_embed(path: str) -> str:
    """Reference block embedding an attachment at the end of a note."""
    return f"\n\n![[{path}]]\n\n"


class DeliveryEngine:
    """Writes jobs into the vault according to their route.

    Usage:
        engine = DeliveryEngine(route_cache, vault, attachments)
        path = await engine.deliver_job(job)
    """

    def __init__(
        self,
        routes: RouteCache,
        vault: Vault,
        attachments: AttachmentFetcher,
        max_name_length: int = 120,
    ) -> None:
        """Initialize the engine.

        Args:
            routes: Route cache resolving job routes.
            vault: Destination vault.
            attachments: Fetcher for original files.
            max_name_length: Maximum length of generated note names.
        """
        self._routes = routes
        self._vault = vault
        self._attachments = attachments
        self._max_name_length = max_name_length

    async def deliver_job(self, job: Job) -> str:
        """Write one job to the vault.

        Args:
            job: Job to deliver.

        Returns:
            Vault-relative path of the written note.

        Raises:
            InvalidJobError: If the job has no route or no content.
            RouteNotFoundError: If the job's route does not exist.
            InvalidRouteError: If the route lacks required configuration.
            OSError: If the vault write fails.
        """
        if not job.route_id:
            raise InvalidJobError(f"Job {job.id} missing route_id")
        body = job.content
        if not body:
            raise InvalidJobError(f"Job {job.id} has neither formatted content nor transcribed text")

        route = await self._routes.resolve(job.route_id)
        logger.debug(
            "Route %s: destination=%r append=%s include_original=%s",
            route.id,
            route.destination,
            route.append_to_existing,
            route.include_original_file,
        )

        if route.append_to_existing:
            if not route.destination:
                raise InvalidRouteError(f"Route {route.id} appends but has no destination file")
            target = with_note_extension(route.destination)
            folder = parent_folder(target)
        else:
            target = ""
            folder = route.destination
        if folder:
            await self._vault.ensure_folder(folder)

        attachment_section = ""
        if route.include_original_file:
            attachment_path = await self._attachments.store(job, folder)
            if attachment_path:
                attachment_section = attachment_embed(attachment_path)

        if route.append_to_existing:
            content = f"{append_heading(job, route)}\n\n{body}{attachment_section}"
            return await self._append(target, content)

        content = f"{body}{attachment_section}"
        filename = build_safe_note_filename(note_title(job, route), self._max_name_length)
        path = await self._vault.create_unique(join_path(folder, filename), content.encode("utf-8"))
        logger.info("Wrote job %s to new note %s", job.id, path)
        return path

    async def _append(self, path: str, content: str) -> str:
        """Append content to a note, creating it when missing."""
        if await self._vault.exists(path):
            existing = (await self._vault.read(path)).rstrip("\n")
            combined = f"{existing}\n\n{content}" if existing else content
            await self._vault.atomic_write(path, combined)
            logger.info("Appended to existing note %s", path)
        else:
            await self._vault.atomic_write(path, content)
            logger.info("Created note %s for appending", path)
        return path
