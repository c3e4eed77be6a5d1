"""Vault filesystem access and note naming.

This module provides:
- normalize_path: Canonical slash-separated vault-relative paths
- sanitize_filename, build_safe_note_filename: Filenames from arbitrary titles
- Vault: Async folder creation, atomic writes, attachment placement and
  conflict-free naming, all addressed by vault-relative paths

Conflict policy:
    A desired path that already exists is renamed by trying
    "<base> 1<ext>", "<base> 2<ext>", ... and taking the first free name.
    Existing files are never moved.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import re
import tempfile
import unicodedata
from pathlib import Path

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"
UNTITLED = "Untitled"
DEFAULT_NOTE_NAME_LENGTH = 120
DEFAULT_ATTACHMENTS_ROOT = "FlowVault"
DEFAULT_ATTACHMENTS_SUBDIR = "_attachments"

_ILLEGAL_CHARS_RE = re.compile(r'[/\\?<>:*|"\x00-\x1f\x80-\x9f]')
_DOTS_ONLY_RE = re.compile(r"^\.+$")
_WINDOWS_RESERVED_RE = re.compile(r"^(con|prn|aux|nul|com\d|lpt\d)(\..*)?$", re.IGNORECASE)
_TRAILING_DOTS_RE = re.compile(r"[. ]+$")


class VaultPathError(ValueError):
    """Raised when a path cannot be addressed inside the vault."""


def normalize_path(path: str) -> str:
    """Normalize a vault-relative path.

    Converts backslashes, collapses repeated separators, drops "." segments
    and leading/trailing slashes. The vault root normalizes to "".

    Args:
        path: Raw path from configuration or computation.

    Returns:
        Canonical slash-separated path.

    Raises:
        VaultPathError: If the path contains ".." segments.
    """
    text = unicodedata.normalize("NFC", path.replace("\u00a0", " ").replace("\\", "/"))
    parts: list[str] = []
    for part in text.split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            raise VaultPathError(f"Parent references not allowed: {path!r}")
        parts.append(part)
    return "/".join(parts)


def join_path(*parts: str) -> str:
    """Join vault-relative path fragments, ignoring empty ones."""
    return normalize_path("/".join(p for p in parts if p))


def parent_folder(path: str) -> str:
    """Folder containing a vault-relative path ("" for the vault root)."""
    return posixpath.dirname(normalize_path(path))


def sanitize_filename(name: str) -> str:
    """Strip characters that are illegal in filenames on common platforms.

    Args:
        name: Arbitrary title or name.

    Returns:
        Sanitized name, possibly empty.
    """
    cleaned = _ILLEGAL_CHARS_RE.sub("", name)
    cleaned = _DOTS_ONLY_RE.sub("", cleaned)
    cleaned = _WINDOWS_RESERVED_RE.sub("", cleaned)
    cleaned = _TRAILING_DOTS_RE.sub("", cleaned)
    return cleaned.strip()


def build_safe_note_filename(title: str | None, max_length: int = DEFAULT_NOTE_NAME_LENGTH) -> str:
    """Build a note filename from a title.

    Args:
        title: Title to derive the name from.
        max_length: Maximum length of the base name.

    Returns:
        Non-empty filename ending with the note extension.
    """
    base = sanitize_filename(title or UNTITLED) or UNTITLED
    if len(base) > max_length:
        base = base[:max_length].strip()
    return base if base.endswith(NOTE_EXTENSION) else f"{base}{NOTE_EXTENSION}"


def with_note_extension(path: str) -> str:
    """Append the note extension if the path lacks it."""
    return path if path.endswith(NOTE_EXTENSION) else f"{path}{NOTE_EXTENSION}"


def conflict_candidate(path: str, index: int) -> str:
    """Name of the index-th conflict alternative for a path.

    >>> conflict_candidate("Inbox/Hello.md", 2)
    'Inbox/Hello 2.md'
    """
    folder, name = posixpath.split(path)
    base, ext = posixpath.splitext(name)
    return join_path(folder, f"{base} {index}{ext}")


class Vault:
    """Async access to a local folder of notes.

    All public methods take vault-relative paths; they are normalized before
    touching the filesystem and must stay inside the vault root. Blocking
    filesystem work runs via asyncio.to_thread so every call is a suspension
    point of the event loop.
    """

    def __init__(self, root: Path, attachment_folder: str | None = None) -> None:
        """Initialize the vault.

        Args:
            root: Vault root directory.
            attachment_folder: Attachment folder preference ("" = unset,
                "." = same folder as note, "./sub" = relative to note,
                anything else = vault-root path).
        """
        self._root = Path(root).expanduser().resolve()
        self._attachment_folder = (attachment_folder or "").strip()

    @property
    def root(self) -> Path:
        """Vault root directory."""
        return self._root

    def absolute(self, path: str) -> Path:
        """Resolve a vault-relative path to an absolute path.

        Raises:
            VaultPathError: If the path escapes the vault root.
        """
        relative = normalize_path(path)
        target = (self._root / relative) if relative else self._root
        try:
            target.resolve().relative_to(self._root)
        except ValueError as e:
            raise VaultPathError(f"Path escapes vault: {path!r}") from e
        return target

    async def exists(self, path: str) -> bool:
        """Check whether a file or folder exists."""
        target = self.absolute(path)
        return await asyncio.to_thread(target.exists)

    async def ensure_folder(self, path: str) -> None:
        """Create every missing segment of a folder path.

        Idempotent: existing segments are left alone.
        """
        current = ""
        for segment in normalize_path(path).split("/"):
            if not segment:
                continue
            current = join_path(current, segment)
            target = self.absolute(current)
            if not await asyncio.to_thread(target.is_dir):
                logger.debug("Creating folder %s", current)
                await asyncio.to_thread(target.mkdir, exist_ok=True)

    async def read(self, path: str) -> str:
        """Read a note's text content."""
        target = self.absolute(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def atomic_write(self, path: str, content: str) -> None:
        """Write a note so readers only ever see old or new content.

        Existing files are replaced in place; otherwise the parent folder is
        created first.
        """
        path = normalize_path(path)
        if not path:
            raise VaultPathError("Cannot write to the vault root")
        folder = parent_folder(path)
        if folder:
            await self.ensure_folder(folder)
        await asyncio.to_thread(
            self._replace, self.absolute(path), content.encode("utf-8")
        )

    @staticmethod
    def _replace(target: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _create(target: Path, data: bytes) -> None:
        """Create a file that must not exist yet.

        The content is staged in a temporary file and hard-linked into
        place, so readers never see a partial note and an existing file is
        never replaced.

        Raises:
            FileExistsError: If ``target`` already exists.
        """
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            try:
                os.link(tmp_name, target)
            except FileExistsError:
                raise
            except OSError:
                # Filesystem without hard links
                with open(target, "xb") as f:
                    f.write(data)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    async def create_unique(self, path: str, data: bytes) -> str:
        """Create a new file at ``path`` or its first free conflict alternative.

        Creation is exclusive: a name taken by another process between the
        existence check and the write moves on to the next candidate instead
        of overwriting it.

        Returns:
            Vault-relative path that was created.
        """
        path = normalize_path(path)
        if not path:
            raise VaultPathError("Cannot write to the vault root")
        folder = parent_folder(path)
        if folder:
            await self.ensure_folder(folder)

        index = 0
        while True:
            candidate = conflict_candidate(path, index) if index else path
            index += 1
            if await self.exists(candidate):
                continue
            try:
                await asyncio.to_thread(self._create, self.absolute(candidate), data)
            except FileExistsError:
                logger.debug("%s was taken concurrently, trying next name", candidate)
                continue
            return candidate

    def attachment_folder_for(self, base_folder: str | None = None) -> str:
        """Pick the folder that receives attachments of a note.

        Priority: preference "same folder as note" -> base folder; a
        configured folder (relative to the note or vault-rooted); the base
        folder; the default attachments folder.
        """
        base = (base_folder or "").strip()
        preference = self._attachment_folder
        if preference:
            if preference in (".", "./"):
                folder = base or "."
            elif preference.startswith("./"):
                folder = join_path(base, preference[2:])
            else:
                folder = preference
        elif base:
            folder = base
        else:
            folder = join_path(DEFAULT_ATTACHMENTS_ROOT, DEFAULT_ATTACHMENTS_SUBDIR)
        return normalize_path(folder)

    async def write_binary_to_attachments(
        self,
        filename: str,
        data: bytes,
        base_folder: str | None = None,
    ) -> str:
        """Store attachment bytes under a collision-free name.

        Args:
            filename: Desired attachment filename.
            data: Attachment bytes.
            base_folder: Folder of the note that will reference the attachment.

        Returns:
            Vault-relative path the bytes were written to.
        """
        folder = self.attachment_folder_for(base_folder)
        await self.ensure_folder(folder)
        name = sanitize_filename(filename) or "original"
        target = await self.create_unique(join_path(folder, name), data)
        logger.debug("Wrote attachment %s (%d bytes)", target, len(data))
        return target
