from __future__ import annotations

import asyncio
import errno
import locale
import logging
import mimetypes
import os
import shutil
import stat
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import aiofiles
import aiofiles.os

from ..schemas import ItemInfo
from .errors import (
    AlreadyExists,
    Conflict,
    CrossDeviceError,
    NotADirectory,
    NotAFile,
    NotFound,
    PayloadTooLarge,
    StorageIOError,
    TargetNotDirectory,
    TraversalError,
)
from .paths import PathResolver, is_within, sanitize_name, sanitize_relative_name

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024
_SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')
_TEXTUAL_TYPES = {
    'application/json',
    'application/xml',
    'application/javascript',
    'application/x-sh',
    'application/x-yaml',
}
DEFAULT_CONTENT_TYPE = 'application/octet-stream'


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    return f'{size:.1f} {_SIZE_UNITS[unit]}'


def use_host_locale() -> None:
    """Adopt the environment's collation and time format for listings.

    Python starts in the C locale, which sorts by code point and prints dates the
    US way. Falls back to C for any category the environment names but the host lacks.
    """
    for category in (locale.LC_COLLATE, locale.LC_TIME):
        try:
            locale.setlocale(category, '')
        except locale.Error as exc:
            logger.warning('Host locale unavailable (%s); using C', exc)
            locale.setlocale(category, 'C')


def sort_key(item: ItemInfo) -> tuple:
    # casefold first so ordering ignores case even under the C locale
    return (item.type != 'directory', locale.strxfrm(item.name.casefold()), item.name)


def display_name(name: str) -> str:
    """Names the OS hands back that are not valid UTF-8 carry lone surrogates; show them
    with U+FFFD so they survive JSON encoding."""
    return os.fsencode(name).decode('utf-8', 'replace')


def format_mtime(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime('%x %X')


def guess_content_type(name: str) -> str:
    content_type, _ = mimetypes.guess_type(name)
    return content_type or DEFAULT_CONTENT_TYPE


def is_previewable(content_type: str) -> bool:
    return content_type.startswith(('text/', 'image/')) or content_type in _TEXTUAL_TYPES


def _shown(rel: str) -> str:
    return display_name(rel) or '/'


@contextmanager
def _os_errors(rel: str):
    """Translate OSError raised inside the block into the service's error types."""
    try:
        yield
    except FileNotFoundError as exc:
        raise NotFound(f'Not found: {_shown(rel)}', path=rel) from exc
    except FileExistsError as exc:
        raise AlreadyExists(f'Already exists: {_shown(rel)}', path=rel) from exc
    except NotADirectoryError as exc:
        raise NotADirectory(f'Not a directory: {_shown(rel)}', path=rel) from exc
    except IsADirectoryError as exc:
        raise NotAFile(f'Not a file: {_shown(rel)}', path=rel) from exc
    except OSError as exc:
        if exc.errno == errno.EXDEV:
            raise CrossDeviceError(f'Cannot move across storage devices: {_shown(rel)}', path=rel) from exc
        raise StorageIOError(f'{exc.strerror or "I/O error"}: {_shown(rel)}', path=rel) from exc


def _occupied(path: Path) -> bool:
    return path.exists() or path.is_symlink()


def _same_entry(first: Path, second: Path) -> bool:
    # case-only renames on case-insensitive filesystems
    return second.exists() and os.path.samefile(first, second)


@dataclass(frozen=True)
class FileStream:
    path: Path
    name: str
    content_type: str
    size: int
    chunk_size: int = _MIB

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.path, 'rb') as handle:
            while chunk := await handle.read(self.chunk_size):
                yield chunk


@dataclass(frozen=True)
class Preview:
    name: str
    content_type: str
    size: int
    content: Optional[bytes] = None
    stream: Optional[FileStream] = None

    @property
    def inline(self) -> bool:
        return self.content is not None


@dataclass(frozen=True)
class UploadItem:
    name: str
    chunks: AsyncIterator[bytes]


class FileOps:
    """Every filesystem operation the NAS exposes, confined to one storage root.

    Each call resolves its path arguments through :class:`PathResolver` before touching
    the disk. Nothing is cached between calls; concurrent calls on the same entry race
    and report whatever the OS reports.

    ``delete`` is immediate and recursive: there is no trash and no undo.
    """

    def __init__(
        self,
        root: str,
        *,
        max_upload_bytes: int = 50 * _MIB,
        preview_max_bytes: int = 5 * _MIB,
        chunk_size: int = _MIB,
    ):
        self.resolver = PathResolver(root)
        self.root = self.resolver.root
        self.max_upload_bytes = max_upload_bytes
        self.preview_max_bytes = preview_max_bytes
        self.chunk_size = chunk_size

    def safe_path(self, rel: str, *segments: str) -> Path:
        return self.resolver.resolve(rel, *segments)

    def _describe(self, path: Path) -> ItemInfo:
        st = path.stat()
        is_dir = stat.S_ISDIR(st.st_mode)
        return ItemInfo(
            name='' if self.resolver.is_root(path) else display_name(path.name),
            type='directory' if is_dir else 'file',
            size=None if is_dir else format_size(st.st_size),
            modified=format_mtime(st.st_mtime),
            path=display_name(self.resolver.relative(path)),
        )

    def _refuse_root(self, path: Path, action: str) -> None:
        if self.resolver.is_root(path):
            raise TraversalError(f'Refusing to {action} the storage root')

    def list_dir(self, rel: str) -> list[ItemInfo]:
        target = self.safe_path(rel)
        shown = self.resolver.relative(target)
        items: list[ItemInfo] = []
        with _os_errors(shown):
            if not target.exists():
                raise NotFound(f'Directory not found: {_shown(shown)}', path=shown)
            if not target.is_dir():
                raise NotADirectory(f'Not a directory: {_shown(shown)}', path=shown)
            with os.scandir(target) as entries:
                for entry in entries:
                    try:
                        items.append(self._describe(Path(entry.path)))
                    except FileNotFoundError:
                        # removed mid-scan or a dangling symlink
                        logger.debug('Skipping vanished entry %s', entry.name)

        items.sort(key=sort_key)
        return items

    def stat(self, rel: str) -> ItemInfo:
        target = self.safe_path(rel)
        shown = self.resolver.relative(target)
        with _os_errors(shown):
            return self._describe(target)

    def mkdir(self, rel: str, name: str) -> ItemInfo:
        safe_name = sanitize_name(name)
        target = self.safe_path(rel, safe_name)
        shown = self.resolver.relative(target)
        with _os_errors(shown):
            if _occupied(target):
                raise AlreadyExists(f'Already exists: {shown}', path=shown)
            target.mkdir(parents=True, exist_ok=False)
            info = self._describe(target)
        logger.info('Created folder %s', shown)
        return info

    def delete(self, rel: str) -> None:
        target = self.safe_path(rel)
        self._refuse_root(target, 'delete')
        shown = self.resolver.relative(target)
        with _os_errors(shown):
            if target.is_dir() and not target.is_symlink():
                # the rename is the atomic step: a concurrent delete loses with NotFound
                tombstone = self.safe_path(self.resolver.relative(target.parent), f'.{uuid.uuid4().hex}.deleting')
                target.rename(tombstone)
                shutil.rmtree(tombstone)
            else:
                target.unlink()
        logger.info('Deleted %s', shown)

    def rename(self, rel: str, new_name: str) -> ItemInfo:
        safe_name = sanitize_name(new_name)
        source = self.safe_path(rel)
        self._refuse_root(source, 'rename')
        shown = self.resolver.relative(source)
        destination = self.safe_path(self.resolver.relative(source.parent), safe_name)
        new_shown = self.resolver.relative(destination)
        with _os_errors(shown):
            if not _occupied(source):
                raise NotFound(f'Not found: {shown}', path=shown)
            if destination != source and _occupied(destination) and not _same_entry(source, destination):
                raise AlreadyExists(f'Already exists: {new_shown}', path=new_shown)
            source.rename(destination)
            info = self._describe(destination)
        logger.info('Renamed %s -> %s', shown, new_shown)
        return info

    def move(self, source_rel: str, target_rel: str) -> ItemInfo:
        source = self.safe_path(source_rel)
        target_dir = self.safe_path(target_rel)
        self._refuse_root(source, 'move')
        shown = self.resolver.relative(source)
        target_shown = self.resolver.relative(target_dir)
        with _os_errors(shown):
            if not _occupied(source):
                raise NotFound(f'Not found: {shown}', path=shown)
            if not target_dir.is_dir():
                raise TargetNotDirectory(f'Target is not a directory: {_shown(target_shown)}', path=target_shown)
            if is_within(target_dir, source):
                raise Conflict(f'Cannot move {shown} into itself', path=shown)
            destination = self.safe_path(target_shown, source.name)
            dest_shown = self.resolver.relative(destination)
            if _occupied(destination):
                raise Conflict(f'Destination already exists: {dest_shown}', path=dest_shown)
            os.rename(source, destination)
            info = self._describe(destination)
        logger.info('Moved %s -> %s', shown, dest_shown)
        return info

    async def upload(self, target_rel: str, name: str, chunks: AsyncIterator[bytes], *, limit: Optional[int] = None) -> ItemInfo:
        info, _ = await self._upload_one(target_rel, name, chunks, self.max_upload_bytes if limit is None else limit)
        return info

    async def upload_many(self, target_rel: str, items: Iterable[UploadItem]) -> list[ItemInfo]:
        """Write several files under one shared size budget.

        Stops at the first failure; files already written in this call are kept.
        """
        remaining = self.max_upload_bytes
        uploaded: list[ItemInfo] = []
        for item in items:
            info, written = await self._upload_one(target_rel, item.name, item.chunks, remaining)
            remaining -= written
            uploaded.append(info)
        return uploaded

    async def _upload_one(self, target_rel: str, name: str, chunks: AsyncIterator[bytes], budget: int) -> tuple[ItemInfo, int]:
        segments = sanitize_relative_name(name)
        destination = self.safe_path(target_rel, *segments)
        shown = self.resolver.relative(destination)
        with _os_errors(shown):
            tmp_path = await asyncio.to_thread(self._reserve_temp, destination, shown)
            written = await self._write_atomic(tmp_path, destination, chunks, budget, shown)
            info = await asyncio.to_thread(self._describe, destination)
        logger.info('Uploaded %s (%s)', _shown(shown), format_size(written))
        return info, written

    def _reserve_temp(self, destination: Path, shown: str) -> Path:
        if destination.is_dir():
            raise AlreadyExists(f'A folder named {_shown(shown)} already exists', path=shown)
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{destination.name}.', suffix='.part', dir=str(destination.parent))
        os.close(fd)
        os.chmod(tmp_name, 0o644)
        return Path(tmp_name)

    async def _write_atomic(self, tmp_path: Path, destination: Path, chunks: AsyncIterator[bytes], budget: int, shown: str) -> int:
        written = 0
        try:
            async with aiofiles.open(tmp_path, 'wb') as handle:
                async for chunk in chunks:
                    written += len(chunk)
                    if written > budget:
                        raise PayloadTooLarge(f'Upload exceeds the {format_size(budget)} limit: {_shown(shown)}', path=shown)
                    await handle.write(chunk)
                await handle.flush()
                await asyncio.to_thread(os.fsync, handle.fileno())
            await aiofiles.os.replace(tmp_path, destination)
        except BaseException:
            # also covers cancellation when the client disconnects mid-upload, so no await here
            tmp_path.unlink(missing_ok=True)
            raise
        return written

    def open_download(self, rel: str) -> FileStream:
        target = self.safe_path(rel)
        shown = self.resolver.relative(target)
        with _os_errors(shown):
            if not _occupied(target):
                raise NotFound(f'File not found: {_shown(shown)}', path=shown)
            if not target.is_file():
                raise NotAFile(f'Not a file: {_shown(shown)}', path=shown)
            size = target.stat().st_size
        return FileStream(
            path=target,
            name=display_name(target.name),
            content_type=guess_content_type(target.name),
            size=size,
            chunk_size=self.chunk_size,
        )

    async def preview(self, rel: str) -> Preview:
        stream = await asyncio.to_thread(self.open_download, rel)
        if is_previewable(stream.content_type) and stream.size <= self.preview_max_bytes:
            with _os_errors(self.resolver.relative(stream.path)):
                async with aiofiles.open(stream.path, 'rb') as handle:
                    content = await handle.read()
            return Preview(name=stream.name, content_type=stream.content_type, size=len(content), content=content)
        return Preview(name=stream.name, content_type=stream.content_type, size=stream.size, stream=stream)
