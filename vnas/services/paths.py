from __future__ import annotations

import logging
import os
import posixpath
import re
from pathlib import Path

from .errors import InvalidName, TraversalError

logger = logging.getLogger(__name__)

_SEPARATORS = ('/', '\\')
_UNSAFE_NAME_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')


def _clean(part: str) -> str:
    if '\x00' in part:
        raise TraversalError('Invalid path')
    return part.replace('\\', '/').lstrip('/')


def is_within(candidate: Path, root: Path) -> bool:
    """True when ``candidate`` is ``root`` or lies below it, compared segment by segment."""
    root_parts = root.parts
    return candidate.parts[: len(root_parts)] == root_parts


def sanitize_name(name: str) -> str:
    """Return a single safe path segment or raise :class:`InvalidName`.

    Separators are rejected outright instead of stripped, so ``../../etc`` can never
    collapse into something that looks harmless.
    """
    if not name or any(sep in name for sep in _SEPARATORS):
        raise InvalidName('Invalid name')
    cleaned = _UNSAFE_NAME_CHARS.sub('', name).strip()
    if cleaned in ('', '.', '..'):
        raise InvalidName('Invalid name')
    return cleaned


def sanitize_relative_name(name: str) -> list[str]:
    """Sanitize a client supplied ``dir/sub/file.txt`` one segment at a time."""
    segments = [seg for seg in (name or '').replace('\\', '/').split('/') if seg]
    if not segments:
        raise InvalidName('Invalid name')
    return [sanitize_name(seg) for seg in segments]


class PathResolver:
    """Maps untrusted relative paths onto the storage root.

    ``resolve`` only does string work: no stat, no symlink resolution, so a rejected
    path never reaches the filesystem.
    """

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, base: str, *segments: str) -> Path:
        raw = posixpath.join(*(_clean(part or '') for part in (base, *segments)))
        candidate = Path(os.path.normpath(os.path.join(self.root, raw)))
        if not is_within(candidate, self.root):
            logger.warning('Rejected path outside storage root: %r', raw)
            raise TraversalError('Path traversal detected', path=raw)
        return candidate

    def is_root(self, path: Path) -> bool:
        return path == self.root

    def relative(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return '' if rel == '.' else rel
