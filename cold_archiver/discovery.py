"""Finding archive directories under a source root."""

from pathlib import Path
from typing import Iterator, Sequence

from cold_archiver.models import Archive


def make_key(directory: Path, root: Path, prefix: str = "") -> str:
    """
    Remote key for an archive directory: its path relative to root plus ``.zip``.

    Example:
        root   = /Volumes/Media
        dir    = /Volumes/Media/2024/Trip.fcpbundle
        prefix = libraries
        result = libraries/2024/Trip.fcpbundle.zip
    """
    if directory == root:
        relative = directory.name
    else:
        relative = directory.relative_to(root).as_posix()
    key = f"{relative}.zip"
    if prefix:
        key = f"{prefix.strip('/')}/{key}"
    return key


def is_archive_dir(path: Path, suffixes: Sequence[str]) -> bool:
    return path.is_dir() and any(path.name.endswith(s) for s in suffixes)


def discover_archives(
    root: Path, suffixes: Sequence[str] = (".fcpbundle",), prefix: str = ""
) -> Iterator[Archive]:
    """Yield archives under root, depth-first in sorted order.

    Matching directories are not descended into. The walk is lazy and never
    touches the network, so callers can restart it at will.
    """
    root = root.resolve()
    if is_archive_dir(root, suffixes):
        yield Archive(root, make_key(root, root, prefix))
        return

    stack = [root]
    while stack:
        current = stack.pop()
        if current != root and is_archive_dir(current, suffixes):
            yield Archive(current, make_key(current, root, prefix))
            continue
        try:
            children = sorted(p for p in current.iterdir() if p.is_dir() and not p.is_symlink())
        except PermissionError:
            continue
        stack.extend(reversed(children))
