"""Local chunk files and the md5 manifest that decides whether they can be trusted."""

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from cold_archiver.errors import ChecksumMismatchError, ManifestError
from cold_archiver.models import Archive, ChunkFile, ChunkSet

HASH_BLOCK_SIZE = 16 * 1024 * 1024  # 16 MB


def md5_file(path: Path) -> str:
    """Streamed md5 of a file."""
    h = hashlib.md5()
    with path.open("rb") as fh:
        while True:
            block = fh.read(HASH_BLOCK_SIZE)
            if not block:
                break
            h.update(block)
    return h.hexdigest()


def _chunk_pattern(archive: Archive) -> "re.Pattern[str]":
    return re.compile(re.escape(f"{archive.name}.zip.") + r"(\d+)$")


def list_chunk_files(archive: Archive) -> List[ChunkFile]:
    """Return the archive's numbered chunk files, ascending by part number.

    The part number is the numeric value of the fixed-width suffix, so
    ``Lib.fcpbundle.zip.007`` is part 7 on every path (fresh split and resume).
    """
    parent = archive.path.parent
    if not parent.is_dir():
        return []
    pattern = _chunk_pattern(archive)
    chunks = []
    for entry in parent.iterdir():
        match = pattern.match(entry.name)
        if match and entry.is_file():
            chunks.append(ChunkFile(int(match.group(1)), entry, entry.stat().st_size))
    chunks.sort(key=lambda c: c.part_number)
    return chunks


def _same_width(chunks: List[ChunkFile]) -> bool:
    widths = {len(c.path.name.rsplit(".", 1)[-1]) for c in chunks}
    return len(widths) <= 1


class ChunkManifest:
    """The ``<archive>.zip.md5`` file, in ``md5sum`` format.

    A chunk set is trusted only as a whole: every chunk file must have an
    entry, every entry must have a chunk file, and every checksum must match.
    """

    def __init__(self, archive: Archive, logger: Optional[logging.Logger] = None) -> None:
        self.archive = archive
        self.path = archive.manifest_path
        self.logger = logger or logging.getLogger("cold_archiver")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[Dict[str, str]]:
        """Return ``{file name: md5}``, or None if missing or malformed."""
        if not self.exists():
            return None
        entries: Dict[str, str] = {}
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        for line in text.splitlines():
            if not line.strip():
                continue
            digest, sep, name = line.partition("  ")
            if not sep or not re.fullmatch(r"[0-9a-f]{32}", digest) or not name:
                return None
            entries[name] = digest
        return entries

    def has_candidate_chunk_set(self) -> bool:
        """Cheap check: chunk files and a manifest are both on disk."""
        return self.exists() and bool(list_chunk_files(self.archive))

    def trusted_chunk_set(self) -> ChunkSet:
        """Return the verified chunk set with md5s attached.

        Raises ChecksumMismatchError when any part of the set is untrusted.
        """
        chunks = list_chunk_files(self.archive)
        if not chunks:
            raise ChecksumMismatchError(f"No chunk files for {self.archive.name}")
        chunk_set = ChunkSet(self.archive, tuple(chunks))
        if not chunk_set.is_contiguous or not _same_width(chunks):
            raise ChecksumMismatchError(
                f"Chunk numbering for {self.archive.name} is not contiguous from 1: "
                f"{chunk_set.part_numbers}"
            )

        entries = self.load()
        if entries is None:
            raise ChecksumMismatchError(f"No valid manifest at {self.path.name}")

        names = {c.path.name for c in chunks}
        if set(entries) != names:
            raise ChecksumMismatchError(
                f"Manifest {self.path.name} lists {len(entries)} file(s), "
                f"found {len(names)} chunk file(s)"
            )

        verified = []
        for chunk in chunks:
            self.logger.debug(f"Checksumming {chunk.path.name} ...")
            try:
                actual = md5_file(chunk.path)
            except OSError as exc:
                raise ChecksumMismatchError(f"Cannot read {chunk.path.name}: {exc}") from exc
            if actual != entries[chunk.path.name]:
                raise ChecksumMismatchError(
                    f"Checksum mismatch for {chunk.path.name}: "
                    f"manifest={entries[chunk.path.name]} actual={actual}"
                )
            verified.append(ChunkFile(chunk.part_number, chunk.path, chunk.size, actual))
        return ChunkSet(self.archive, tuple(verified))

    def has_trusted_chunk_set(self) -> bool:
        try:
            self.trusted_chunk_set()
        except ChecksumMismatchError as exc:
            self.logger.debug(f"Chunk set for {self.archive.name} not trusted: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, chunk_set: ChunkSet) -> ChunkSet:
        """Checksum every chunk and persist the manifest atomically.

        Returns the chunk set with md5s attached. On failure no manifest is
        left behind and ManifestError is raised.
        """
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            hashed = [
                ChunkFile(c.part_number, c.path, c.size, md5_file(c.path))
                for c in chunk_set.chunks
            ]
            with tmp.open("w", encoding="utf-8") as fh:
                for chunk in hashed:
                    fh.write(f"{chunk.md5}  {chunk.path.name}\n")
                fh.flush()
                os.fsync(fh.fileno())
            tmp.replace(self.path)  # atomic rename
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise ManifestError(f"Cannot write manifest {self.path.name}: {exc}") from exc

        self.logger.info(f"Wrote manifest {self.path.name} ({len(hashed)} chunk(s))")
        return ChunkSet(chunk_set.archive, tuple(hashed))

    def invalidate(self) -> int:
        """Delete every chunk file and the manifest together.

        Returns the number of files removed.
        """
        removed = 0
        for chunk in list_chunk_files(self.archive):
            chunk.path.unlink(missing_ok=True)
            removed += 1
        for path in (self.path, self.path.with_name(self.path.name + ".tmp")):
            if path.exists():
                path.unlink()
                removed += 1
        if removed:
            self.logger.info(f"Removed {removed} local chunk/manifest file(s) for {self.archive.name}")
        return removed
