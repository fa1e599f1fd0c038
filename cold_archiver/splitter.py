"""Producing the local chunk set with an external archiver."""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Optional

from cold_archiver.chunks import ChunkManifest, list_chunk_files
from cold_archiver.errors import ChecksumMismatchError, ManifestError, SplitError
from cold_archiver.models import Archive, ChunkSet


class Splitter(ABC):
    """Turns a directory into ``<output_base>.001 .. .NNN`` volume files."""

    @abstractmethod
    def split(self, source_dir: Path, output_base: Path, volume_size: str) -> None:
        """Raise SplitError on any failure."""


class SevenZipSplitter(Splitter):
    """Splits with ``7z a -mx1 -v<size>``: zip container, fastest compression."""

    def __init__(self, executable: str = "7z", logger: Optional[logging.Logger] = None) -> None:
        self.executable = executable
        self.logger = logger or logging.getLogger("cold_archiver")

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def command(self, source_dir: Path, output_base: Path, volume_size: str) -> list:
        return [
            self.executable,
            "a",
            "-mx1",
            f"-v{volume_size}",
            str(output_base),
            str(source_dir),
        ]

    def split(self, source_dir: Path, output_base: Path, volume_size: str) -> None:
        cmd = self.command(source_dir, output_base, volume_size)
        self.logger.info(f"Creating split archive {output_base.name} ({volume_size} volumes)...")
        self.logger.debug(" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise SplitError(f"Cannot run {self.executable}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            raise SplitError(
                f"{self.executable} exited with status {result.returncode}"
                + (f": {detail[-1]}" if detail else "")
            )


class SplitterAdapter:
    """Makes sure a trusted chunk set exists for an archive.

    The Splitter runs only when there is no trusted set. Whatever it leaves
    behind on failure is removed so a later run never mistakes it for valid
    output.
    """

    def __init__(
        self,
        splitter: Splitter,
        volume_size: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.splitter = splitter
        self.volume_size = volume_size
        self.logger = logger or logging.getLogger("cold_archiver")

    def ensure_chunk_set(self, archive: Archive) -> ChunkSet:
        manifest = ChunkManifest(archive, self.logger)

        if list_chunk_files(archive):
            try:
                chunk_set = manifest.trusted_chunk_set()
            except ChecksumMismatchError as exc:
                self.logger.warning(f"Discarding existing chunk files for {archive.name}: {exc}")
                manifest.invalidate()
            else:
                self.logger.info(
                    f"Reusing {len(chunk_set)} verified chunk file(s) for {archive.name}"
                )
                return chunk_set
        elif manifest.exists():
            self.logger.warning(f"Removing orphan manifest {manifest.path.name}")
            manifest.invalidate()

        try:
            self.splitter.split(archive.path, archive.chunk_base, self.volume_size)
        except SplitError:
            manifest.invalidate()
            raise

        chunk_set = ChunkSet(archive, tuple(list_chunk_files(archive)))
        if not chunk_set.is_contiguous:
            manifest.invalidate()
            raise SplitError(
                f"Splitter output for {archive.name} is not numbered 1..N: "
                f"{chunk_set.part_numbers}"
            )
        self.logger.info(
            f"Split {archive.name} into {len(chunk_set)} chunk(s), "
            f"{chunk_set.total_size:,} bytes"
        )

        try:
            return replace(manifest.write(chunk_set), fresh=True)
        except ManifestError:
            manifest.invalidate()
            raise

    def discard(self, archive: Archive) -> int:
        return ChunkManifest(archive, self.logger).invalidate()
