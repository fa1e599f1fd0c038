"""Value types shared by the engine, the store backends and the CLI."""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class Archive:
    """A source directory transferred as one remote object.

    Chunk files and the manifest live next to the directory:

        /lib/Lib.fcpbundle          -> source
        /lib/Lib.fcpbundle.zip.001  -> chunk 1
        /lib/Lib.fcpbundle.zip.md5  -> manifest
    """

    path: Path
    key: str

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def chunk_base(self) -> Path:
        return self.path.with_name(f"{self.path.name}.zip")

    @property
    def manifest_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.zip.md5")

    def chunk_path(self, part_number: int, width: int = 3) -> Path:
        return self.path.with_name(f"{self.path.name}.zip.{part_number:0{width}d}")


@dataclass(frozen=True)
class ChunkFile:
    part_number: int
    path: Path
    size: int
    md5: Optional[str] = None


@dataclass(frozen=True)
class ChunkSet:
    archive: Archive
    chunks: Tuple[ChunkFile, ...]
    # True when the Splitter produced these files during this run
    fresh: bool = False

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)

    @property
    def total_size(self) -> int:
        return sum(c.size for c in self.chunks)

    @property
    def part_numbers(self) -> list:
        return [c.part_number for c in self.chunks]

    @property
    def is_contiguous(self) -> bool:
        """True when part numbers are exactly 1..N."""
        return bool(self.chunks) and self.part_numbers == list(range(1, len(self.chunks) + 1))

    @property
    def digest(self) -> Optional[str]:
        """Composite digest of the set, or None if any chunk md5 is unknown."""
        md5s = [c.md5 for c in self.chunks]
        if not md5s or any(m is None for m in md5s):
            return None
        return multipart_digest(md5s)


@dataclass(frozen=True)
class RemotePart:
    part_number: int
    tag: str
    size: Optional[int] = None
    # md5 of the part's bytes, when the backend can report it
    md5: Optional[str] = None


@dataclass(frozen=True)
class SessionHandle:
    bucket: str
    key: str
    session_id: str
    resumed: bool = False


@dataclass(frozen=True)
class SessionInfo:
    key: str
    session_id: str
    initiated: Optional[datetime]


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    content_length: Optional[int] = None
    etag: Optional[str] = None
    # Composite md5 of the parts ("<hex>-<N>"), when the backend can report it.
    digest: Optional[str] = None


def multipart_digest(md5s: Iterable[str]) -> str:
    """S3-style multipart digest: md5 of the concatenated raw part digests."""
    md5s = list(md5s)
    joined = b"".join(bytes.fromhex(m) for m in md5s)
    return f"{hashlib.md5(joined).hexdigest()}-{len(md5s)}"
