"""Same-machine run lock keyed by bucket and source paths."""

import fcntl
import hashlib
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence

from cold_archiver.errors import AlreadyRunningError


def run_signature(bucket: str, sources: Sequence[Path]) -> str:
    canonical = "\n".join([bucket] + sorted(str(Path(s).resolve()) for s in sources))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@contextmanager
def run_lock(
    bucket: str, sources: Sequence[Path], lock_dir: Optional[Path] = None
) -> Iterator[Path]:
    """Hold an exclusive advisory lock for the duration of the block.

    Two invocations with the same bucket and sources cannot run at once;
    different sources may. The lock dies with the process.
    """
    lock_dir = Path(lock_dir or tempfile.gettempdir())
    lock_path = lock_dir / f"cold_archiver-{run_signature(bucket, sources)[:16]}.lock"
    fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise AlreadyRunningError(
                f"Another run for bucket '{bucket}' with the same sources is in progress."
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
