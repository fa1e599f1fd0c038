"""Uploading exactly the parts the remote session does not hold yet."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cold_archiver.errors import PartUploadError, StoreError
from cold_archiver.models import ChunkFile, ChunkSet, RemotePart, SessionHandle
from cold_archiver.store import ObjectStore


@dataclass
class ReconcileReport:
    parts: List[RemotePart] = field(default_factory=list)
    uploaded: List[int] = field(default_factory=list)
    reused: List[int] = field(default_factory=list)


class PartReconciler:
    """Diffs local chunk files against remote parts and closes the gap.

    Part N is always chunk file ``.NNN``. Remote parts are never deleted, so a
    failure here leaves everything already uploaded in place for the next run.
    """

    def __init__(
        self,
        store: ObjectStore,
        concurrency: int = 1,
        max_retries: int = 0,
        retry_base_delay: int = 2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.concurrency = max(1, concurrency)
        self.max_retries = max(0, max_retries)
        self.retry_base_delay = retry_base_delay
        self.logger = logger or logging.getLogger("cold_archiver")

    def list_remote_parts(self, session: SessionHandle) -> Dict[int, RemotePart]:
        try:
            return self.store.list_parts(session)
        except StoreError as exc:
            raise PartUploadError(f"Cannot list parts of {session.key}: {exc}") from exc

    # ------------------------------------------------------------------
    # Single part
    # ------------------------------------------------------------------

    def _upload_with_retry(self, session: SessionHandle, chunk: ChunkFile) -> RemotePart:
        """Upload one chunk with exponential-backoff retry."""
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 2):  # attempt 1 = first try
            try:
                tag = self.store.upload_part(session, chunk.part_number, chunk.path, chunk.size)
                return RemotePart(chunk.part_number, tag, chunk.size, chunk.md5)
            except (StoreError, OSError) as exc:
                last_exc = exc
                if attempt > self.max_retries:
                    break
                delay = self.retry_base_delay ** attempt
                self.logger.warning(
                    f"Part {chunk.part_number}: error (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay}s: {exc}"
                )
                time.sleep(delay)

        raise PartUploadError(
            f"Part {chunk.part_number} ({chunk.path.name}) could not be uploaded: {last_exc}",
            chunk.part_number,
        ) from last_exc

    # ------------------------------------------------------------------
    # Whole chunk set
    # ------------------------------------------------------------------

    def reconcile(self, chunk_set: ChunkSet, session: SessionHandle) -> ReconcileReport:
        remote = self.list_remote_parts(session)
        report = ReconcileReport()
        known: Dict[int, RemotePart] = {}
        to_upload: List[ChunkFile] = []

        for chunk in sorted(chunk_set.chunks, key=lambda c: c.part_number):
            part = remote.get(chunk.part_number)
            if part is None:
                to_upload.append(chunk)
            elif part.size is not None and part.size != chunk.size:
                self.logger.warning(
                    f"Part {chunk.part_number} is {part.size:,} bytes remotely but "
                    f"{chunk.size:,} locally; uploading it again."
                )
                to_upload.append(chunk)
            elif part.md5 and chunk.md5 and part.md5 != chunk.md5:
                self.logger.warning(
                    f"Part {chunk.part_number} holds different bytes remotely "
                    f"(md5 {part.md5}, local {chunk.md5}); uploading it again."
                )
                to_upload.append(chunk)
            else:
                self.logger.info(f"Part {chunk.part_number} already exists. Skipping upload.")
                known[chunk.part_number] = part
                report.reused.append(chunk.part_number)

        extra = sorted(n for n in remote if n > len(chunk_set))
        if extra:
            self.logger.warning(
                f"Session {session.session_id} holds parts {extra} beyond the "
                f"{len(chunk_set)} local chunk(s); they will not be completed."
            )

        if not to_upload:
            self.logger.info("All parts already uploaded — skipping to completion.")
        else:
            self._upload_all(session, chunk_set, to_upload, known, report)

        report.parts = [known[n] for n in sorted(known)]
        return report

    def upload_missing_parts(self, chunk_set: ChunkSet, session: SessionHandle) -> List[RemotePart]:
        return self.reconcile(chunk_set, session).parts

    def _upload_all(
        self,
        session: SessionHandle,
        chunk_set: ChunkSet,
        to_upload: List[ChunkFile],
        known: Dict[int, RemotePart],
        report: ReconcileReport,
    ) -> None:
        total_parts = len(chunk_set)
        pending_bytes = sum(c.size for c in to_upload)
        self.logger.info(
            f"Uploading {len(to_upload)} of {total_parts} part(s) "
            f"({pending_bytes:,} bytes) with {self.concurrency} thread(s)..."
        )
        t0 = time.monotonic()
        bytes_uploaded = 0

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {
                pool.submit(self._upload_with_retry, session, chunk): chunk
                for chunk in to_upload
            }
            for future in as_completed(futures):
                chunk = futures[future]
                try:
                    part = future.result()
                except Exception as exc:
                    self.logger.error(
                        f"Fatal: part {chunk.part_number} could not be uploaded ({exc}). "
                        f"Uploaded parts are kept for the next run."
                    )
                    for f in futures:
                        f.cancel()
                    raise

                known[part.part_number] = part
                report.uploaded.append(part.part_number)

                bytes_uploaded += chunk.size
                elapsed = max(time.monotonic() - t0, 0.001)
                speed_mb = (bytes_uploaded / elapsed) / (1024 * 1024)
                pct = len(known) / total_parts * 100
                eta_s = (
                    (pending_bytes - bytes_uploaded) / (bytes_uploaded / elapsed)
                    if bytes_uploaded
                    else 0
                )
                self.logger.info(
                    f"[{pct:5.1f}%] part {chunk.part_number}/{total_parts}  "
                    f"speed={speed_mb:.1f} MB/s  eta={fmt_seconds(eta_s)}"
                )
        report.uploaded.sort()


def fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"
