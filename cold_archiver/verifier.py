"""Completing the remote session and proving the result matches the chunk set."""

import enum
import logging
from typing import Iterable, List, Optional

from cold_archiver.errors import CompletionError, StoreError, VerificationFailure
from cold_archiver.models import ChunkSet, ObjectInfo, RemotePart, SessionHandle
from cold_archiver.store import ObjectStore


class VerifyPolicy(str, enum.Enum):
    EXISTENCE = "existence"
    SIZE = "size"
    CHECKSUM = "checksum"


def completion_parts(parts: Iterable[RemotePart], expected: int) -> List[RemotePart]:
    """Return the parts ordered 1..expected, or raise CompletionError.

    Duplicates, gaps, extra numbers and empty tags all fail; a partial list is
    never submitted.
    """
    parts = list(parts)
    if expected < 1:
        raise CompletionError("Nothing to complete: the chunk set is empty")
    numbers = [p.part_number for p in parts]
    duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
    if duplicates:
        raise CompletionError(f"Duplicate part numbers {duplicates}")
    missing = sorted(set(range(1, expected + 1)) - set(numbers))
    unexpected = sorted(set(numbers) - set(range(1, expected + 1)))
    if missing or unexpected:
        raise CompletionError(
            f"Part list does not cover 1..{expected}: missing={missing} unexpected={unexpected}"
        )
    empty = [p.part_number for p in parts if not p.tag]
    if empty:
        raise CompletionError(f"Parts without a content tag: {empty}")
    return sorted(parts, key=lambda p: p.part_number)


class CompletionVerifier:
    def __init__(
        self,
        store: ObjectStore,
        policy: VerifyPolicy = VerifyPolicy.CHECKSUM,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.policy = VerifyPolicy(policy)
        self.logger = logger or logging.getLogger("cold_archiver")

    def complete(
        self, session: SessionHandle, parts: Iterable[RemotePart], chunk_set: ChunkSet
    ) -> ObjectInfo:
        ordered = completion_parts(parts, len(chunk_set))
        self.logger.info(f"All {len(ordered)} part(s) present — completing multipart upload ...")
        try:
            obj = self.store.complete_session(session, ordered)
        except StoreError as exc:
            raise CompletionError(
                f"Completing {session.key} failed: {exc}. Re-run to retry without re-uploading parts."
            ) from exc
        self.logger.info(f"Completed multipart upload for {session.key}")
        return obj

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, chunk_set: ChunkSet) -> bool:
        key = chunk_set.archive.key
        self.logger.info(f"Verifying {key} ({self.policy.value}) ...")
        try:
            if self.policy is VerifyPolicy.EXISTENCE:
                ok = self._verify_existence(key)
            else:
                ok = self._verify_metadata(chunk_set)
        except StoreError as exc:
            raise VerificationFailure(f"Cannot verify {key}: {exc}") from exc

        if ok:
            self.logger.info(f"Verification successful: {key} matches the local chunk set.")
        else:
            self.logger.error(f"Verification failed: {key}")
        return ok

    def _verify_existence(self, key: str) -> bool:
        return self.store.object_exists(key)

    def _verify_metadata(self, chunk_set: ChunkSet) -> bool:
        key = chunk_set.archive.key
        info = self.store.head_object(key)
        if info is None:
            self.logger.error(f"{key} does not exist remotely.")
            return False

        if info.content_length is None:
            self.logger.warning(
                f"Store reports no size for {key}; falling back to existence-only verification."
            )
            return True
        if info.content_length != chunk_set.total_size:
            self.logger.error(
                f"Size mismatch for {key}: remote={info.content_length:,} "
                f"local={chunk_set.total_size:,}"
            )
            return False

        if self.policy is VerifyPolicy.SIZE:
            return True

        expected = chunk_set.digest
        if info.digest is None or expected is None:
            self.logger.warning(
                f"No composite checksum available for {key}; verified by size only."
            )
            return True
        if info.digest != expected:
            self.logger.error(
                f"Checksum mismatch for {key}: remote={info.digest} local={expected}"
            )
            return False
        return True
