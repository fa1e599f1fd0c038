"""Per-archive transfer state machine and the batch loop around it."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from cold_archiver.chunks import ChunkManifest
from cold_archiver.errors import ArchiverError, VerificationFailure
from cold_archiver.models import Archive
from cold_archiver.reconciler import PartReconciler
from cold_archiver.sessions import SessionRegistry
from cold_archiver.splitter import SplitterAdapter
from cold_archiver.store import ObjectStore
from cold_archiver.verifier import CompletionVerifier


class ArchiveState(str, enum.Enum):
    DISCOVERED = "DISCOVERED"
    CHUNKING = "CHUNKING"
    CHUNK_VERIFIED = "CHUNK_VERIFIED"
    SESSION_RESOLVED = "SESSION_RESOLVED"
    PARTS_RECONCILED = "PARTS_RECONCILED"
    COMPLETED = "COMPLETED"
    VERIFIED = "VERIFIED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class FailureMode(str, enum.Enum):
    ISOLATE = "isolate"  # record the failure, carry on with the next archive
    ABORT = "abort"  # stop the batch at the first failure


@dataclass
class ArchiveResult:
    archive: Archive
    state: ArchiveState = ArchiveState.DISCOVERED
    failed_at: Optional[ArchiveState] = None
    reason: str = ""
    uploaded: List[int] = field(default_factory=list)
    reused: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in (ArchiveState.VERIFIED, ArchiveState.SKIPPED)


@dataclass
class RunSummary:
    results: List[ArchiveResult] = field(default_factory=list)
    not_attempted: List[Archive] = field(default_factory=list)

    @property
    def failed(self) -> List[ArchiveResult]:
        return [r for r in self.results if r.state is ArchiveState.FAILED]

    @property
    def succeeded(self) -> List[ArchiveResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted


class TransferCoordinator:
    def __init__(
        self,
        store: ObjectStore,
        splitter: SplitterAdapter,
        registry: SessionRegistry,
        reconciler: PartReconciler,
        verifier: CompletionVerifier,
        failure_mode: FailureMode = FailureMode.ISOLATE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.splitter = splitter
        self.registry = registry
        self.reconciler = reconciler
        self.verifier = verifier
        self.failure_mode = FailureMode(failure_mode)
        self.logger = logger or logging.getLogger("cold_archiver")

    def order_archives(self, archives: Iterable[Archive]) -> List[Archive]:
        """Archives with chunk files and a manifest on disk go first.

        Only presence is checked here; the checksums are compared once the
        archive is processed. Order is otherwise traversal order.
        """
        resumable, fresh = [], []
        for archive in archives:
            if ChunkManifest(archive, self.logger).has_candidate_chunk_set():
                self.logger.info(f"Found interrupted transfer: {archive.name}")
                resumable.append(archive)
            else:
                fresh.append(archive)
        return resumable + fresh

    def process(self, archive: Archive) -> ArchiveResult:
        result = ArchiveResult(archive)
        self.logger.info("")
        self.logger.info(f"Found archive: {archive.name}  →  {archive.key}")

        try:
            if self._already_processed(archive):
                result.state = ArchiveState.SKIPPED
                result.reason = "already processed"
                return result

            result.state = ArchiveState.CHUNKING
            chunk_set = self.splitter.ensure_chunk_set(archive)
            result.state = ArchiveState.CHUNK_VERIFIED

            session = self.registry.resolve_session(archive.key)
            if chunk_set.fresh and session.resumed:
                self.logger.warning(
                    f"{archive.name} was split again; discarding session "
                    f"{session.session_id}, its parts came from an earlier split."
                )
                session = self.registry.restart_session(archive.key)
            result.state = ArchiveState.SESSION_RESOLVED

            report = self.reconciler.reconcile(chunk_set, session)
            result.uploaded, result.reused = report.uploaded, report.reused
            result.state = ArchiveState.PARTS_RECONCILED

            self.verifier.complete(session, report.parts, chunk_set)
            result.state = ArchiveState.COMPLETED

            if not self.verifier.verify(chunk_set):
                raise VerificationFailure(
                    f"{archive.key} could not be verified; keeping local chunk files."
                )
            result.state = ArchiveState.VERIFIED
        except (ArchiverError, OSError) as exc:
            result.failed_at = result.state
            result.state = ArchiveState.FAILED
            result.reason = str(exc)
            self.logger.error(
                f"**** {archive.name} failed during {result.failed_at.value}: {exc}"
            )
            return result
        except Exception as exc:
            result.failed_at = result.state
            result.state = ArchiveState.FAILED
            result.reason = f"unexpected error: {exc!r}"
            self.logger.exception(
                f"**** {archive.name} failed during {result.failed_at.value} "
                f"with an unexpected error: {exc!r}"
            )
            return result

        self._cleanup(archive)
        return result

    def _already_processed(self, archive: Archive) -> bool:
        self.logger.info(f"Checking if {archive.key} exists in {self.store.bucket} ...")
        if not self.store.object_exists(archive.key):
            return False
        self.logger.info(f"{archive.key} already exists remotely. Already processed, skipping.")
        if ChunkManifest(archive, self.logger).has_candidate_chunk_set():
            self.logger.warning(
                f"**** Warning: keeping local chunk files for {archive.name}; "
                f"they were not verified against the existing object."
            )
        return True

    def _cleanup(self, archive: Archive) -> None:
        self.logger.info(f"Removing local chunk files for {archive.name}")
        try:
            self.splitter.discard(archive)
        except OSError as exc:
            self.logger.warning(f"Could not remove every chunk file for {archive.name}: {exc}")

    def run(self, archives: Iterable[Archive]) -> RunSummary:
        summary = RunSummary()
        ordered = self.order_archives(archives)
        for index, archive in enumerate(ordered):
            result = self.process(archive)
            summary.results.append(result)
            if result.state is ArchiveState.FAILED and self.failure_mode is FailureMode.ABORT:
                summary.not_attempted = ordered[index + 1:]
                if summary.not_attempted:
                    self.logger.error(
                        f"Stopping: {len(summary.not_attempted)} archive(s) not attempted "
                        f"(failure mode 'abort')."
                    )
                break
        return summary
