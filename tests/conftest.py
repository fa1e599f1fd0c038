"""Shared pytest fixtures: an in-memory object store and a fake splitter."""

import hashlib
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cold_archiver.coordinator import TransferCoordinator
from cold_archiver.errors import SplitError, StoreError
from cold_archiver.models import Archive, ObjectInfo, RemotePart, SessionInfo, multipart_digest
from cold_archiver.reconciler import PartReconciler
from cold_archiver.sessions import SessionRegistry
from cold_archiver.splitter import Splitter, SplitterAdapter
from cold_archiver.store import ObjectStore
from cold_archiver.verifier import CompletionVerifier, VerifyPolicy


class FakeObjectStore(ObjectStore):
    """Multipart semantics of S3, kept in memory.

    Part tags are the quoted md5 of the uploaded bytes, and completed objects
    report the composite digest, so verification behaves like the real thing.
    """

    def __init__(self, bucket="test-bucket"):
        self.bucket = bucket
        self.sessions = {}
        self.objects = {}
        self.uploaded = []
        self.completed = []
        self.aborted = []
        self.fail_on = set()
        self.fail_parts = {}
        self.report_size = True
        self.report_digest = True
        # Azure block lists carry no per-part md5
        self.report_part_md5 = True
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _check(self, name):
        if name in self.fail_on:
            raise StoreError(f"{name}: injected failure")

    # -- helpers for tests ------------------------------------------------

    def open_session(self, key, initiated=None):
        session_id = f"upload-{next(self._ids)}"
        self._clock += timedelta(minutes=1)
        self.sessions[session_id] = {
            "key": key,
            "parts": {},
            "initiated": initiated or self._clock,
            "storage_class": None,
        }
        return session_id

    def seed_parts(self, session_id, chunks):
        """Pretend ``chunks`` were uploaded by an earlier, interrupted run."""
        for chunk in chunks:
            data = chunk.path.read_bytes()
            md5 = hashlib.md5(data).hexdigest()
            self.sessions[session_id]["parts"][chunk.part_number] = (f'"{md5}"', len(data), md5)

    def put_object(self, key, content_length=0, digest=None):
        self.objects[key] = ObjectInfo(key, content_length=content_length, digest=digest)

    # -- ObjectStore ------------------------------------------------------

    def list_sessions(self, key):
        self._check("list_sessions")
        live = [(s["initiated"], sid) for sid, s in self.sessions.items() if s["key"] == key]
        return [sid for _, sid in sorted(live)]

    def create_session(self, key, storage_class):
        self._check("create_session")
        session_id = self.open_session(key)
        self.sessions[session_id]["storage_class"] = storage_class
        return session_id

    def list_parts(self, session):
        self._check("list_parts")
        parts = self.sessions[session.session_id]["parts"]
        return {
            n: RemotePart(n, tag, size, md5 if self.report_part_md5 else None)
            for n, (tag, size, md5) in parts.items()
        }

    def upload_part(self, session, part_number, path, size):
        self._check("upload_part")
        remaining = self.fail_parts.get(part_number)
        if remaining:
            self.fail_parts[part_number] = remaining - 1
            raise StoreError(f"upload_part {part_number}: injected failure")
        data = path.read_bytes()
        md5 = hashlib.md5(data).hexdigest()
        self.sessions[session.session_id]["parts"][part_number] = (f'"{md5}"', len(data), md5)
        self.uploaded.append(part_number)
        return f'"{md5}"'

    def complete_session(self, session, parts):
        self._check("complete_session")
        stored = self.sessions[session.session_id]["parts"]
        for part in parts:
            if stored.get(part.part_number, (None,))[0] != part.tag:
                raise StoreError(f"InvalidPart {part.part_number}")
        md5s = [stored[p.part_number][2] for p in parts]
        info = ObjectInfo(
            session.key,
            content_length=sum(stored[p.part_number][1] for p in parts),
            digest=multipart_digest(md5s),
        )
        self.objects[session.key] = info
        self.completed.append((session.session_id, [p.part_number for p in parts]))
        del self.sessions[session.session_id]
        return info

    def head_object(self, key):
        self._check("head_object")
        info = self.objects.get(key)
        if info is None:
            return None
        return ObjectInfo(
            key,
            content_length=info.content_length if self.report_size else None,
            digest=info.digest if self.report_digest else None,
        )

    def object_exists(self, key):
        self._check("object_exists")
        return key in self.objects

    def list_sessions_initiated_before(self, cutoff):
        self._check("list_sessions_initiated_before")
        return [
            SessionInfo(s["key"], sid, s["initiated"])
            for sid, s in sorted(self.sessions.items())
            if s["initiated"] <= cutoff
        ]

    def abort_session(self, key, session_id):
        if session_id in self.fail_on:
            raise StoreError(f"abort {session_id}: injected failure")
        self.sessions.pop(session_id)
        self.aborted.append(session_id)


def chunk_bytes(source_dir, part_number, size):
    seed = f"{source_dir.name}:{part_number}:".encode()
    return (seed * (size // len(seed) + 1))[:size]


class FakeSplitter(Splitter):
    """Writes ``parts`` deterministic volumes; the last one is shorter."""

    def __init__(self, parts=5, part_size=64, fail_after=None, fail_for=(), skip=()):
        self.parts = parts
        self.part_size = part_size
        self.fail_after = fail_after
        self.fail_for = set(fail_for)
        self.skip = set(skip)
        self.calls = []

    def split(self, source_dir, output_base, volume_size):
        self.calls.append(Path(source_dir))
        if source_dir.name in self.fail_for:
            raise SplitError(f"injected failure for {source_dir.name}")
        for n in range(1, self.parts + 1):
            if self.fail_after is not None and n > self.fail_after:
                raise SplitError(f"injected failure after volume {self.fail_after}")
            if n in self.skip:
                continue
            size = self.part_size if n < self.parts else self.part_size // 2
            Path(f"{output_base}.{n:03d}").write_bytes(chunk_bytes(source_dir, n, size))


def make_archive(root, relative="Lib.fcpbundle"):
    path = root / relative
    path.mkdir(parents=True)
    (path / "CurrentVersion.flexolibrary").write_bytes(b"library contents")
    return Archive(path, f"{relative}.zip")


def same_size_chunk_set(root, relative="Twin.fcpbundle"):
    """Volumes of another archive: every size matches, every byte differs."""
    return SplitterAdapter(FakeSplitter(), "5g").ensure_chunk_set(make_archive(root, relative))


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture
def archive(media_root):
    return make_archive(media_root)


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def splitter():
    return FakeSplitter()


@pytest.fixture
def adapter(splitter):
    return SplitterAdapter(splitter, "5g")


@pytest.fixture
def build_coordinator(store, adapter):
    """Factory so tests can vary policy and failure mode."""

    def _build(policy=VerifyPolicy.CHECKSUM, failure_mode="isolate", concurrency=1):
        return TransferCoordinator(
            store=store,
            splitter=adapter,
            registry=SessionRegistry(store, "DEEP_ARCHIVE"),
            reconciler=PartReconciler(store, concurrency=concurrency),
            verifier=CompletionVerifier(store, policy),
            failure_mode=failure_mode,
        )

    return _build
