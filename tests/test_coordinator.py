"""End-to-end tests of the per-archive state machine against the fakes."""

import pytest

from cold_archiver.chunks import ChunkManifest, list_chunk_files
from cold_archiver.coordinator import ArchiveState, FailureMode
from cold_archiver.models import ChunkSet
from cold_archiver.verifier import VerifyPolicy
from conftest import make_archive, same_size_chunk_set


def test_fresh_archive_is_uploaded_verified_and_cleaned(build_coordinator, archive, store, splitter):
    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.VERIFIED
    assert result.uploaded == [1, 2, 3, 4, 5]
    assert store.completed and store.completed[0][1] == [1, 2, 3, 4, 5]
    assert archive.key in store.objects
    assert store.sessions == {}
    assert list_chunk_files(archive) == []
    assert not archive.manifest_path.exists()
    assert archive.path.is_dir()
    assert splitter.calls == [archive.path]


def test_interrupted_run_resumes_with_missing_parts_only(
    build_coordinator, archive, store, splitter, adapter
):
    chunk_set = adapter.ensure_chunk_set(archive)
    session_id = store.open_session(archive.key)
    store.seed_parts(session_id, chunk_set.chunks[:2])
    splitter.calls.clear()

    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.VERIFIED
    assert store.uploaded == [3, 4, 5]
    assert result.reused == [1, 2]
    assert store.completed == [(session_id, [1, 2, 3, 4, 5])]
    assert splitter.calls == []


def test_existing_remote_object_skips_split_and_upload(build_coordinator, archive, store, splitter):
    store.put_object(archive.key, content_length=123)

    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.SKIPPED
    assert result.reason == "already processed"
    assert result.succeeded
    assert splitter.calls == []
    assert store.uploaded == []
    assert store.sessions == {}


def test_corrupt_chunk_triggers_full_resplit(build_coordinator, archive, store, splitter, adapter):
    adapter.ensure_chunk_set(archive)
    archive.chunk_path(3).write_bytes(b"\x00" * 64)

    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.VERIFIED
    assert len(splitter.calls) == 2
    assert store.uploaded == [1, 2, 3, 4, 5]


def test_failed_verification_keeps_local_files(build_coordinator, archive, store):
    original_complete = store.complete_session

    def truncating_complete(session, parts):
        info = original_complete(session, parts)
        store.put_object(session.key, content_length=info.content_length - 1, digest=info.digest)
        return info

    store.complete_session = truncating_complete

    result = build_coordinator(policy=VerifyPolicy.SIZE).process(archive)

    assert result.state is ArchiveState.FAILED
    assert result.failed_at is ArchiveState.COMPLETED
    assert len(list_chunk_files(archive)) == 5
    assert ChunkManifest(archive).has_trusted_chunk_set()


def test_upload_failure_keeps_everything_for_next_run(build_coordinator, archive, store, splitter):
    store.fail_parts[4] = 1

    first = build_coordinator().process(archive)

    assert first.state is ArchiveState.FAILED
    assert first.failed_at is ArchiveState.SESSION_RESOLVED
    assert len(list_chunk_files(archive)) == 5
    (session_id,) = store.sessions
    assert {1, 2, 3} <= set(store.sessions[session_id]["parts"])

    uploaded_before = len(store.uploaded)
    second = build_coordinator().process(archive)

    assert second.state is ArchiveState.VERIFIED
    assert 4 in second.uploaded
    assert not {1, 2, 3} & set(second.uploaded)
    assert len(store.uploaded) - uploaded_before == len(second.uploaded)
    assert len(splitter.calls) == 1


def test_session_failure_marks_archive_failed(build_coordinator, archive, store):
    store.fail_on.add("create_session")

    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.FAILED
    assert result.failed_at is ArchiveState.CHUNK_VERIFIED
    assert len(list_chunk_files(archive)) == 5


def test_one_failure_does_not_block_other_archives(build_coordinator, media_root, store, splitter):
    bad = make_archive(media_root, "A/Bad.fcpbundle")
    good = make_archive(media_root, "B/Good.fcpbundle")
    splitter.fail_for.add("Bad.fcpbundle")

    summary = build_coordinator().run([bad, good])

    assert [r.state for r in summary.results] == [ArchiveState.FAILED, ArchiveState.VERIFIED]
    assert summary.results[0].failed_at is ArchiveState.CHUNKING
    assert not summary.ok
    assert good.key in store.objects


def test_abort_mode_stops_after_first_failure(build_coordinator, media_root, store, splitter):
    bad = make_archive(media_root, "A/Bad.fcpbundle")
    good = make_archive(media_root, "B/Good.fcpbundle")
    splitter.fail_for.add("Bad.fcpbundle")

    summary = build_coordinator(failure_mode=FailureMode.ABORT).run([bad, good])

    assert [r.state for r in summary.results] == [ArchiveState.FAILED]
    assert summary.not_attempted == [good]
    assert good.key not in store.objects


def test_interrupted_archives_are_processed_first(build_coordinator, media_root, adapter):
    first = make_archive(media_root, "A/First.fcpbundle")
    second = make_archive(media_root, "B/Second.fcpbundle")
    adapter.ensure_chunk_set(second)

    coordinator = build_coordinator()

    assert coordinator.order_archives([first, second]) == [second, first]
    summary = coordinator.run([first, second])
    assert [r.archive for r in summary.results] == [second, first]
    assert summary.ok


@pytest.mark.parametrize("report_part_md5", [True, False])
def test_session_from_an_earlier_split_is_not_reused(
    build_coordinator, media_root, archive, store, report_part_md5
):
    store.report_part_md5 = report_part_md5
    stale = same_size_chunk_set(media_root)
    old_session = store.open_session(archive.key)
    store.seed_parts(old_session, stale.chunks[:4])

    first = build_coordinator().process(archive)

    assert first.state is ArchiveState.VERIFIED
    assert first.reused == []
    assert first.uploaded == [1, 2, 3, 4, 5]
    assert store.aborted == [old_session]
    assert store.objects[archive.key].digest != ChunkSet(archive, stale.chunks).digest

    second = build_coordinator().process(archive)

    assert second.state is ArchiveState.SKIPPED


def test_trusted_chunks_with_foreign_remote_parts_are_uploaded_again(
    build_coordinator, media_root, archive, store, adapter
):
    chunk_set = adapter.ensure_chunk_set(archive)
    stale = same_size_chunk_set(media_root)
    session_id = store.open_session(archive.key)
    store.seed_parts(session_id, stale.chunks[:4])
    store.seed_parts(session_id, chunk_set.chunks[4:])

    result = build_coordinator().process(archive)

    assert result.state is ArchiveState.VERIFIED
    assert result.uploaded == [1, 2, 3, 4]
    assert result.reused == [5]
    assert store.aborted == []


def test_unexpected_error_fails_only_that_archive(build_coordinator, media_root, store):
    bad = make_archive(media_root, "A/Bad.fcpbundle")
    good = make_archive(media_root, "B/Good.fcpbundle")
    upload_part = store.upload_part

    def malformed_response(session, part_number, path, size):
        if session.key == bad.key:
            raise KeyError("ETag")
        return upload_part(session, part_number, path, size)

    store.upload_part = malformed_response

    summary = build_coordinator().run([bad, good])

    assert [r.state for r in summary.results] == [ArchiveState.FAILED, ArchiveState.VERIFIED]
    assert summary.results[0].failed_at is ArchiveState.SESSION_RESOLVED
    assert "KeyError" in summary.results[0].reason
    assert len(list_chunk_files(bad)) == 5
    assert good.key in store.objects
