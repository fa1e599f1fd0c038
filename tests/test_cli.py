"""Tests for the command-line entry point."""

from datetime import datetime, timedelta, timezone

import pytest

from cold_archiver import cli
from cold_archiver import config as config_module
from cold_archiver.errors import StoreError
from conftest import FakeObjectStore, FakeSplitter, make_archive


class InstalledSplitter(FakeSplitter):
    """FakeSplitter standing in for an installed 7z."""

    failing = set()

    def __init__(self, executable="7z", logger=None):
        super().__init__(fail_for=self.failing)

    def available(self):
        return True


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    for name in ("BUCKET_NAME", "STORE_BACKEND", "CONCURRENCY", "SEVEN_ZIP", "PART_SIZE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_PATH", str(tmp_path / "logs"))
    monkeypatch.setattr(config_module, "load_dotenv", lambda: False)
    InstalledSplitter.failing = set()


@pytest.fixture
def fake_store(monkeypatch):
    store = FakeObjectStore("media-archive")
    monkeypatch.setattr(cli, "build_store", lambda cfg, bucket, logger: store)
    return store


@pytest.fixture
def installed_7z(monkeypatch):
    monkeypatch.setattr(cli, "SevenZipSplitter", InstalledSplitter)


def test_missing_bucket_is_usage_error():
    assert cli.main(["run"]) == 1


def test_source_must_be_a_directory(tmp_path):
    assert cli.main(["run", "bucket", str(tmp_path / "nope")]) == 1


def test_invalid_config_exits_before_logging(monkeypatch, capsys):
    monkeypatch.setenv("CONCURRENCY", "0")

    assert cli.main(["run", "bucket"]) == 1
    assert "ERROR: CONCURRENCY" in capsys.readouterr().err


def test_missing_seven_zip(monkeypatch, media_root):
    monkeypatch.setenv("SEVEN_ZIP", "no-such-7z-binary")
    make_archive(media_root)

    assert cli.main(["run", "bucket", str(media_root)]) == 1


def test_dry_run_lists_without_uploading(media_root, fake_store, capsys):
    make_archive(media_root, "2024/Trip.fcpbundle")

    assert cli.main(["run", "media-archive", str(media_root), "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "media-archive/2024/Trip.fcpbundle.zip" in out
    assert fake_store.uploaded == []


def test_run_uploads_every_archive(media_root, fake_store, installed_7z, tmp_path):
    first = make_archive(media_root, "2023/One.fcpbundle")
    second = make_archive(media_root, "2024/Two.fcpbundle")

    assert cli.main(["run", "media-archive", str(media_root)]) == 0

    assert set(fake_store.objects) == {first.key, second.key}
    assert (tmp_path / "logs" / "cold_archiver.log").exists()


def test_bucket_from_environment(monkeypatch, media_root, fake_store, installed_7z):
    monkeypatch.setenv("BUCKET_NAME", "media-archive")
    monkeypatch.chdir(media_root)
    archive = make_archive(media_root)

    assert cli.main(["run"]) == 0
    assert archive.key in fake_store.objects


def test_failed_archive_exits_2(media_root, fake_store, installed_7z):
    InstalledSplitter.failing = {"Bad.fcpbundle"}
    make_archive(media_root, "a/Bad.fcpbundle")
    good = make_archive(media_root, "b/Good.fcpbundle")

    assert cli.main(["run", "media-archive", str(media_root)]) == 2
    assert good.key in fake_store.objects


def test_store_setup_failure(monkeypatch, media_root, installed_7z):
    def broken(cfg, bucket, logger):
        raise StoreError("no credentials")

    monkeypatch.setattr(cli, "build_store", broken)

    assert cli.main(["run", "media-archive", str(media_root)]) == 1


def test_cleanup_aborts_stale_sessions(fake_store):
    old = datetime.now(timezone.utc) - timedelta(days=10)
    fake_store.open_session("old.zip", initiated=old)
    keep = fake_store.open_session("new.zip", initiated=datetime.now(timezone.utc))

    assert cli.main(["cleanup", "media-archive", "7"]) == 0
    assert list(fake_store.sessions) == [keep]


def test_cleanup_rejects_negative_age(fake_store):
    assert cli.main(["cleanup", "media-archive", "-1"]) == 1


def test_cleanup_requires_bucket():
    assert cli.main(["cleanup"]) == 1
