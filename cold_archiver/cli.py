"""
cold-archiver — move large bundle libraries into cold cloud storage.

Usage:
    python -m cold_archiver run [bucket] [source ...] [--dry-run]
    python -m cold_archiver cleanup [bucket] [max_age_days]

Every directory whose name ends with an archive suffix (``.fcpbundle`` by
default) is split into numbered zip volumes, uploaded as one multipart object,
verified, and only then are the local volumes removed. Interrupted runs resume:
re-run the same command.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from cold_archiver.cleanup import abort_stale_sessions
from cold_archiver.config import Config
from cold_archiver.coordinator import ArchiveResult, ArchiveState, TransferCoordinator
from cold_archiver.discovery import discover_archives
from cold_archiver.errors import AlreadyRunningError, StoreError
from cold_archiver.lock import run_lock
from cold_archiver.reconciler import PartReconciler
from cold_archiver.sessions import SessionRegistry
from cold_archiver.splitter import SevenZipSplitter, SplitterAdapter
from cold_archiver.store import ObjectStore
from cold_archiver.verifier import CompletionVerifier

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "cold_archiver.log"

    logger = logging.getLogger("cold_archiver")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_store(cfg: Config, bucket: str, logger: logging.Logger) -> ObjectStore:
    if cfg.backend == "azure":
        from cold_archiver.azure_store import AzureBlobStore

        return AzureBlobStore(
            bucket,
            conn_str=cfg.azure_conn_str,
            storage_class=cfg.storage_class,
            logger=logger,
        )

    from cold_archiver.s3_store import S3ObjectStore

    return S3ObjectStore(
        bucket,
        region=cfg.aws_region,
        profile=cfg.aws_profile,
        endpoint_url=cfg.s3_endpoint_url,
        logger=logger,
    )


def build_coordinator(
    cfg: Config, store: ObjectStore, splitter: SevenZipSplitter, logger: logging.Logger
) -> TransferCoordinator:
    return TransferCoordinator(
        store=store,
        splitter=SplitterAdapter(splitter, cfg.part_size, logger),
        registry=SessionRegistry(store, cfg.storage_class, logger),
        reconciler=PartReconciler(
            store,
            concurrency=cfg.concurrency,
            max_retries=cfg.max_retries,
            retry_base_delay=cfg.retry_base_delay,
            logger=logger,
        ),
        verifier=CompletionVerifier(store, cfg.verify_policy, logger),
        failure_mode=cfg.failure_mode,
        logger=logger,
    )


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cold-archiver",
        description=(
            "Split bundle directories into zip volumes and upload them to cold "
            "storage with resumable multipart transfers."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Archive every .fcpbundle under the current directory\n"
            "  cold-archiver run my-bucket\n\n"
            "  # Archive two source roots, one after the other\n"
            '  cold-archiver run my-bucket "/Volumes/Media/2023" "/Volumes/Media/2024"\n\n'
            "  # Show what would be archived\n"
            "  cold-archiver run my-bucket /Volumes/Media --dry-run\n\n"
            "  # Abort sessions abandoned for more than a week\n"
            "  cold-archiver cleanup my-bucket 7\n"
        ),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Archive and upload bundle directories.")
    run.add_argument(
        "bucket",
        nargs="?",
        default=None,
        help="Target bucket (container for Azure). Overrides BUCKET_NAME in .env.",
    )
    run.add_argument(
        "sources",
        nargs="*",
        help="Source roots to scan. Defaults to the current directory.",
    )
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="List archives and their remote keys without splitting or uploading.",
    )

    cleanup = sub.add_parser("cleanup", help="Abort abandoned multipart sessions.")
    cleanup.add_argument("bucket", nargs="?", default=None)
    cleanup.add_argument(
        "max_age_days",
        nargs="?",
        type=int,
        default=None,
        help="Abort sessions at least this many days old (default 3).",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _log_summary(logger: logging.Logger, results: List[ArchiveResult], not_attempted: int) -> None:
    verified = [r for r in results if r.state is ArchiveState.VERIFIED]
    skipped = [r for r in results if r.state is ArchiveState.SKIPPED]
    failed = [r for r in results if r.state is ArchiveState.FAILED]

    logger.info("")
    logger.info("=" * 60)
    logger.info(
        f"  Summary: {len(verified)} uploaded, {len(skipped)} already processed, "
        f"{len(failed)} failed"
    )
    if failed:
        logger.warning(f"  {len(failed)} archive(s) did not complete:")
        for r in failed:
            logger.warning(f"    - {r.archive.key}  ({r.reason})")
        logger.warning("  Re-run the same command to resume failed archives.")
    if not_attempted:
        logger.warning(f"  {not_attempted} archive(s) were not attempted.")
    logger.info("=" * 60)


def cmd_run(args: argparse.Namespace, cfg: Config, logger: logging.Logger) -> int:
    bucket = args.bucket or cfg.bucket_name
    if not bucket:
        logger.error("Usage: cold-archiver run <bucket-name> [source ...]")
        return 1

    sources = [Path(s).expanduser().resolve() for s in (args.sources or [str(Path.cwd())])]
    for source in sources:
        if not source.is_dir():
            logger.error(f"Source is not a directory: {source}")
            return 1

    if args.dry_run:
        count = 0
        for source in sources:
            for archive in discover_archives(source, cfg.archive_suffixes, cfg.key_prefix):
                count += 1
                logger.info(f"[DRY RUN] {archive.path}  →  {bucket}/{archive.key}")
        logger.info(f"[DRY RUN] {count} archive(s) found. Nothing was uploaded.")
        return 0

    splitter = SevenZipSplitter(cfg.seven_zip, logger)
    if not splitter.available():
        logger.error(f"7-Zip ('{cfg.seven_zip}') not found. Install it or set SEVEN_ZIP.")
        return 1

    try:
        store = build_store(cfg, bucket, logger)
    except StoreError as exc:
        logger.error(str(exc))
        return 1
    coordinator = build_coordinator(cfg, store, splitter, logger)

    results: List[ArchiveResult] = []
    not_attempted = 0
    try:
        with run_lock(bucket, sources):
            for source in sources:
                logger.info(f"Archiving bundles from {source} to bucket: {bucket}")
                summary = coordinator.run(
                    discover_archives(source, cfg.archive_suffixes, cfg.key_prefix)
                )
                results.extend(summary.results)
                not_attempted += len(summary.not_attempted)
                if summary.not_attempted:
                    break
                logger.info(f"All bundles under {source} have been processed.")
    except AlreadyRunningError as exc:
        logger.warning(f"{exc} Exiting.")
        return 0

    _log_summary(logger, results, not_attempted)
    if any(r.state is ArchiveState.FAILED for r in results) or not_attempted:
        return 2
    return 0


def cmd_cleanup(args: argparse.Namespace, cfg: Config, logger: logging.Logger) -> int:
    bucket = args.bucket or cfg.bucket_name
    if not bucket:
        logger.error("Usage: cold-archiver cleanup <bucket-name> [days]")
        return 1
    max_age = args.max_age_days if args.max_age_days is not None else cfg.cleanup_max_age_days
    if max_age < 0:
        logger.error("max_age_days cannot be negative.")
        return 1

    try:
        store = build_store(cfg, bucket, logger)
        abort_stale_sessions(store, max_age, logger=logger)
    except StoreError as exc:
        logger.error(str(exc))
        return 1
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    # Config must be valid before any store is built
    try:
        cfg = Config()
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    logger = build_logger(cfg.log_dir)
    logger.info("=" * 60)
    logger.info(f"  cold-archiver {args.command}  ({cfg.backend}, {cfg.storage_class})")
    logger.info("=" * 60)

    if args.command == "cleanup":
        return cmd_cleanup(args, cfg, logger)
    return cmd_run(args, cfg, logger)


if __name__ == "__main__":
    sys.exit(main())
