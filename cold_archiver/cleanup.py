"""Aborting multipart sessions that were abandoned long ago."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from cold_archiver.errors import StoreError
from cold_archiver.store import ObjectStore


def abort_stale_sessions(
    store: ObjectStore,
    max_age_days: int = 3,
    now: Optional[datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> Tuple[int, int]:
    """Abort every session initiated at least ``max_age_days`` ago.

    A failed abort is logged and counted; it may have been completed or
    aborted concurrently. Returns ``(aborted, failed)``.
    """
    logger = logger or logging.getLogger("cold_archiver")
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=max_age_days)
    logger.info(f"Looking for sessions in {store.bucket} initiated before {cutoff.isoformat()}")

    aborted = failed = 0
    for info in store.list_sessions_initiated_before(cutoff):
        logger.info(f"Deleting multipart upload: \"{info.key}\"")
        try:
            store.abort_session(info.key, info.session_id)
        except StoreError as exc:
            failed += 1
            logger.warning(
                f"Failed to abort upload for {info.key} in bucket {store.bucket}. "
                f"It may have already been aborted or completed. ({exc})"
            )
        else:
            aborted += 1
            logger.info(f"Successfully aborted upload for {info.key} in bucket {store.bucket}")

    logger.info(f"Aborted {aborted} session(s), {failed} failure(s).")
    return aborted, failed
