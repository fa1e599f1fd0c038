"""Finding or starting the remote multipart session for an archive key."""

import logging
from typing import Optional

from cold_archiver.errors import SessionResolutionError, StoreError
from cold_archiver.models import SessionHandle
from cold_archiver.store import ObjectStore


class SessionRegistry:
    """Resolves sessions purely by remote key.

    No local run id is involved, so a run after a crash (or on another
    machine) finds the same session instead of orphaning it.
    """

    def __init__(
        self,
        store: ObjectStore,
        storage_class: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.storage_class = storage_class
        self.logger = logger or logging.getLogger("cold_archiver")

    def resolve_session(self, key: str) -> SessionHandle:
        self.logger.info(f"Checking for existing multipart upload for {key} ...")
        try:
            session_ids = self.store.list_sessions(key)
        except StoreError as exc:
            raise SessionResolutionError(f"Cannot list sessions for {key}: {exc}") from exc

        if session_ids:
            if len(session_ids) > 1:
                self.logger.warning(
                    f"{len(session_ids)} open sessions for {key}; resuming the oldest. "
                    f"Run 'cleanup' to abort the others."
                )
            session_id = session_ids[0]
            self.logger.info(f"Resuming multipart upload with session id {session_id}")
            return SessionHandle(self.store.bucket, key, session_id, resumed=True)

        return self._create_session(key)

    def restart_session(self, key: str) -> SessionHandle:
        """Abort every open session for key and start a new one.

        Used when the local chunk set was split again, so parts staged from an
        earlier split cannot be reused.
        """
        try:
            session_ids = self.store.list_sessions(key)
            for session_id in session_ids:
                self.logger.info(f"Aborting multipart upload {session_id} for {key}")
                self.store.abort_session(key, session_id)
        except StoreError as exc:
            raise SessionResolutionError(
                f"Cannot discard stale sessions for {key}: {exc}"
            ) from exc
        return self._create_session(key)

    def _create_session(self, key: str) -> SessionHandle:
        try:
            session_id = self.store.create_session(key, self.storage_class)
        except StoreError as exc:
            raise SessionResolutionError(f"Cannot create session for {key}: {exc}") from exc
        if not session_id:
            raise SessionResolutionError(f"Store returned an empty session id for {key}")
        self.logger.info(
            f"Initiated multipart upload ({self.storage_class}) with session id {session_id}"
        )
        return SessionHandle(self.store.bucket, key, session_id, resumed=False)
