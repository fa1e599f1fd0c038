"""Azure Block Blob backend.

Azure has no explicit multipart session. The uncommitted block list of a blob
plays that role: staged blocks survive process restarts until they are
committed (or garbage-collected by Azure after seven days), so the blob name
doubles as the session id.
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings, StandardBlobTier

from cold_archiver.errors import StoreError
from cold_archiver.models import ObjectInfo, RemotePart, SessionHandle, SessionInfo
from cold_archiver.store import ObjectStore


def block_id(part_number: int) -> str:
    return base64.b64encode(part_number.to_bytes(8, byteorder="big")).decode("ascii")


def part_number_of(block: str) -> Optional[int]:
    """Inverse of block_id; None for blocks some other tool staged."""
    try:
        raw = base64.b64decode(block, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 8:
        return None
    return int.from_bytes(raw, byteorder="big")


class AzureBlobStore(ObjectStore):
    """One container, treated as the bucket."""

    def __init__(
        self,
        container_name: str,
        conn_str: Optional[str] = None,
        storage_class: str = "Archive",
        container_client: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bucket = container_name
        self.storage_class = storage_class
        self.logger = logger or logging.getLogger("cold_archiver")
        if container_client is None:
            container_client = self._connect(conn_str)
        self.container = container_client

    def _connect(self, conn_str: Optional[str]):
        try:
            svc = BlobServiceClient.from_connection_string(
                conn_str,
                connection_timeout=30,
                read_timeout=300,
            )
        except (AzureError, ValueError) as exc:
            raise StoreError(f"Cannot connect to Azure: {exc}") from exc

        container_client = svc.get_container_client(self.bucket)
        try:
            container_client.create_container()
            self.logger.info(f"Created container '{self.bucket}'.")
        except ResourceExistsError:
            self.logger.debug(f"Container '{self.bucket}' already exists.")
        except AzureError as exc:
            raise StoreError(f"Cannot open container '{self.bucket}': {exc}") from exc
        return container_client

    def _blob(self, key: str):
        return self.container.get_blob_client(key)

    def _block_lists(self, key: str):
        try:
            return self._blob(key).get_block_list("all")
        except ResourceNotFoundError:
            return [], []
        except AzureError as exc:
            raise StoreError(f"get_block_list failed for {key}: {exc}") from exc

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self, key: str) -> List[str]:
        _, uncommitted = self._block_lists(key)
        return [key] if uncommitted else []

    def create_session(self, key: str, storage_class: str) -> str:
        # Nothing to create remotely; the tier is applied when the list is committed.
        self.storage_class = storage_class
        return key

    def list_parts(self, session: SessionHandle) -> Dict[int, RemotePart]:
        _, uncommitted = self._block_lists(session.key)
        parts: Dict[int, RemotePart] = {}
        for block in uncommitted:
            number = part_number_of(block.id)
            if number is None:
                self.logger.debug(f"Ignoring foreign block {block.id!r} on {session.key}")
                continue
            parts[number] = RemotePart(number, block.id, block.size)
        return parts

    def upload_part(self, session: SessionHandle, part_number: int, path: Path, size: int) -> str:
        tag = block_id(part_number)
        try:
            with path.open("rb") as fh:
                self._blob(session.key).stage_block(block_id=tag, data=fh, length=size)
        except AzureError as exc:
            raise StoreError(f"stage_block {part_number} failed: {exc}") from exc
        return tag

    def complete_session(self, session: SessionHandle, parts: List[RemotePart]) -> ObjectInfo:
        block_list = [BlobBlock(block_id=p.tag) for p in parts]
        metadata = {
            "uploaded_by": "cold_archiver",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "part_count": str(len(parts)),
        }
        try:
            resp = self._blob(session.key).commit_block_list(
                block_list,
                metadata=metadata,
                content_settings=ContentSettings(content_type="application/zip"),
                standard_blob_tier=StandardBlobTier(self.storage_class),
            )
        except (AzureError, ValueError) as exc:
            raise StoreError(f"commit_block_list failed for {session.key}: {exc}") from exc
        return ObjectInfo(session.key, etag=resp.get("etag"))

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        try:
            props = self._blob(key).get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise StoreError(f"get_blob_properties failed for {key}: {exc}") from exc
        # Block blobs built from a block list carry no whole-object md5.
        return ObjectInfo(key, content_length=props.size, etag=props.etag)

    def object_exists(self, key: str) -> bool:
        try:
            return bool(self._blob(key).exists())
        except AzureError as exc:
            raise StoreError(f"exists failed for {key}: {exc}") from exc

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def list_sessions_initiated_before(self, cutoff: datetime) -> List[SessionInfo]:
        stale = []
        try:
            blobs = list(self.container.list_blobs(include=["uncommittedblobs"]))
        except AzureError as exc:
            raise StoreError(f"list_blobs failed: {exc}") from exc
        for blob in blobs:
            committed, uncommitted = self._block_lists(blob.name)
            if committed or not uncommitted:
                continue
            if blob.last_modified is not None and blob.last_modified <= cutoff:
                stale.append(SessionInfo(blob.name, blob.name, blob.last_modified))
        return stale

    def abort_session(self, key: str, session_id: str) -> None:
        try:
            self._blob(key).delete_blob()
        except AzureError as exc:
            raise StoreError(f"delete_blob failed for {key}: {exc}") from exc
