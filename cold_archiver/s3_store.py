"""S3 multipart-upload backend."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from cold_archiver.errors import StoreError
from cold_archiver.models import ObjectInfo, RemotePart, SessionHandle, SessionInfo
from cold_archiver.store import ObjectStore

_NOT_FOUND = {"404", "NoSuchKey", "NotFound"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore(ObjectStore):
    """Talks to one bucket through a boto3 S3 client.

    The client's own retries are turned off (``max_attempts=1``) so a failed
    call surfaces immediately; re-running the engine resumes from remote state.
    """

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.bucket = bucket
        self.logger = logger or logging.getLogger("cold_archiver")
        if client is None:
            try:
                session = boto3.Session(profile_name=profile, region_name=region)
                client = session.client(
                    "s3",
                    endpoint_url=endpoint_url,
                    config=BotoConfig(
                        retries={"max_attempts": 1, "mode": "standard"},
                        connect_timeout=30,
                        read_timeout=300,
                    ),
                )
            except BotoCoreError as exc:
                raise StoreError(f"Cannot create S3 client: {exc}") from exc
        self.s3 = client

    def _call(self, description: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except (BotoCoreError, ClientError) as exc:
            raise StoreError(f"{description} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _iter_uploads(self, prefix: str = ""):
        paginator = self.s3.get_paginator("list_multipart_uploads")
        kwargs = {"Bucket": self.bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        for page in paginator.paginate(**kwargs):
            yield from page.get("Uploads", [])

    def list_sessions(self, key: str) -> List[str]:
        uploads = self._call(
            "list_multipart_uploads",
            lambda: [u for u in self._iter_uploads(key) if u["Key"] == key],
        )
        uploads.sort(key=lambda u: u["Initiated"])
        return [u["UploadId"] for u in uploads]

    def create_session(self, key: str, storage_class: str) -> str:
        resp = self._call(
            "create_multipart_upload",
            lambda: self.s3.create_multipart_upload(
                Bucket=self.bucket, Key=key, StorageClass=storage_class
            ),
        )
        return resp["UploadId"]

    def list_parts(self, session: SessionHandle) -> Dict[int, RemotePart]:
        def fetch():
            parts: Dict[int, RemotePart] = {}
            paginator = self.s3.get_paginator("list_parts")
            for page in paginator.paginate(
                Bucket=self.bucket, Key=session.key, UploadId=session.session_id
            ):
                for part in page.get("Parts", []):
                    number = part["PartNumber"]
                    parts[number] = RemotePart(
                        number, part["ETag"], part.get("Size"), _part_md5(part["ETag"])
                    )
            return parts

        return self._call("list_parts", fetch)

    def upload_part(self, session: SessionHandle, part_number: int, path: Path, size: int) -> str:
        def send():
            with path.open("rb") as fh:
                return self.s3.upload_part(
                    Bucket=self.bucket,
                    Key=session.key,
                    UploadId=session.session_id,
                    PartNumber=part_number,
                    ContentLength=size,
                    Body=fh,
                )

        resp = self._call(f"upload_part {part_number}", send)
        return resp["ETag"]

    def complete_session(self, session: SessionHandle, parts: List[RemotePart]) -> ObjectInfo:
        payload = {"Parts": [{"ETag": p.tag, "PartNumber": p.part_number} for p in parts]}
        resp = self._call(
            "complete_multipart_upload",
            lambda: self.s3.complete_multipart_upload(
                Bucket=self.bucket,
                Key=session.key,
                UploadId=session.session_id,
                MultipartUpload=payload,
            ),
        )
        etag = resp.get("ETag")
        return ObjectInfo(session.key, etag=etag, digest=_digest_from_etag(etag))

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        try:
            resp = self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND:
                return None
            raise StoreError(f"head_object failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"head_object failed: {exc}") from exc
        etag = resp.get("ETag")
        return ObjectInfo(
            key,
            content_length=resp.get("ContentLength"),
            etag=etag,
            digest=_digest_from_etag(etag),
        )

    def object_exists(self, key: str) -> bool:
        resp = self._call(
            "list_objects_v2",
            lambda: self.s3.list_objects_v2(Bucket=self.bucket, Prefix=key, MaxKeys=1),
        )
        return any(obj["Key"] == key for obj in resp.get("Contents", []))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def list_sessions_initiated_before(self, cutoff: datetime) -> List[SessionInfo]:
        uploads = self._call("list_multipart_uploads", lambda: list(self._iter_uploads()))
        return [
            SessionInfo(u["Key"], u["UploadId"], u["Initiated"])
            for u in uploads
            if u["Initiated"] <= cutoff
        ]

    def abort_session(self, key: str, session_id: str) -> None:
        self._call(
            "abort_multipart_upload",
            lambda: self.s3.abort_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=session_id
            ),
        )


def _digest_from_etag(etag: Optional[str]) -> Optional[str]:
    """Multipart ETags look like ``"<md5 of part md5s>-<N>"``."""
    if not etag:
        return None
    etag = etag.strip('"')
    return etag if "-" in etag else None


def _part_md5(etag: Optional[str]) -> Optional[str]:
    """A part's ETag is its md5 unless the upload used SSE-KMS or SSE-C."""
    if not etag:
        return None
    etag = etag.strip('"').lower()
    return etag if re.fullmatch(r"[0-9a-f]{32}", etag) else None
