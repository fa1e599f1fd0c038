"""Remote object store command set used by the engine.

Backends translate their SDK errors into StoreError and never retry on their
own; the engine decides what a failed call means for the archive.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cold_archiver.models import ObjectInfo, RemotePart, SessionHandle, SessionInfo


class ObjectStore(ABC):
    bucket: str

    # Multipart sessions
    @abstractmethod
    def list_sessions(self, key: str) -> List[str]:
        """Ids of live sessions for exactly ``key``, oldest first."""

    @abstractmethod
    def create_session(self, key: str, storage_class: str) -> str:
        """Start a session and return its id."""

    @abstractmethod
    def list_parts(self, session: SessionHandle) -> Dict[int, RemotePart]:
        """Parts acknowledged so far, keyed by part number."""

    @abstractmethod
    def upload_part(self, session: SessionHandle, part_number: int, path: Path, size: int) -> str:
        """Upload one file as ``part_number`` and return its content tag."""

    @abstractmethod
    def complete_session(self, session: SessionHandle, parts: List[RemotePart]) -> ObjectInfo:
        """Materialise the object from an ordered, gap-free part list."""

    # Objects
    @abstractmethod
    def head_object(self, key: str) -> Optional[ObjectInfo]:
        """Object metadata, or None if there is no such object."""

    @abstractmethod
    def object_exists(self, key: str) -> bool:
        ...

    # Maintenance
    @abstractmethod
    def list_sessions_initiated_before(self, cutoff: datetime) -> List[SessionInfo]:
        ...

    @abstractmethod
    def abort_session(self, key: str, session_id: str) -> None:
        ...
