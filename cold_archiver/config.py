"""Environment / .env configuration."""

import base64
import binascii
import os
import re
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from cold_archiver.coordinator import FailureMode
from cold_archiver.verifier import VerifyPolicy

MIB = 1024 * 1024
GIB = 1024 * MIB

_DEFAULTS = {
    "STORE_BACKEND": "s3",
    "SEVEN_ZIP": "7z",
    "ARCHIVE_SUFFIXES": ".fcpbundle",
    "CONCURRENCY": 1,
    "MAX_RETRIES": 0,
    "RETRY_BASE_DELAY": 2,
    "VERIFY_POLICY": "checksum",
    "FAILURE_MODE": "isolate",
    "CLEANUP_MAX_AGE_DAYS": 3,
}

# backend -> (storage class, part size, min part bytes, max part bytes)
_BACKENDS = {
    "s3": ("DEEP_ARCHIVE", "5g", 5 * MIB, 5 * GIB),
    "azure": ("Archive", "4000m", 1 * MIB, 4000 * MIB),
}

_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": MIB, "g": GIB}


def parse_size(text: str) -> int:
    """Bytes in a 7-Zip volume size such as ``5g``, ``512m`` or ``100k``."""
    match = re.fullmatch(r"\s*(\d+)\s*([bkmg]?)\s*", text.lower())
    if not match:
        raise ValueError(f"PART_SIZE '{text}' is not a size like 5g, 512m or 100k.")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2)]


def _env(name: str, default: str) -> str:
    """Like os.getenv, but an empty value (``KEY=`` in .env) means unset."""
    return os.getenv(name) or default


def _int_env(name: str) -> int:
    raw = _env(name, str(_DEFAULTS[name]))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'.")


class Config:
    def __init__(self) -> None:
        load_dotenv()

        self.backend: str = _env("STORE_BACKEND", _DEFAULTS["STORE_BACKEND"]).strip().lower()
        if self.backend not in _BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {sorted(_BACKENDS)}, got '{self.backend}'."
            )
        storage_class, part_size, min_part, max_part = _BACKENDS[self.backend]

        self.bucket_name: str = _env("BUCKET_NAME", "")
        self.storage_class: str = _env("STORAGE_CLASS", storage_class)
        self.part_size: str = _env("PART_SIZE", part_size).strip().lower()
        self.seven_zip: str = _env("SEVEN_ZIP", _DEFAULTS["SEVEN_ZIP"])
        self.archive_suffixes: List[str] = [
            s.strip()
            for s in _env("ARCHIVE_SUFFIXES", _DEFAULTS["ARCHIVE_SUFFIXES"]).split(",")
            if s.strip()
        ]
        self.key_prefix: str = _env("KEY_PREFIX", "").strip("/")
        self.concurrency: int = _int_env("CONCURRENCY")
        self.max_retries: int = _int_env("MAX_RETRIES")
        self.retry_base_delay: int = _int_env("RETRY_BASE_DELAY")
        self.cleanup_max_age_days: int = _int_env("CLEANUP_MAX_AGE_DAYS")
        self.log_path: Optional[str] = os.getenv("LOG_PATH")

        self.aws_region: Optional[str] = os.getenv("AWS_REGION") or None
        self.aws_profile: Optional[str] = os.getenv("AWS_PROFILE") or None
        self.s3_endpoint_url: Optional[str] = os.getenv("S3_ENDPOINT_URL") or None
        self.azure_conn_str: str = _env("AZURE_CONN_STR", "")

        try:
            self.verify_policy = VerifyPolicy(
                _env("VERIFY_POLICY", _DEFAULTS["VERIFY_POLICY"]).strip().lower()
            )
        except ValueError:
            raise ValueError(
                f"VERIFY_POLICY must be one of {[p.value for p in VerifyPolicy]}."
            )
        try:
            self.failure_mode = FailureMode(
                _env("FAILURE_MODE", _DEFAULTS["FAILURE_MODE"]).strip().lower()
            )
        except ValueError:
            raise ValueError(f"FAILURE_MODE must be one of {[m.value for m in FailureMode]}.")

        if not self.archive_suffixes:
            raise ValueError("ARCHIVE_SUFFIXES must name at least one directory suffix.")
        if self.concurrency < 1:
            raise ValueError("CONCURRENCY must be at least 1.")
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES cannot be negative.")

        # Part size must fit the backend's part limits
        self.part_size_bytes: int = parse_size(self.part_size)
        if self.part_size_bytes > max_part:
            raise ValueError(
                f"PART_SIZE exceeds the {self.backend} maximum part size "
                f"({max_part // MIB} MB). Got {self.part_size_bytes // MIB} MB."
            )
        if self.part_size_bytes < min_part:
            raise ValueError(
                f"PART_SIZE must be at least {min_part // MIB} MB for {self.backend}."
            )

        if self.backend == "azure":
            self._validate_connection_string()

    @property
    def log_dir(self) -> Path:
        return Path(self.log_path) if self.log_path else Path.cwd() / "logs"

    def _validate_connection_string(self) -> None:
        """Check the Azure connection string before connecting."""
        cs = self.azure_conn_str.strip()
        if not cs:
            raise ValueError(
                "AZURE_CONN_STR not set. Copy .env.template to .env and fill in your credentials."
            )

        parts = {}
        for segment in cs.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            if "=" not in segment:
                raise ValueError(
                    f"Malformed AZURE_CONN_STR: segment '{segment}' has no '=' separator."
                )
            key, _, value = segment.partition("=")
            parts[key.strip()] = value.strip()

        for required in ("AccountName", "AccountKey", "DefaultEndpointsProtocol"):
            if required not in parts:
                raise ValueError(f"AZURE_CONN_STR is missing the '{required}' field.")

        raw_key = parts["AccountKey"]
        try:
            decoded = base64.b64decode(raw_key + "=" * (-len(raw_key) % 4), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("AZURE_CONN_STR AccountKey is not valid base64; it is truncated or corrupted.")
        # Azure storage keys decode to exactly 64 bytes
        if len(decoded) != 64:
            raise ValueError(
                f"AZURE_CONN_STR AccountKey decoded to {len(decoded)} bytes (expected 64)."
            )

        if parts["DefaultEndpointsProtocol"].lower() != "https":
            raise ValueError(
                "AZURE_CONN_STR uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
            )
