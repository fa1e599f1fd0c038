"""Resumable transfer of large bundle directories into cold object storage."""

__version__ = "1.0.0"
