"""Record stores used by the persistence gateway."""

from .base import ScanStore
from .jsonl_store import JsonlScanStore

__all__ = ["JsonlScanStore", "ScanStore"]
