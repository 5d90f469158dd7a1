"""
Dataclasses for tracking cache session statistics.
"""

import time
from dataclasses import dataclass, field


@dataclass
class CacheStats:
    """Tracks what the cache did during one session."""

    items_downloaded: int = 0
    items_migrated: int = 0
    items_deleted: int = 0
    items_failed: int = 0
    items_discarded: int = 0
    manifests_fetched: int = 0
    manifests_failed: int = 0
    bytes_written: int = 0
    _start_time: float = field(default_factory=time.monotonic, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start_time

    def as_dict(self) -> dict[str, int]:
        return {
            "items_downloaded": self.items_downloaded,
            "items_migrated": self.items_migrated,
            "items_deleted": self.items_deleted,
            "items_failed": self.items_failed,
            "items_discarded": self.items_discarded,
            "manifests_fetched": self.manifests_fetched,
            "manifests_failed": self.manifests_failed,
            "bytes_written": self.bytes_written,
        }


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass over metadata and payload files."""

    missing_payloads: int = 0
    payloads_adopted: int = 0
    pending_deletes_retried: int = 0
    orphans_removed: int = 0
    stray_files_removed: int = 0
    empty_groups_removed: int = 0
    downloads_scheduled: int = 0

    @property
    def changed(self) -> bool:
        return any(
            (
                self.missing_payloads,
                self.payloads_adopted,
                self.pending_deletes_retried,
                self.orphans_removed,
                self.stray_files_removed,
                self.empty_groups_removed,
                self.downloads_scheduled,
            )
        )
