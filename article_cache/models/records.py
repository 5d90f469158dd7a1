"""
Immutable snapshots of the records kept by the metadata store.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CacheItem:
    """One cached resource (an article document, an image, a stylesheet...)."""

    key: str
    is_downloaded: bool = False
    is_pending_delete: bool = False
    from_migration: bool = False
    group_keys: frozenset[str] = field(default_factory=frozenset)

    @property
    def reference_count(self) -> int:
        """Number of groups currently referencing this item."""
        return len(self.group_keys)

    @property
    def is_orphaned(self) -> bool:
        return not self.group_keys


@dataclass(frozen=True)
class CacheGroup:
    """The set of items owned by one logical unit, e.g. one article."""

    key: str
    item_keys: frozenset[str] = field(default_factory=frozenset)

    def __contains__(self, item_key: str) -> bool:
        return item_key in self.item_keys

    def __len__(self) -> int:
        return len(self.item_keys)
