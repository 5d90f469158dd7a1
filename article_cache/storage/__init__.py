"""
Storage Layer.

This package handles all data persistence: the configuration file, the
metadata database and the payload files on disk.
"""

from .config_manager import ConfigManager
from .content_store import ContentStore, StoredPayload
from .metadata_store import MetadataStore

__all__ = ["ConfigManager", "ContentStore", "MetadataStore", "StoredPayload"]
