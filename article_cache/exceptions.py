"""
Defines custom exceptions for the cache so failures can be handled per item.
"""


class ArticleCacheError(Exception):
    """Base exception for all application-specific errors."""


class FetchFailure(ArticleCacheError):
    """Raised when a manifest or resource could not be fetched over the network."""


class StoreIOFailure(ArticleCacheError):
    """Raised when a payload could not be written to or removed from disk."""


class MetadataCommitFailure(ArticleCacheError):
    """
    Raised when pending metadata changes could not be committed.

    In-memory state may disagree with durable state until the next sync pass.
    """


class MigrationDataMissing(ArticleCacheError):
    """Raised when legacy content for a migration is absent or unreadable."""


class ConfigurationError(ArticleCacheError):
    """Raised for issues related to configuration loading or validation."""
