"""
Fetch Service Layer.

This package handles all communication with the page REST API: resource
manifests and the resources themselves.
"""

from .client import ArticleFetcher, FetchedResource

__all__ = ["ArticleFetcher", "FetchedResource"]
