"""
Utilities for deriving cache keys, REST endpoint URLs and payload filenames
from article and resource URLs.
"""

import hashlib
import re
from enum import Enum
from urllib.parse import quote, unquote, urlsplit, urlunsplit

ARTICLE_PATH_PATTERN = re.compile(r"^/wiki/(?P<title>[^?#]+)$")

# Characters left unescaped when re-encoding a URL path
_PATH_SAFE_CHARS = "/:@!$&'()*+,;=-._~"


class EndpointType(Enum):
    """REST endpoints an article can be cached from. Values are path segments."""

    MOBILE_HTML = "mobile-html"
    MOBILE_HTML_OFFLINE_RESOURCES = "mobile-html-offline-resources"
    MEDIA_LIST = "media-list"


def database_key(url: str) -> str | None:
    """
    Builds the canonical key for a URL.

    Protocol-relative and plain http URLs are promoted to https, the host is
    lower-cased, the fragment is dropped and the path encoding normalized so
    that equivalent spellings of a URL map to one key.

    Returns:
        The canonical key, or None if the URL has no host.
    """
    url = url.strip()
    if url.startswith("//"):
        url = f"https:{url}"

    parts = urlsplit(url)
    if not parts.hostname:
        return None

    scheme = "https" if parts.scheme in ("", "http", "https") else parts.scheme
    netloc = parts.hostname.lower()
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    path = quote(unquote(parts.path), safe=_PATH_SAFE_CHARS) or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def site_url(article_url: str) -> str | None:
    """Returns the scheme and host of an article URL (e.g. 'https://en.wikipedia.org')."""
    key = database_key(article_url)
    if not key:
        return None
    parts = urlsplit(key)
    return f"{parts.scheme}://{parts.netloc}"


def article_title(article_url: str) -> str | None:
    """Extracts the page title from a desktop article URL, or None if it isn't one."""
    key = database_key(article_url)
    if not key:
        return None
    match = ARTICLE_PATH_PATTERN.match(urlsplit(key).path)
    if not match:
        return None
    return unquote(match.group("title")).replace(" ", "_")


def rest_endpoint_url(site: str, endpoint_type: EndpointType, title: str) -> str:
    """Builds the REST API URL for a page endpoint on the given site."""
    return (
        f"{site.rstrip('/')}/api/rest_v1/page/{endpoint_type.value}/"
        f"{quote(title, safe='')}"
    )


def mobile_html_url(article_url: str) -> str | None:
    """Converts a desktop article URL to the URL of its mobile-html rendering."""
    site = site_url(article_url)
    title = article_title(article_url)
    if not site or not title:
        return None
    return rest_endpoint_url(site, EndpointType.MOBILE_HTML, title)


def resolve_download_url(key: str) -> str:
    """
    Resolves the URL a cache key is downloaded from.

    Article keys are stored in their desktop form and fetched from the
    mobile-html endpoint; every other key is a resource URL fetched as-is.
    """
    return mobile_html_url(key) or key


def content_filename(key: str) -> str:
    """Generates a stable, filesystem-safe filename for a cache key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
