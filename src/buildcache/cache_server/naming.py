"""Mapping between request URLs and backing-store object names."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

AC_NAMESPACE = "ac"
CAS_NAMESPACE = "cas"
NAMESPACES = (AC_NAMESPACE, CAS_NAMESPACE)
CACHE_METHODS = ("GET", "PUT")


@dataclass(frozen=True)
class CacheRequest:
    method: str
    namespace: str
    object_key: str


def object_name_from_url(url: str) -> str:
    """Convert a request URL ("https://host/ac/abc") into its object name ("ac/abc").

    Only the single leading separator is dropped; the path is not normalised.
    """
    return urlsplit(url).path[1:]


def classify_request(method: str, url: str) -> Optional[CacheRequest]:
    """Return the cache operation a request maps to, or ``None`` when it is not one."""
    method = method.upper()
    if method not in CACHE_METHODS:
        return None
    object_key = object_name_from_url(url)
    namespace, sep, remainder = object_key.partition("/")
    if not sep or not remainder or namespace not in NAMESPACES:
        return None
    return CacheRequest(method=method, namespace=namespace, object_key=object_key)
