from __future__ import annotations

import pytest

from buildcache.cache_server.naming import CacheRequest, classify_request, object_name_from_url


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://localhost/ac/something", "ac/something"),
        ("http://cache.example:8080/cas/abc123def456", "cas/abc123def456"),
        ("https://localhost/cas/nested/path", "cas/nested/path"),
        ("https://localhost/cas/abc?ignored=1", "cas/abc"),
        ("https://localhost//ac/double", "/ac/double"),
        ("https://localhost/", ""),
    ],
)
def test_object_name_from_url(url: str, expected: str) -> None:
    assert object_name_from_url(url) == expected


def test_classify_cache_requests() -> None:
    assert classify_request("put", "https://h/ac/abc") == CacheRequest("PUT", "ac", "ac/abc")
    assert classify_request("GET", "https://h/cas/abc") == CacheRequest("GET", "cas", "cas/abc")


@pytest.mark.parametrize(
    ("method", "url"),
    [
        ("DELETE", "https://h/ac/abc"),
        ("GET", "https://h/ac/"),
        ("GET", "https://h/ac"),
        ("GET", "https://h/credentials/alice"),
        ("PUT", "https://h/blah/blah/fishcakes"),
    ],
)
def test_classify_rejects_non_cache_requests(method: str, url: str) -> None:
    assert classify_request(method, url) is None
