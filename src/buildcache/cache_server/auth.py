"""Request authentication against stored credentials."""

from __future__ import annotations

import hmac
from typing import Mapping

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .credentials import CredentialCache, CredentialStore

LOGGER = structlog.get_logger("buildcache.auth")

TOKEN_ID_HEADER = "Bazel-Cache-Token-Id"
TOKEN_VALUE_HEADER = "Bazel-Cache-Token-Value"

AUTH_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_auth_failures_total", "Requests rejected for missing or invalid credentials")
)


def constant_time_equals(presented: str, stored: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


class Authenticator:
    """Checks a request's credential id/value headers.

    Fails closed: a missing header, an unknown id or a mismatched value all
    produce ``False``. Credential store failures propagate.
    """

    def __init__(self, cache: CredentialCache, store: CredentialStore) -> None:
        self.cache = cache
        self.store = store

    async def is_authenticated(self, headers: Mapping[str, str]) -> bool:
        credential_id = headers.get(TOKEN_ID_HEADER)
        presented = headers.get(TOKEN_VALUE_HEADER)
        if not credential_id or not presented:
            AUTH_FAILURES_COUNTER.inc()
            return False

        key = self.store.key_for(credential_id)
        stored = await self.cache.retrieve(key, lambda: self.store.fetch(credential_id))
        if stored is None:
            LOGGER.info("authentication_failed", credential_id=credential_id, reason="unknown_credential")
            AUTH_FAILURES_COUNTER.inc()
            return False

        if not constant_time_equals(presented, stored):
            LOGGER.info("authentication_failed", credential_id=credential_id, reason="value_mismatch")
            AUTH_FAILURES_COUNTER.inc()
            return False
        return True
