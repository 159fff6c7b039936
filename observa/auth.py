"""
API key authentication and pre-pipeline gates for the ingest endpoint.

Keys are never stored in clear: ``api_keys.key_hash`` holds the SHA-256 hex
digest. Server keys (``sk_``) work from anywhere; publishable keys (``pk_``)
only from their ``allowed_origins``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any
from urllib.parse import urlparse

from observa import config
from observa.errors import ForbiddenError, QuotaExceededError, RateLimitError, UnauthorizedError
from observa.pipeline.guard import CredentialScope
from observa.pipeline.quota import QuotaAccountant

logger = logging.getLogger(__name__)

KEY_PREFIXES = ("sk_", "pk_")
UNAUTHORIZED_HINT = "Provide a valid Bearer token in the Authorization header"


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


# ============================================================================
# Key records
# ============================================================================


@dataclass
class ApiKeyRecord:
    id: str
    tenant_id: str
    project_id: str | None
    key_prefix: str
    name: str = ""
    scopes: dict[str, bool] = field(default_factory=lambda: {"ingest": True, "query": False})
    allowed_origins: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any) -> ApiKeyRecord:
        scopes = row["scopes"]
        if isinstance(scopes, str):
            scopes = json.loads(scopes)
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            project_id=str(row["project_id"]) if row["project_id"] else None,
            key_prefix=row["key_prefix"],
            name=row["name"] or "",
            scopes=scopes or {"ingest": True, "query": False},
            allowed_origins=list(row["allowed_origins"] or []),
        )

    def has_scope(self, scope: str) -> bool:
        return self.scopes.get(scope) is True

    def to_scope(self) -> CredentialScope:
        return CredentialScope(
            tenant_id=self.tenant_id,
            project_id=self.project_id,
            scopes=frozenset(name for name, granted in self.scopes.items() if granted),
            key_id=self.id,
        )


def _strip_origin(value: str) -> str:
    for scheme in ("https://", "http://"):
        if value.startswith(scheme):
            value = value[len(scheme):]
            break
    return value.rstrip("/")


def _host_matches(host: str, allowed: str) -> bool:
    return host == allowed or host.endswith(f".{allowed}")


def is_origin_allowed(record: ApiKeyRecord, origin: str | None, referer: str | None) -> bool:
    """Origin check for publishable keys; subdomains of an allowed origin match."""
    if record.key_prefix == "sk_":
        return True
    if record.key_prefix != "pk_" or not record.allowed_origins:
        return False

    if origin:
        normalized = _strip_origin(origin)
        if any(_host_matches(normalized, _strip_origin(a)) for a in record.allowed_origins):
            return True

    if referer:
        referer_host = urlparse(referer).hostname
        if referer_host:
            for allowed in record.allowed_origins:
                allowed_host = urlparse(allowed).hostname
                if allowed_host and _host_matches(referer_host, allowed_host):
                    return True

    return False


class ApiKeyResolver:
    """Looks up API keys by hash, with a short-lived in-memory cache."""

    def __init__(self, pool: Any, cache_ttl_seconds: float = 60.0):
        self.pool = pool
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: dict[str, tuple[ApiKeyRecord, float]] = {}

    def invalidate(self) -> None:
        self._cache.clear()

    async def resolve(self, key: str | None) -> ApiKeyRecord | None:
        """Return the active key record for ``key``, or None if unknown or revoked."""
        if not key or not key.startswith(KEY_PREFIXES):
            return None

        key_hash = hash_api_key(key)
        cached = self._cache.get(key_hash)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, tenant_id, project_id, name, key_prefix, scopes, allowed_origins
                FROM api_keys
                WHERE key_hash = $1 AND revoked_at IS NULL
                """,
                key_hash,
            )
            if row is None:
                self._cache.pop(key_hash, None)
                return None

            await conn.execute("UPDATE api_keys SET last_used_at = NOW() WHERE id = $1", row["id"])

        record = ApiKeyRecord.from_row(row)
        self._cache[key_hash] = (record, time.monotonic() + self.cache_ttl_seconds)
        return record


def extract_bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def authenticate(
    resolver: ApiKeyResolver,
    authorization: str | None,
    origin: str | None = None,
    referer: str | None = None,
    required_scope: str = "ingest",
) -> ApiKeyRecord:
    """
    Resolve the caller's key and check scope and origin.

    Raises:
        UnauthorizedError: missing, unknown or revoked key (401)
        ForbiddenError: key lacks ``required_scope`` or origin not allowed (403)
    """
    record = await resolver.resolve(extract_bearer(authorization))
    if record is None:
        raise UnauthorizedError("Invalid or missing API key", {"hint": UNAUTHORIZED_HINT})

    if not record.has_scope(required_scope):
        kind = "publishable" if record.key_prefix == "pk_" else "server"
        raise ForbiddenError(
            "API key does not have permission for this operation",
            {
                "reason": f"{kind}_key_not_allowed_for_{required_scope}",
                "key_prefix": record.key_prefix,
                "required_scope": required_scope,
            },
        )

    if not is_origin_allowed(record, origin, referer):
        logger.warning(
            "INGEST_REJECTED: origin not allowed key=%s origin=%s",
            record.id,
            origin or referer or "missing",
        )
        raise ForbiddenError(
            "API key does not have permission for this operation",
            {
                "reason": "origin_not_allowed",
                "key_prefix": record.key_prefix,
                "origin": origin or referer or "missing",
            },
        )

    return record


# ============================================================================
# Rate Limiting
# ============================================================================


class RateLimiter:
    """Sliding window rate limiter keyed by tenant[:project]."""

    def __init__(self, requests_per_minute: int | None = None):
        self._requests_per_minute = requests_per_minute or config.RATE_LIMIT_PER_MINUTE
        self._window_size = 60
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    @property
    def limit(self) -> int:
        return self._requests_per_minute

    def is_allowed(self, key: str) -> tuple[bool, dict[str, Any]]:
        now = time.time()
        window_start = now - self._window_size

        with self._lock:
            self._requests[key] = [t for t in self._requests[key] if t > window_start]
            current_count = len(self._requests[key])

            if current_count >= self._requests_per_minute:
                oldest = min(self._requests[key]) if self._requests[key] else now
                retry_after = int(oldest + self._window_size - now) + 1
                return False, {
                    "limit": self._requests_per_minute,
                    "remaining": 0,
                    "retry_after": retry_after,
                }

            self._requests[key].append(now)
            return True, {
                "limit": self._requests_per_minute,
                "remaining": self._requests_per_minute - current_count - 1,
                "retry_after": 0,
            }

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


def check_rate_limit(limiter: RateLimiter, scope: CredentialScope) -> dict[str, Any]:
    """Raise RateLimitError (429) when the scope is over its per-minute limit."""
    allowed, info = limiter.is_allowed(scope.rate_limit_key)
    if not allowed:
        logger.info("Rate limit exceeded for %s", scope.rate_limit_key)
        raise RateLimitError(
            "Rate limit exceeded. Please retry after the specified time.",
            {
                "limit": info["limit"],
                "window_seconds": 60,
                "retry_after": info["retry_after"],
            },
            retry_after=info["retry_after"],
        )
    return info


async def check_quota(quota: QuotaAccountant | None, scope: CredentialScope) -> None:
    """
    Raise QuotaExceededError (429) when the project's monthly quota is used up.

    Tenant-wide keys have no project quota. Lookup failures let the request
    through.
    """
    if quota is None or not scope.project_id:
        return
    try:
        status = await quota.check_quota(scope.tenant_id, scope.project_id)
    except Exception as e:
        logger.error("Quota check failed for project %s, allowing request: %s", scope.project_id, e)
        return

    if not status.allowed:
        raise QuotaExceededError(
            "Monthly event quota has been exceeded",
            {
                "quota": status.quota,
                "used": status.used,
                "reset_at": status.reset_at.isoformat(),
            },
            retry_after=max(0, int(status.reset_at.timestamp() - time.time())),
        )
