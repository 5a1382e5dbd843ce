"""
Remote source fetching for scheduled imports.

Uses niquests AsyncSession. Responses are cached in url_fetch_cache and
revalidated with ETag / Last-Modified; Cache-Control decides whether and
for how long a body may be reused.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

import niquests
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import SchedulerSettings, get_settings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.url_fetch_cache import UrlFetchCache
from timetiles.schemas.enums import AuthType
from timetiles.schemas.jsonb_types import AuthConfig, CachePolicy
from timetiles.services.exceptions import (
    ConfigurationError,
    TransientExternalFailure,
    ValidationError,
)
from timetiles.services.file_parsing import detect_file_type

logger = logging.getLogger(__name__)

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


@dataclass
class FetchResult:
    """A downloaded (or cached) source body."""

    url: str
    content: bytes
    content_type: str | None
    file_type: str
    from_cache: bool = False
    etag: str | None = None
    last_modified: str | None = None

    @property
    def filename(self) -> str:
        name = urlparse(self.url).path.rsplit("/", 1)[-1]
        return name or f"download.{self.file_type}"


@dataclass
class CacheDirectives:
    no_store: bool = False
    no_cache: bool = False
    max_age: int | None = None


def parse_cache_control(header: str | None) -> CacheDirectives:
    if not header:
        return CacheDirectives()
    value = header.lower()
    match = _MAX_AGE_RE.search(value)
    return CacheDirectives(
        no_store="no-store" in value,
        no_cache="no-cache" in value,
        max_age=int(match.group(1)) if match else None,
    )


def build_auth_headers(auth: AuthConfig) -> dict[str, str]:
    """Request headers for the configured authentication."""
    headers = dict(auth.custom_headers)
    if auth.type == AuthType.API_KEY:
        if not auth.api_key:
            raise ConfigurationError("API key authentication configured without a key")
        headers[auth.api_key_header] = auth.api_key
    elif auth.type == AuthType.BEARER:
        if not auth.bearer_token:
            raise ConfigurationError("Bearer authentication configured without a token")
        headers["Authorization"] = f"Bearer {auth.bearer_token}"
    elif auth.type == AuthType.BASIC:
        if not auth.username:
            raise ConfigurationError("Basic authentication configured without a username")
        token = base64.b64encode(f"{auth.username}:{auth.password or ''}".encode()).decode()
        headers["Authorization"] = f"Basic {token}"
    return headers


def cache_key(url: str, headers: dict[str, str]) -> str:
    """One cache entry per URL and credential set."""
    fingerprint = "|".join(f"{k.lower()}={v}" for k, v in sorted(headers.items()))
    return hashlib.sha256(f"{url}#{fingerprint}".encode()).hexdigest()


class UrlFetchService:
    """Downloads scheduled import sources with HTTP caching."""

    def __init__(self, db: AsyncSession, settings: SchedulerSettings | None = None):
        self.db = db
        self.settings = settings or get_settings().scheduler
        self._session: niquests.AsyncSession | None = None

    async def __aenter__(self) -> UrlFetchService:
        self._session = niquests.AsyncSession()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> niquests.AsyncSession:
        """Get or create the HTTP session."""
        if self._session is None:
            self._session = niquests.AsyncSession()
        return self._session

    # =========================================================================
    # Cache
    # =========================================================================

    async def _get_cached(self, key: str) -> UrlFetchCache | None:
        result = await self.db.execute(
            select(UrlFetchCache).where(UrlFetchCache.cache_key == key, UrlFetchCache.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    def _ttl(self, directives: CacheDirectives) -> int:
        if directives.max_age is not None:
            return min(directives.max_age, self.settings.max_cache_ttl_seconds)
        return self.settings.default_cache_ttl_seconds

    async def _store(
        self,
        key: str,
        entry: UrlFetchCache | None,
        url: str,
        response: Any,
        directives: CacheDirectives,
    ) -> None:
        """Write or drop the cache entry. Best-effort, in a SAVEPOINT; the caller commits."""
        if self.db.new or self.db.dirty or self.db.deleted:
            await self.db.flush()
        try:
            async with self.db.begin_nested():
                if directives.no_store or directives.no_cache:
                    if entry is not None:
                        await self.db.delete(entry)
                    return
                if entry is None:
                    entry = UrlFetchCache(cache_key=key, url=url, content=b"")
                entry.content = response.content or b""
                entry.content_type = response.headers.get("Content-Type")
                entry.etag = response.headers.get("ETag")
                entry.last_modified = response.headers.get("Last-Modified")
                entry.expires_at = utc_now() + timedelta(seconds=self._ttl(directives))
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to write fetch cache for {url}: {e}")

    async def _serve_cached(self, entry: UrlFetchCache, url: str) -> FetchResult:
        result = self._result(url, entry.content, entry.content_type, True, entry.etag, entry.last_modified)
        if self.db.new or self.db.dirty or self.db.deleted:
            await self.db.flush()
        try:
            async with self.db.begin_nested():
                entry.hit_count += 1
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to count fetch cache hit for {url}: {e}")
        return result

    def _result(
        self,
        url: str,
        content: bytes,
        content_type: str | None,
        from_cache: bool,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        file_type = detect_file_type(content, content_type, urlparse(url).path)
        if file_type is None:
            raise ValidationError(f"Could not determine the file type of {url}", field="source_url")
        return FetchResult(url, content, content_type, file_type, from_cache, etag, last_modified)

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch(
        self,
        url: str,
        auth: AuthConfig | None = None,
        cache_policy: CachePolicy | None = None,
        bypass_cache: bool = False,
    ) -> FetchResult:
        """
        Download `url`, serving or revalidating a cached copy when allowed.

        Raises TransientExternalFailure for timeouts, connection errors, 429
        and 5xx; ConfigurationError for rejected credentials; ValidationError
        for other HTTP errors and oversized or unrecognized bodies.
        """
        auth = auth or AuthConfig()
        policy = cache_policy or CachePolicy()
        headers = build_auth_headers(auth)
        key = cache_key(url, headers)
        use_cache = policy.use_cache and not bypass_cache

        entry = await self._get_cached(key) if policy.use_cache else None
        if use_cache and entry is not None:
            expires_at = ensure_utc(entry.expires_at)
            if expires_at and expires_at > utc_now():
                logger.info(f"Serving {url} from fetch cache")
                return await self._serve_cached(entry, url)
            if entry.etag:
                headers["If-None-Match"] = entry.etag
            if entry.last_modified:
                headers["If-Modified-Since"] = entry.last_modified

        session = await self._get_session()
        try:
            response = await session.get(url, headers=headers, timeout=self.settings.fetch_timeout)
        except niquests.exceptions.Timeout as e:
            logger.warning(f"Fetch of {url} timed out: {e}")
            raise TransientExternalFailure(
                f"Fetch timed out after {self.settings.fetch_timeout}s", source=url
            ) from e
        except niquests.exceptions.ConnectionError as e:
            logger.warning(f"Fetch of {url} failed to connect: {e}")
            raise TransientExternalFailure(f"Connection error: {e}", source=url) from e
        except niquests.exceptions.RequestException as e:
            logger.warning(f"Fetch of {url} failed: {e}")
            raise TransientExternalFailure(f"Request failed: {e}", source=url) from e

        status = response.status_code or 0
        if status == 304 and entry is not None:
            directives = parse_cache_control(response.headers.get("Cache-Control"))
            entry.expires_at = utc_now() + timedelta(seconds=self._ttl(directives))
            logger.info(f"{url} not modified, reusing cached body")
            return await self._serve_cached(entry, url)
        if status == 429 or status >= 500:
            raise TransientExternalFailure(f"{url} responded with HTTP {status}", source=url)
        if status in (401, 403):
            raise ConfigurationError(f"{url} rejected the credentials (HTTP {status})")
        if status >= 400:
            raise ValidationError(f"{url} responded with HTTP {status}", field="source_url")

        content = response.content or b""
        if len(content) > self.settings.max_file_size_mb * 1024 * 1024:
            raise ValidationError(
                f"Downloaded file exceeds {self.settings.max_file_size_mb} MB", field="source_url"
            )

        result = self._result(
            url,
            content,
            response.headers.get("Content-Type"),
            False,
            response.headers.get("ETag"),
            response.headers.get("Last-Modified"),
        )
        if policy.use_cache:
            directives = (
                parse_cache_control(response.headers.get("Cache-Control"))
                if policy.respect_cache_control
                else CacheDirectives()
            )
            await self._store(key, entry, url, response, directives)

        logger.info(f"Fetched {url} ({len(content)} bytes, {result.file_type})")
        return result


def get_url_fetch_service(db: AsyncSession) -> UrlFetchService:
    """Factory function for UrlFetchService."""
    return UrlFetchService(db)
