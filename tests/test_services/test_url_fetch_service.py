"""
Tests for source fetching: HTTP caching, revalidation and error mapping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

import pytest
from sqlalchemy import select

from timetiles.core.config import SchedulerSettings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.url_fetch_cache import UrlFetchCache
from timetiles.schemas.enums import AuthType
from timetiles.schemas.jsonb_types import AuthConfig, CachePolicy
from timetiles.services.exceptions import ConfigurationError, TransientExternalFailure, ValidationError
from timetiles.services.url_fetch_service import (
    UrlFetchService,
    build_auth_headers,
    parse_cache_control,
)

URL = "https://data.example.org/events.csv"
CSV = b"id,title\n1,Jazz\n"


@dataclass
class FakeResponse:
    status_code: int
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


class FakeSession:
    """Minimal stand-in for niquests.AsyncSession."""

    def __init__(self, *responses: FakeResponse):
        self.responses = list(responses)
        self.requests: list[dict[str, str]] = []

    async def get(self, url, headers=None, timeout=None):
        self.requests.append(dict(headers or {}))
        return self.responses.pop(0)

    async def close(self):
        return None


def make_service(db_session, *responses, settings: SchedulerSettings | None = None) -> tuple[UrlFetchService, FakeSession]:
    service = UrlFetchService(db_session, settings or SchedulerSettings())
    session = FakeSession(*responses)
    service._session = session
    return service, session


def csv_response(**headers) -> FakeResponse:
    return FakeResponse(200, CSV, {"Content-Type": "text/csv", **headers})


class TestHelpers:
    def test_parse_cache_control(self):
        directives = parse_cache_control("public, Max-Age=600")
        assert directives.max_age == 600
        assert not directives.no_store
        assert parse_cache_control("no-store").no_store
        assert parse_cache_control(None).max_age is None

    def test_auth_headers(self):
        assert build_auth_headers(AuthConfig(type=AuthType.BEARER, bearer_token="t")) == {"Authorization": "Bearer t"}
        basic = build_auth_headers(AuthConfig(type=AuthType.BASIC, username="u", password="p"))
        assert basic["Authorization"] == "Basic dTpw"
        key = build_auth_headers(AuthConfig(type=AuthType.API_KEY, api_key="k", api_key_header="X-Key"))
        assert key == {"X-Key": "k"}

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError):
            build_auth_headers(AuthConfig(type=AuthType.BEARER))


# =============================================================================
# Caching
# =============================================================================


class TestFetchCaching:
    async def test_fresh_entry_is_served_without_request(self, db_session):
        service, session = make_service(db_session, csv_response(**{"Cache-Control": "max-age=600"}))
        first = await service.fetch(URL)
        second = await service.fetch(URL)

        assert not first.from_cache
        assert second.from_cache
        assert second.content == CSV
        assert second.file_type == "csv"
        assert len(session.requests) == 1

    async def test_bypass_cache_refetches(self, db_session):
        service, session = make_service(db_session, csv_response(), csv_response())
        await service.fetch(URL)
        result = await service.fetch(URL, bypass_cache=True)
        assert not result.from_cache
        assert len(session.requests) == 2

    async def test_expired_entry_is_revalidated(self, db_session):
        service, session = make_service(
            db_session,
            csv_response(ETag='"v1"', **{"Last-Modified": "Mon, 06 May 2024 10:00:00 GMT"}),
            FakeResponse(304, b"", {"Cache-Control": "max-age=60"}),
        )
        await service.fetch(URL)
        entry = (await db_session.execute(select(UrlFetchCache))).scalar_one()
        entry.expires_at = utc_now() - timedelta(minutes=1)
        db_session.add(entry)
        await db_session.commit()

        result = await service.fetch(URL)
        assert result.from_cache
        assert result.content == CSV
        assert session.requests[1]["If-None-Match"] == '"v1"'
        assert session.requests[1]["If-Modified-Since"] == "Mon, 06 May 2024 10:00:00 GMT"

    async def test_no_store_is_not_cached(self, db_session):
        service, _ = make_service(db_session, csv_response(**{"Cache-Control": "no-store"}))
        await service.fetch(URL)
        assert (await db_session.execute(select(UrlFetchCache))).first() is None

    async def test_max_age_is_capped(self, db_session):
        settings = SchedulerSettings(max_cache_ttl_seconds=3600)
        service, _ = make_service(db_session, csv_response(**{"Cache-Control": "max-age=999999"}), settings=settings)
        await service.fetch(URL)
        entry = (await db_session.execute(select(UrlFetchCache))).scalar_one()
        assert ensure_utc(entry.expires_at) <= utc_now() + timedelta(seconds=3600)

    async def test_cache_disabled(self, db_session):
        service, session = make_service(db_session, csv_response(), csv_response())
        policy = CachePolicy(use_cache=False)
        await service.fetch(URL, cache_policy=policy)
        await service.fetch(URL, cache_policy=policy)
        assert len(session.requests) == 2
        assert (await db_session.execute(select(UrlFetchCache))).first() is None

    async def test_credentials_get_their_own_entry(self, db_session):
        service, session = make_service(db_session, csv_response(), csv_response())
        await service.fetch(URL)
        await service.fetch(URL, auth=AuthConfig(type=AuthType.BEARER, bearer_token="secret"))
        assert len(session.requests) == 2
        assert session.requests[1]["Authorization"] == "Bearer secret"


# =============================================================================
# Errors
# =============================================================================


class TestFetchErrors:
    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (401, ConfigurationError),
            (403, ConfigurationError),
            (404, ValidationError),
            (429, TransientExternalFailure),
            (503, TransientExternalFailure),
        ],
    )
    async def test_status_mapping(self, db_session, status, error):
        service, _ = make_service(db_session, FakeResponse(status))
        with pytest.raises(error):
            await service.fetch(URL)

    async def test_oversized_body(self, db_session):
        settings = SchedulerSettings(max_file_size_mb=1)
        body = b"a,b\n" + b"1,2\n" * (300 * 1024)
        service, _ = make_service(db_session, FakeResponse(200, body, {"Content-Type": "text/csv"}), settings=settings)
        with pytest.raises(ValidationError):
            await service.fetch(URL)

    async def test_unrecognized_body(self, db_session):
        service, _ = make_service(db_session, FakeResponse(200, b"hello there", {}))
        with pytest.raises(ValidationError):
            await service.fetch("https://data.example.org/feed")
