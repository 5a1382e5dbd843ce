"""
Geocoding provider adapters.

Each adapter wraps one external HTTP API behind the same capability:
`await adapter.geocode(address) -> GeocodeResult`. Uses niquests AsyncSession
for HTTP requests and a per-provider RateLimiter so calls queue instead of
exceeding the configured rate.

Failure mapping:
- timeout, connection error, 429, 5xx      -> TransientExternalFailure
- missing key, 401/403, denied requests     -> ConfigurationError
- no usable result                          -> NoGeocodeResultError
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import niquests

from timetiles.core.config import GeocodingSettings, get_settings
from timetiles.models.geocoding_provider import GeocodingProvider
from timetiles.schemas.enums import GeocodingProviderType
from timetiles.schemas.jsonb_types import ProviderConfig
from timetiles.services.exceptions import (
    ConfigurationError,
    ServiceError,
    TransientExternalFailure,
)

logger = logging.getLogger(__name__)

GOOGLE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
OPENCAGE_URL = "https://api.opencagedata.com/geocode/v1/json"

_GOOGLE_CONFIDENCE = {
    "ROOFTOP": 0.95,
    "RANGE_INTERPOLATED": 0.85,
    "GEOMETRIC_CENTER": 0.7,
    "APPROXIMATE": 0.6,
}


@dataclass
class GeocodeResult:
    """A resolved address."""

    latitude: float
    longitude: float
    confidence: float
    provider: str
    formatted_address: str | None = None
    components: dict[str, Any] = field(default_factory=dict)


class NoGeocodeResultError(ServiceError):
    """The provider answered but found nothing usable."""

    def __init__(self, provider: str, address: str):
        self.provider = provider
        self.address = address
        super().__init__(f"{provider} returned no result for '{address}'")


# =============================================================================
# Rate limiting
# =============================================================================


class RateLimiter:
    """
    Spaces calls at least 1/rate seconds apart.

    Callers await `acquire()`; concurrent callers queue on the lock.
    """

    def __init__(self, rate_per_second: float):
        self.interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def acquire(self) -> None:
        if self.interval <= 0:
            return
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            wait = self._next_slot - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = loop.time()
            self._next_slot = max(now, self._next_slot) + self.interval


# Shared per process, keyed by provider name
_rate_limiters: dict[str, RateLimiter] = {}


def get_rate_limiter(name: str, rate_per_second: float) -> RateLimiter:
    limiter = _rate_limiters.get(name)
    if limiter is None or limiter.interval != (1.0 / rate_per_second if rate_per_second > 0 else 0.0):
        limiter = _rate_limiters[name] = RateLimiter(rate_per_second)
    return limiter


# =============================================================================
# Adapters
# =============================================================================


class GeocodingAdapter:
    """Base adapter with session handling and HTTP error mapping."""

    provider_type: GeocodingProviderType

    def __init__(
        self,
        name: str,
        config: ProviderConfig,
        settings: GeocodingSettings,
        rate_limiter: RateLimiter | None = None,
    ):
        self.name = name
        self.config = config
        self.settings = settings
        self.timeout = config.timeout or settings.provider_timeout
        self.rate_limiter = rate_limiter or RateLimiter(0)
        self._session: niquests.AsyncSession | None = None

    async def __aenter__(self) -> GeocodingAdapter:
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

    async def geocode(self, address: str) -> GeocodeResult:
        await self.rate_limiter.acquire()
        return await self._geocode(address)

    async def _geocode(self, address: str) -> GeocodeResult:
        raise NotImplementedError

    async def _get_json(
        self,
        url: str,
        params: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Any:
        session = await self._get_session()
        try:
            response = await session.get(url, params=params, headers=headers, timeout=self.timeout)
        except niquests.exceptions.Timeout as e:
            logger.warning(f"{self.name} timeout: {e}")
            raise TransientExternalFailure(
                f"{self.name} timed out after {self.timeout}s", source=self.name
            ) from e
        except niquests.exceptions.ConnectionError as e:
            logger.warning(f"{self.name} connection error: {e}")
            raise TransientExternalFailure(f"{self.name} connection error: {e}", source=self.name) from e
        except niquests.exceptions.RequestException as e:
            logger.warning(f"{self.name} request error: {e}")
            raise TransientExternalFailure(f"{self.name} request failed: {e}", source=self.name) from e

        status = response.status_code or 0
        if status == 429 or status >= 500:
            raise TransientExternalFailure(f"{self.name} responded with HTTP {status}", source=self.name)
        if status in (401, 403):
            raise ConfigurationError(f"{self.name} rejected the credentials (HTTP {status})")
        if status >= 400:
            raise NoGeocodeResultError(self.name, params.get("q") or params.get("address") or "")
        return response.json()


class GoogleAdapter(GeocodingAdapter):
    provider_type = GeocodingProviderType.GOOGLE

    async def _geocode(self, address: str) -> GeocodeResult:
        api_key = self.config.api_key or self.settings.google_api_key
        if not api_key:
            raise ConfigurationError(f"Provider '{self.name}' requires a Google API key")
        params: dict[str, Any] = {"address": address, "key": api_key}
        if self.config.language:
            params["language"] = self.config.language
        if self.config.country_codes:
            params["components"] = "|".join(f"country:{c}" for c in self.config.country_codes)

        data = await self._get_json(self.config.base_url or GOOGLE_URL, params)
        status = data.get("status")
        if status == "OVER_QUERY_LIMIT":
            raise TransientExternalFailure("Google quota exceeded", source=self.name)
        if status == "REQUEST_DENIED":
            raise ConfigurationError(f"Google denied the request: {data.get('error_message')}")
        results = data.get("results") or []
        if status != "OK" or not results:
            raise NoGeocodeResultError(self.name, address)

        best = results[0]
        geometry = best.get("geometry", {})
        location = geometry.get("location", {})
        return GeocodeResult(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            confidence=_GOOGLE_CONFIDENCE.get(geometry.get("location_type"), 0.6),
            provider=self.name,
            formatted_address=best.get("formatted_address"),
            components={
                c["types"][0]: c.get("long_name")
                for c in best.get("address_components", [])
                if c.get("types")
            },
        )


class OpenCageAdapter(GeocodingAdapter):
    provider_type = GeocodingProviderType.OPENCAGE

    async def _geocode(self, address: str) -> GeocodeResult:
        api_key = self.config.api_key or self.settings.opencage_api_key
        if not api_key:
            raise ConfigurationError(f"Provider '{self.name}' requires an OpenCage API key")
        params: dict[str, Any] = {"q": address, "key": api_key, "limit": 1, "no_annotations": 1}
        if self.config.language:
            params["language"] = self.config.language
        if self.config.country_codes:
            params["countrycode"] = ",".join(self.config.country_codes)

        data = await self._get_json(self.config.base_url or OPENCAGE_URL, params)
        results = data.get("results") or []
        if not results:
            raise NoGeocodeResultError(self.name, address)

        best = results[0]
        geometry = best.get("geometry", {})
        # OpenCage confidence is 1-10 (10 = most precise)
        raw_confidence = best.get("confidence")
        confidence = raw_confidence / 10 if raw_confidence else 0.7
        return GeocodeResult(
            latitude=float(geometry["lat"]),
            longitude=float(geometry["lng"]),
            confidence=round(confidence, 3),
            provider=self.name,
            formatted_address=best.get("formatted"),
            components=best.get("components", {}),
        )


class NominatimAdapter(GeocodingAdapter):
    provider_type = GeocodingProviderType.NOMINATIM

    async def _geocode(self, address: str) -> GeocodeResult:
        base_url = (self.config.base_url or self.settings.nominatim_base_url).rstrip("/")
        params: dict[str, Any] = {
            "q": address,
            "format": "jsonv2",
            "limit": 1,
            "addressdetails": 1,
        }
        if self.config.email:
            params["email"] = self.config.email
        if self.config.country_codes:
            params["countrycodes"] = ",".join(self.config.country_codes)
        headers = {"User-Agent": self.config.user_agent or self.settings.nominatim_user_agent}
        if self.config.language:
            headers["Accept-Language"] = self.config.language

        data = await self._get_json(f"{base_url}/search", params, headers)
        if not data:
            raise NoGeocodeResultError(self.name, address)

        best = data[0]
        details = best.get("address", {})
        confidence = 0.6
        if details.get("road") or details.get("house_number"):
            confidence += 0.2
        if details.get("city") or details.get("town") or details.get("state"):
            confidence += 0.1
        return GeocodeResult(
            latitude=float(best["lat"]),
            longitude=float(best["lon"]),
            confidence=round(confidence, 3),
            provider=self.name,
            formatted_address=best.get("display_name"),
            components=details,
        )


_ADAPTERS: dict[GeocodingProviderType, type[GeocodingAdapter]] = {
    GeocodingProviderType.GOOGLE: GoogleAdapter,
    GeocodingProviderType.OPENCAGE: OpenCageAdapter,
    GeocodingProviderType.NOMINATIM: NominatimAdapter,
}


def build_adapter(
    provider: GeocodingProvider,
    settings: GeocodingSettings | None = None,
) -> GeocodingAdapter:
    """Create the adapter for a configured provider row."""
    settings = settings or get_settings().geocoding
    adapter_cls = _ADAPTERS.get(GeocodingProviderType(provider.provider_type))
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported geocoding provider type '{provider.provider_type}'")
    rate = provider.rate_limit_per_second or settings.default_rate_limit
    return adapter_cls(
        provider.name,
        provider.get_config(),
        settings,
        rate_limiter=get_rate_limiter(provider.name, rate),
    )
