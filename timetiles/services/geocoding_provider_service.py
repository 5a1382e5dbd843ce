"""
Geocoding provider service for CRUD operations.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.models.geocoding_provider import GeocodingProvider
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.enums import GeocodingProviderType
from timetiles.schemas.geocoding import GeocodingProviderCreate, GeocodingProviderUpdate
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.exceptions import ConflictError, ValidationError

KEY_REQUIRED = frozenset({GeocodingProviderType.GOOGLE, GeocodingProviderType.OPENCAGE})


class GeocodingProviderService(BaseService[GeocodingProvider, GeocodingProviderCreate, GeocodingProviderUpdate]):
    """Service for GeocodingProvider CRUD operations."""

    entity_name = "GeocodingProvider"

    def __init__(self, db: AsyncSession):
        super().__init__(db, GeocodingProvider)
        self.audit = AuditLogService(db)

    async def get_by_name(self, name: str) -> GeocodingProvider | None:
        stmt = select(GeocodingProvider).where(
            GeocodingProvider.name == name,
            GeocodingProvider.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_list_filtered(
        self, pagination: PaginationParams, enabled: bool | None = None
    ) -> tuple[list[GeocodingProvider], int]:
        return await self.get_list(pagination, filters={"enabled": enabled})

    @staticmethod
    def _check_credentials(provider_type: str, enabled: bool, api_key: str | None) -> None:
        if enabled and provider_type in KEY_REQUIRED and not api_key:
            raise ValidationError(f"Provider type '{provider_type}' requires an API key", field="config.api_key")

    async def create_with_validation(self, data: GeocodingProviderCreate, actor: Actor) -> GeocodingProvider:
        """Create provider with name uniqueness and credential validation."""
        if await self.get_by_name(data.name):
            raise ConflictError("GeocodingProvider", "name", data.name)
        self._check_credentials(data.provider_type, data.enabled, data.config.api_key)

        provider = GeocodingProvider(
            name=data.name,
            provider_type=data.provider_type,
            enabled=data.enabled,
            priority=data.priority,
            rate_limit_per_second=data.rate_limit_per_second,
            tags=data.tags,
            config=data.config.model_dump(mode="json"),
        )
        self.db.add(provider)
        await self.db.flush()
        await self.audit.log_action(
            action="geocoding_provider.create",
            entity_type="geocoding_provider",
            entity_uuid=provider.uuid,
            entity_id=provider.id,
            actor=actor.id,
            new_value={"name": provider.name, "provider_type": provider.provider_type},
            commit=False,
        )
        await self.db.commit()
        await self.db.refresh(provider)
        return provider

    async def update_with_validation(
        self, provider: GeocodingProvider, data: GeocodingProviderUpdate
    ) -> GeocodingProvider:
        if data.name and data.name != provider.name:
            if await self.get_by_name(data.name):
                raise ConflictError("GeocodingProvider", "name", data.name)
        config = data.config if data.config is not None else provider.get_config()
        enabled = data.enabled if data.enabled is not None else provider.enabled
        self._check_credentials(provider.provider_type, enabled, config.api_key)
        return await self.update(provider, data)

    async def delete(self, provider: GeocodingProvider, actor: Actor) -> GeocodingProvider:
        await self.audit.log_action(
            action="geocoding_provider.delete",
            entity_type="geocoding_provider",
            entity_uuid=provider.uuid,
            entity_id=provider.id,
            actor=actor.id,
            old_value={"name": provider.name, "provider_type": provider.provider_type},
            commit=False,
        )
        provider.enabled = False
        return await self.soft_delete(provider)


def get_geocoding_provider_service(db: AsyncSession) -> GeocodingProviderService:
    """Factory function for GeocodingProviderService."""
    return GeocodingProviderService(db)
