"""
Catalog service for CRUD operations.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.models.catalog import Catalog
from timetiles.schemas.catalog import CatalogCreate, CatalogUpdate
from timetiles.schemas.common import Actor
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.dataset_service import slugify, unique_slug
from timetiles.services.exceptions import ConflictError


class CatalogService(BaseService[Catalog, CatalogCreate, CatalogUpdate]):
    """Service for Catalog CRUD operations."""

    entity_name = "Catalog"

    def __init__(self, db: AsyncSession):
        super().__init__(db, Catalog)
        self.audit = AuditLogService(db)

    async def get_by_slug(self, slug: str) -> Catalog | None:
        """Get catalog by unique slug."""
        stmt = select(Catalog).where(
            Catalog.slug == slug,
            Catalog.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_with_validation(self, data: CatalogCreate, actor: Actor | None = None) -> Catalog:
        """Create catalog with slug uniqueness validation."""
        if data.slug:
            if await self.get_by_slug(data.slug):
                raise ConflictError("Catalog", "slug", data.slug)
            slug = data.slug
        else:
            slug = await unique_slug(self.db, Catalog, slugify(data.name))

        catalog = Catalog(
            name=data.name,
            slug=slug,
            description=data.description,
            is_public=data.is_public,
            created_by=actor.id if actor else None,
        )
        self.db.add(catalog)
        await self.db.commit()
        await self.db.refresh(catalog)
        return catalog

    async def update_with_validation(self, db_obj: Catalog, data: CatalogUpdate) -> Catalog:
        """Update catalog with slug uniqueness validation."""
        if data.slug and data.slug != db_obj.slug:
            if await self.get_by_slug(data.slug):
                raise ConflictError("Catalog", "slug", data.slug)
        return await self.update(db_obj, data)

    async def delete(self, db_obj: Catalog, actor: Actor) -> Catalog:
        await self.audit.log_action(
            action="catalog.delete",
            entity_type="catalog",
            entity_uuid=db_obj.uuid,
            entity_id=db_obj.id,
            actor=actor.id,
            old_value={"name": db_obj.name, "slug": db_obj.slug},
            commit=False,
        )
        return await self.soft_delete(db_obj)


def get_catalog_service(db: AsyncSession) -> CatalogService:
    """Factory function for CatalogService."""
    return CatalogService(db)
