"""
Dataset service for CRUD operations.
"""

from __future__ import annotations

import re
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.dataset import DatasetCreate, DatasetUpdate
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.exceptions import ConflictError, NotFoundError

CONFIG_FIELDS = ("id_strategy", "schema_config", "geo_field_mapping", "field_mapping")


def slugify(text: str) -> str:
    """Create a URL-friendly slug from text."""
    text = text.lower()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")[:90] or "untitled"


async def unique_slug(db: AsyncSession, model, base: str) -> str:
    """`base`, or `base-2`, `base-3`... whichever is free (soft-deleted rows included)."""
    taken = set(
        (await db.execute(select(model.slug).where(model.slug.like(f"{base}%")))).scalars().all()
    )
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


class DatasetService(BaseService[Dataset, DatasetCreate, DatasetUpdate]):
    """Service for Dataset CRUD operations."""

    entity_name = "Dataset"

    def __init__(self, db: AsyncSession):
        super().__init__(db, Dataset)
        self.audit = AuditLogService(db)

    async def get_by_slug(self, slug: str) -> Dataset | None:
        """Get dataset by unique slug."""
        stmt = select(Dataset).where(
            Dataset.slug == slug,
            Dataset.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_name(self, catalog_id: int, name: str) -> Dataset | None:
        stmt = select(Dataset).where(
            Dataset.catalog_id == catalog_id,
            Dataset.name == name,
            Dataset.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_list_filtered(
        self,
        pagination: PaginationParams,
        catalog_id: int | None = None,
        search: str | None = None,
    ) -> tuple[list[Dataset], int]:
        """Get datasets with optional filters including search."""
        base_query = select(Dataset).where(Dataset.deleted_at.is_(None))

        if catalog_id is not None:
            base_query = base_query.where(Dataset.catalog_id == catalog_id)

        # Apply search filter (ILIKE on name and description)
        if search:
            search_pattern = f"%{search}%"
            base_query = base_query.where(
                or_(
                    Dataset.name.ilike(search_pattern),
                    Dataset.description.ilike(search_pattern),
                )
            )

        return await self._paginate(base_query, pagination)

    async def get_catalog_uuid(self, dataset: Dataset) -> UUID | None:
        result = await self.db.execute(select(Catalog.uuid).where(Catalog.id == dataset.catalog_id))
        return result.scalar_one_or_none()

    async def create_with_validation(self, data: DatasetCreate, actor: Actor | None = None) -> Dataset:
        """Create dataset with slug uniqueness validation."""
        catalog = (
            await self.db.execute(
                select(Catalog).where(Catalog.uuid == data.catalog_uuid, Catalog.deleted_at.is_(None))
            )
        ).scalar_one_or_none()
        if catalog is None:
            raise NotFoundError("Catalog", str(data.catalog_uuid))

        if data.slug:
            if await self.get_by_slug(data.slug):
                raise ConflictError("Dataset", "slug", data.slug)
            slug = data.slug
        else:
            slug = await unique_slug(self.db, Dataset, slugify(data.name))

        dataset = Dataset(
            catalog_id=catalog.id,
            name=data.name,
            slug=slug,
            description=data.description,
            language=data.language,
            id_strategy=data.id_strategy.model_dump(mode="json"),
            schema_config=data.schema_config.model_dump(mode="json"),
            geo_field_mapping=data.geo_field_mapping.model_dump(mode="json"),
            field_mapping=data.field_mapping.model_dump(mode="json"),
            created_by=actor.id if actor else None,
        )
        self.db.add(dataset)
        await self.db.commit()
        await self.db.refresh(dataset)
        return dataset

    async def find_or_create(self, catalog_id: int, name: str, actor: Actor | None = None) -> Dataset:
        """Dataset called `name` in the catalog, created with default settings if missing."""
        existing = await self.get_by_name(catalog_id, name)
        if existing is not None:
            return existing
        dataset = Dataset(
            catalog_id=catalog_id,
            name=name,
            slug=await unique_slug(self.db, Dataset, slugify(name)),
            created_by=actor.id if actor else None,
        )
        self.db.add(dataset)
        await self.db.flush()
        return dataset

    async def update_with_validation(
        self, db_obj: Dataset, data: DatasetUpdate
    ) -> Dataset:
        """Update dataset with slug uniqueness validation."""
        if data.slug and data.slug != db_obj.slug:
            existing = await self.get_by_slug(data.slug)
            if existing:
                raise ConflictError("Dataset", "slug", data.slug)

        changes = data.model_dump(exclude_unset=True, exclude={*CONFIG_FIELDS, "transforms"}, mode="json")
        for name, value in changes.items():
            setattr(db_obj, name, value)
        # Config columns are replaced whole, defaults included
        for name in CONFIG_FIELDS:
            config = getattr(data, name)
            if config is not None:
                setattr(db_obj, name, config.model_dump(mode="json"))
        if data.transforms is not None:
            db_obj.set_transforms(data.transforms)

        self.db.add(db_obj)
        await self.db.commit()
        await self.db.refresh(db_obj)
        return db_obj

    async def delete(self, db_obj: Dataset, actor: Actor) -> Dataset:
        """Soft delete; events stay in place but drop out of queries with the dataset."""
        await self.audit.log_action(
            action="dataset.delete",
            entity_type="dataset",
            entity_id=db_obj.id,
            entity_uuid=db_obj.uuid,
            actor=actor.id,
            old_value={"name": db_obj.name, "slug": db_obj.slug, "event_count": db_obj.event_count},
            commit=False,
        )
        return await self.soft_delete(db_obj)


def get_dataset_service(db: AsyncSession) -> DatasetService:
    """Factory function for DatasetService."""
    return DatasetService(db)
