"""
Stage handlers for the import pipeline.

Each handler runs one stage of one job and returns the StageOutcome that
ImportJobService.advance() feeds into the transition table. Handlers are
resumable: batch work is chunked, and the chunk checkpoint is committed
together with the chunk's results.

Error mapping in run_stage():
- TransientExternalFailure -> retry the stage with backoff
- SchemaLockBusyError      -> defer without consuming a retry
- Configuration / Quota / Validation / NotFound -> fail the job
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import Settings, get_settings
from timetiles.models.base import utc_now
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.models.schema_version import SchemaVersion
from timetiles.schemas.common import Actor
from timetiles.schemas.enums import (
    CoordinateSource,
    DuplicateStrategy,
    ImportStage,
    QuotaType,
    RecordClassification,
    StageOutcome,
    ValidationStatus,
)
from timetiles.schemas.jsonb_types import (
    DuplicateAnalysis,
    DuplicateSummary,
    GeocodedAddress,
    GeoDetection,
    RowError,
    SchemaValidationResult,
    TransformRule,
)
from timetiles.services.coordinate_service import (
    CoordinateValidation,
    parse_combined,
    parse_coordinate,
    validate_coordinates,
)
from timetiles.services.exceptions import (
    ConfigurationError,
    NotFoundError,
    QuotaExceededError,
    SchemaLockBusyError,
    TransientExternalFailure,
    ValidationError,
)
from timetiles.services.field_mapping import detect_field_mappings, parse_timestamp
from timetiles.services.file_parsing import ParsedSheet, read_sheet
from timetiles.services.geocoding_service import AddressRequest, GeocodingService, group_addresses
from timetiles.services.identity_service import (
    IdentityResolver,
    IdentityService,
    RecordIdentity,
    classify_batch,
    compute_content_hash,
    get_by_path,
)
from timetiles.services.import_job_service import ImportJobService
from timetiles.services.location_cache_service import normalize_address
from timetiles.services.quota_service import QuotaService
from timetiles.services.schema_builder import (
    SchemaBuilder,
    SchemaDiff,
    apply_transforms,
    compare_schemas,
    evaluate_approval,
    suggest_transforms,
    validate_row,
)
from timetiles.services.schema_service import SchemaService

logger = logging.getLogger(__name__)

GeocoderFactory = Callable[[AsyncSession], GeocodingService]

MAX_TITLE_LENGTH = 500


# =============================================================================
# Row helpers
# =============================================================================


@dataclass
class RowLocation:
    """Resolved location fields for one event."""

    latitude: float | None = None
    longitude: float | None = None
    source: CoordinateSource = CoordinateSource.NONE
    confidence: float | None = None
    status: ValidationStatus | None = None
    geocoding_info: dict[str, Any] | None = None


def import_coordinates(
    row: Mapping[str, Any],
    geo: GeoDetection,
    autofix: bool = False,
) -> CoordinateValidation | None:
    """Validated coordinates from the row's own columns, or None when it has none."""
    if geo.type == "separate" and geo.latitude_path and geo.longitude_path:
        lat = parse_coordinate(get_by_path(row, geo.latitude_path))
        lon = parse_coordinate(get_by_path(row, geo.longitude_path))
        if lat is None and lon is None:
            return None
        if geo.swapped:
            lat, lon = lon, lat
        return validate_coordinates(lat, lon, autofix=autofix)

    if geo.type == "combined" and geo.combined_path:
        value = get_by_path(row, geo.combined_path)
        if value is None or value == "":
            return None
        pair = parse_combined(value, geo.combined_format or "auto")
        if pair is None:
            return CoordinateValidation(
                None, None, ValidationStatus.INVALID, 0.0, message=f"Unparseable coordinates '{value}'"
            )
        return validate_coordinates(pair[0], pair[1], autofix=autofix)

    return None


def row_address(row: Mapping[str, Any], geo: GeoDetection) -> str | None:
    for path in (geo.address_path, geo.location_name_path):
        if not path:
            continue
        value = get_by_path(row, path)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def schema_document(detected: Mapping[str, Any]) -> dict[str, Any]:
    """The comparable part of a detected schema (drops field metadata)."""
    return {
        "properties": dict(detected.get("properties", {})),
        "required": list(detected.get("required", [])),
    }


def load_transforms(owner: Dataset | ImportJob) -> list[TransformRule]:
    """Stored transform rules; rules that no longer validate are a configuration error."""
    try:
        return owner.get_transforms()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Stored transform rules are invalid: {e}") from e


def merge_transforms(*groups: Sequence[TransformRule]) -> list[TransformRule]:
    """Concatenate transform lists, dropping repeats of the same rule."""
    seen: set[tuple[Any, ...]] = set()
    merged: list[TransformRule] = []
    for group in groups:
        for rule in group:
            key = (rule.type, rule.from_field, rule.to_field, rule.target_type, rule.operation)
            if key in seen:
                continue
            seen.add(key)
            merged.append(rule)
    return merged


def transform_rows(
    rows: Sequence[Mapping[str, Any]],
    rules: Sequence[TransformRule],
) -> tuple[list[tuple[int, dict[str, Any]]], list[RowError]]:
    """Apply transforms to every row; rows that cannot be transformed become errors."""
    if not rules:
        return [(i, dict(row)) for i, row in enumerate(rows)], []
    transformed: list[tuple[int, dict[str, Any]]] = []
    errors: list[RowError] = []
    for index, row in enumerate(rows):
        try:
            transformed.append((index, apply_transforms(row, rules)))
        except ValueError as e:
            errors.append(RowError(row=index, error=f"Transform failed: {e}"))
    return transformed, errors


# =============================================================================
# Pipeline
# =============================================================================


class ImportPipeline:
    """Runs import job stages."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        geocoder_factory: GeocoderFactory | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.import_settings = self.settings.imports
        self.jobs = ImportJobService(db, self.import_settings)
        self.schemas = SchemaService(db, self.import_settings)
        self.identity = IdentityService(db, self.import_settings)
        self.quotas = QuotaService(db, self.settings.quotas)
        self.geocoder_factory = geocoder_factory or (
            lambda session: GeocodingService(session, self.settings.geocoding)
        )
        self._handlers = {
            ImportStage.ANALYZE_DUPLICATES: self.analyze_duplicates,
            ImportStage.DETECT_SCHEMA: self.detect_schema,
            ImportStage.VALIDATE_SCHEMA: self.validate_schema,
            ImportStage.CREATE_SCHEMA_VERSION: self.create_schema_version,
            ImportStage.GEOCODE_BATCH: self.geocode_batch,
            ImportStage.CREATE_EVENTS: self.create_events,
        }

    async def _context(self, job: ImportJob) -> tuple[ImportFile, Dataset, ParsedSheet]:
        import_file = await self.db.get(ImportFile, job.import_file_id)
        if import_file is None:
            raise NotFoundError("ImportFile", str(job.import_file_id))
        dataset = await self.db.get(Dataset, job.dataset_id)
        if dataset is None or dataset.is_deleted:
            raise NotFoundError("Dataset", str(job.dataset_id))
        sheet = await asyncio.to_thread(
            read_sheet, import_file.storage_path, import_file.file_type, job.sheet_index
        )
        return import_file, dataset, sheet

    async def run_stage(self, job: ImportJob) -> ImportStage:
        """Run the job's current stage and persist the outcome."""
        stage = ImportStage(job.stage)
        handler = self._handlers.get(stage)
        if handler is None:
            return stage

        self.jobs.start_stage(job)
        self.db.add(job)
        await self.db.commit()
        logger.info(f"Import job {job.id}: running {stage}")

        try:
            outcome = await handler(job)
        except SchemaLockBusyError as e:
            await self._reset(job)
            await self.jobs.defer(job, self.import_settings.lock_retry_delay_seconds, e.message)
            return ImportStage(job.stage)
        except TransientExternalFailure as e:
            await self._reset(job)
            await self.jobs.record_transient_failure(job, e.message)
            return ImportStage(job.stage)
        except (ConfigurationError, QuotaExceededError, ValidationError, NotFoundError) as e:
            await self._reset(job)
            await self.jobs.fail(job, e.message)
            return ImportStage(job.stage)

        return await self.jobs.advance(job, outcome)

    async def _reset(self, job: ImportJob) -> None:
        """Drop uncommitted stage writes; committed chunks stay."""
        await self.db.rollback()
        await self.db.refresh(job)

    # =========================================================================
    # analyze-duplicates
    # =========================================================================

    async def analyze_duplicates(self, job: ImportJob) -> StageOutcome:
        _, dataset, sheet = await self._context(job)
        config = dataset.get_id_strategy()

        mappings = detect_field_mappings(
            sheet.headers,
            sheet.rows,
            language=dataset.language,
            overrides=dataset.get_field_mapping(),
            geo_overrides=dataset.get_geo_field_mapping(),
        )

        validation = SchemaValidationResult()
        if not config.deduplication_enabled:
            analysis = DuplicateAnalysis(
                strategy=config.duplicate_strategy,
                skipped=True,
                summary=DuplicateSummary(total_rows=len(sheet.rows), unique_rows=len(sheet.rows)),
            )
        else:
            classification = await self.identity.analyze(dataset.id, sheet.rows, config)
            analysis = classification.analysis
            mappings.id_path = analysis.id_path
            if analysis.unresolved_rows and config.duplicate_strategy != DuplicateStrategy.SKIP:
                validation.validation_errors = [
                    RowError(
                        row=row,
                        field=analysis.id_path,
                        error="Could not derive a stable identity for this row",
                        stage=ImportStage.ANALYZE_DUPLICATES,
                    )
                    for row in analysis.unresolved_rows
                ]
                self.jobs.add_row_errors(job, validation.validation_errors)

        job.set_duplicates(analysis)
        job.set_field_mappings(mappings)
        job.set_schema_validation(validation)
        self.jobs.update_stage_progress(job, len(sheet.rows), len(sheet.rows))
        logger.info(
            f"Import job {job.id}: {analysis.summary.unique_rows} unique, "
            f"{analysis.summary.internal_duplicates} internal and "
            f"{analysis.summary.external_duplicates} external duplicates, "
            f"{analysis.summary.unresolved} unresolved"
        )
        return StageOutcome.SUCCESS

    # =========================================================================
    # detect-schema
    # =========================================================================

    async def detect_schema(self, job: ImportJob) -> StageOutcome:
        _, dataset, sheet = await self._context(job)
        schema, metadata = self._infer(sheet.rows, dataset, load_transforms(dataset))
        job.detected_schema = {**schema, "field_metadata": metadata}
        self.jobs.update_stage_progress(job, len(sheet.rows), len(sheet.rows))
        return StageOutcome.SUCCESS

    def _infer(
        self,
        rows: Sequence[Mapping[str, Any]],
        dataset: Dataset,
        rules: Sequence[TransformRule],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        sample_size = self.import_settings.schema_sample_size
        sample = rows[:sample_size] if sample_size else rows
        transformed, _ = transform_rows(sample, rules)

        builder = SchemaBuilder.from_config(dataset.get_schema_config(), self.import_settings)
        chunk_size = self.import_settings.batch_size
        for start in range(0, len(transformed), chunk_size):
            builder.add_rows(payload for _, payload in transformed[start : start + chunk_size])
        return builder.build(), builder.field_metadata()

    # =========================================================================
    # validate-schema
    # =========================================================================

    async def validate_schema(self, job: ImportJob) -> StageOutcome:
        _, dataset, sheet = await self._context(job)
        config = dataset.get_schema_config()
        detected = schema_document(job.detected_schema)

        current = await self.schemas.get_current(dataset.id)
        current_schema = current.schema_definition if current else None
        diff = compare_schemas(current_schema, detected)
        decision = evaluate_approval(diff, config, current is not None)

        # Identity errors from analyze-duplicates are kept; row type errors are recomputed
        previous = job.get_schema_validation()
        errors = [e for e in previous.validation_errors if e.stage == ImportStage.ANALYZE_DUPLICATES]

        if config.strict_validation and current_schema:
            transformed, transform_errors = transform_rows(sheet.rows, load_transforms(dataset))
            row_errors = list(transform_errors)
            max_depth = config.max_schema_depth or self.import_settings.max_schema_depth
            for index, payload in transformed:
                for path, message in validate_row(payload, current_schema, max_depth):
                    row_errors.append(
                        RowError(row=index, field=path, error=message, stage=ImportStage.VALIDATE_SCHEMA)
                    )
            self.jobs.add_row_errors(job, row_errors)
            errors.extend(row_errors)

        suggestions: list[TransformRule] = []
        if decision.requires_approval and config.allow_transformations:
            suggestions = suggest_transforms(diff, detected)

        job.set_schema_validation(
            SchemaValidationResult(
                is_breaking=diff.is_breaking,
                requires_approval=decision.requires_approval,
                has_changes=diff.has_changes,
                approval_reason=decision.reason,
                breaking_reasons=diff.breaking_reasons,
                diff=diff.to_dict(),
                suggested_transforms=suggestions,
                validation_errors=errors,
                compared_version_id=current.id if current else None,
            )
        )
        self.jobs.update_stage_progress(job, len(sheet.rows), len(sheet.rows))

        if decision.requires_approval:
            logger.info(f"Import job {job.id} needs approval: {decision.reason}")
            return StageOutcome.NEEDS_APPROVAL
        return StageOutcome.SUCCESS

    # =========================================================================
    # create-schema-version
    # =========================================================================

    async def create_schema_version(self, job: ImportJob) -> StageOutcome:
        if job.schema_version_id is not None:
            return StageOutcome.SUCCESS

        _, dataset, sheet = await self._context(job)
        job_transforms = load_transforms(job)
        if job_transforms:
            # Approved transforms change the shape the version must describe
            schema, metadata = self._infer(
                sheet.rows, dataset, merge_transforms(load_transforms(dataset), job_transforms)
            )
        else:
            schema = schema_document(job.detected_schema)
            metadata = job.detected_schema.get("field_metadata", {})

        await self.schemas.acquire_lock(dataset.id, job.id)
        try:
            current = await self.schemas.get_current(dataset.id)
            diff = compare_schemas(current.schema_definition if current else None, schema)
            if self._lineage_moved(job, current) and self._regate(job, dataset, schema, diff, current):
                self.db.add(job)
                await self.db.commit()
                return StageOutcome.NEEDS_APPROVAL
            if current is not None and not diff.has_changes:
                version = current
            else:
                version = await self.schemas.create_version(
                    dataset_id=dataset.id,
                    schema=schema,
                    field_metadata=metadata,
                    diff=diff,
                    import_job_id=job.id,
                    auto_approved=job.approved_by is None,
                    approved_by=job.approved_by,
                )
            job.schema_version_id = version.id
            self.db.add(job)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        finally:
            await self.schemas.release_lock(dataset.id, job.id)

        return StageOutcome.SUCCESS

    @staticmethod
    def _lineage_moved(job: ImportJob, current: SchemaVersion | None) -> bool:
        """True when another job wrote a version after this one was validated."""
        current_id = current.id if current else None
        return current_id != job.get_schema_validation().compared_version_id

    def _regate(
        self,
        job: ImportJob,
        dataset: Dataset,
        schema: Mapping[str, Any],
        diff: SchemaDiff,
        current: SchemaVersion | None,
    ) -> bool:
        """
        Re-run the approval policy against the version that is current now.

        Returns True when the job must go back to the approval gate. Any
        earlier approval was given for a different base schema and is cleared.
        """
        config = dataset.get_schema_config()
        decision = evaluate_approval(diff, config, current is not None)
        validation = job.get_schema_validation()
        previous_id = validation.compared_version_id
        validation.compared_version_id = current.id if current else None
        validation.has_changes = diff.has_changes
        validation.is_breaking = diff.is_breaking
        validation.breaking_reasons = diff.breaking_reasons
        validation.diff = diff.to_dict()
        validation.requires_approval = decision.requires_approval
        if not decision.requires_approval:
            job.set_schema_validation(validation)
            return False

        validation.approval_reason = f"Schema changed by another import since validation: {decision.reason}"
        validation.suggested_transforms = suggest_transforms(diff, schema) if config.allow_transformations else []
        job.set_schema_validation(validation)
        job.approved_by = None
        job.approved_at = None
        logger.info(
            f"Import job {job.id}: dataset {dataset.id} moved from schema version {previous_id} "
            f"to {validation.compared_version_id}; back to approval ({decision.reason})"
        )
        return True

    # =========================================================================
    # geocode-batch
    # =========================================================================

    def _addresses_to_geocode(
        self,
        job: ImportJob,
        dataset: Dataset,
        rows: Sequence[Mapping[str, Any]],
    ) -> list[str]:
        geo = job.get_field_mappings().geo
        autofix = dataset.get_geo_field_mapping().autofix_swapped
        addresses: list[str] = []
        for row in rows:
            coordinates = import_coordinates(row, geo, autofix)
            if coordinates is not None and coordinates.is_usable:
                continue
            address = row_address(row, geo)
            if address:
                addresses.append(address)
        return addresses

    async def geocode_batch(self, job: ImportJob) -> StageOutcome:
        """
        Geocode distinct addresses of rows without usable coordinates.

        Addresses are resolved in chunks of geocoding.batch_size. A run of
        max_failed_chunks chunks in which nothing resolved raises a transient
        failure; those chunks are not checkpointed, so the retry redoes them.
        """
        geocoding_settings = self.settings.geocoding
        if not geocoding_settings.enabled:
            return StageOutcome.SUCCESS

        _, dataset, sheet = await self._context(job)
        requests = list(group_addresses(self._addresses_to_geocode(job, dataset, sheet.rows)).values())
        if not requests:
            self.jobs.update_stage_progress(job, 0, 0)
            return StageOutcome.SUCCESS

        chunk_size = geocoding_settings.batch_size
        chunks = [requests[i : i + chunk_size] for i in range(0, len(requests), chunk_size)]
        checkpoint = self.jobs.get_checkpoint(job)
        start = checkpoint + 1 if checkpoint is not None else 0

        results = job.get_geocoding_results()
        pending: dict[str, GeocodedAddress] = {}
        failed_run = 0

        async with self.geocoder_factory(self.db) as geocoder:
            for index in range(start, len(chunks)):
                chunk_results = await geocoder.geocode_batch(chunks[index])
                pending.update(chunk_results)

                if all(r.error for r in chunk_results.values()):
                    failed_run += 1
                    if failed_run >= self.import_settings.max_failed_chunks:
                        raise TransientExternalFailure(
                            f"{failed_run} consecutive geocoding chunks failed completely",
                            source="geocoding",
                        )
                    continue

                failed_run = 0
                results.update(pending)
                pending = {}
                self._save_geocoding(job, results, requests, index + 1, len(chunks), index)
                await self.db.commit()

        # Trailing failed chunks shorter than the abort threshold are kept as row failures
        if pending:
            results.update(pending)
            self._save_geocoding(job, results, requests, len(chunks), len(chunks), len(chunks) - 1)

        logger.info(f"Import job {job.id}: geocoded {len(results)} distinct address(es)")
        return StageOutcome.SUCCESS

    def _save_geocoding(
        self,
        job: ImportJob,
        results: dict[str, GeocodedAddress],
        requests: Sequence[AddressRequest],
        processed: int,
        total: int,
        checkpoint: int,
    ) -> None:
        rows_by_address = {r.normalized: r.rows for r in requests}
        stats = job.get_results()
        stats.geocoded = sum(rows_by_address.get(k, 0) for k, r in results.items() if not r.error)
        stats.geocoding_failed = sum(rows_by_address.get(k, 0) for k, r in results.items() if r.error)
        stats.cache_hits = sum(rows_by_address.get(k, 0) for k, r in results.items() if r.from_cache)
        job.set_results(stats)
        job.set_geocoding_results(results)
        self.jobs.update_stage_progress(job, processed, total, checkpoint=checkpoint)
        self.db.add(job)

    # =========================================================================
    # create-events
    # =========================================================================

    def _locate(
        self,
        row: Mapping[str, Any],
        geo: GeoDetection,
        autofix: bool,
        geocoded: Mapping[str, GeocodedAddress],
    ) -> tuple[RowLocation, str | None]:
        """Location for one row plus an error message when its coordinates were rejected."""
        coordinates = import_coordinates(row, geo, autofix)
        if coordinates is not None and coordinates.is_usable:
            return (
                RowLocation(
                    latitude=coordinates.latitude,
                    longitude=coordinates.longitude,
                    source=CoordinateSource.IMPORT,
                    confidence=coordinates.confidence,
                    status=coordinates.status,
                ),
                None,
            )

        error = coordinates.message if coordinates is not None else None
        address = row_address(row, geo)
        result = geocoded.get(normalize_address(address)) if address else None
        if result is not None and not result.error and result.latitude is not None:
            check = validate_coordinates(result.latitude, result.longitude)
            return (
                RowLocation(
                    latitude=result.latitude,
                    longitude=result.longitude,
                    source=CoordinateSource.GEOCODED,
                    confidence=result.confidence,
                    status=check.status,
                    geocoding_info={
                        "provider": result.provider,
                        "original_address": address,
                        "normalized_address": result.normalized_address,
                        "confidence": result.confidence,
                        "from_cache": result.from_cache,
                    },
                ),
                None,
            )
        if result is not None and result.error:
            error = f"Geocoding failed: {result.error}"

        return RowLocation(status=coordinates.status if coordinates else None), error

    async def create_events(self, job: ImportJob) -> StageOutcome:
        import_file, dataset, sheet = await self._context(job)
        rows = sheet.rows
        config = dataset.get_id_strategy()
        analysis = job.get_duplicates()
        mappings = job.get_field_mappings()
        autofix = dataset.get_geo_field_mapping().autofix_swapped
        geocoded = job.get_geocoding_results()
        rules = merge_transforms(load_transforms(dataset), load_transforms(job))
        failed_rows = {
            e.row for e in job.get_schema_validation().validation_errors if e.row is not None
        }

        # Classify against the dataset as it is now; other jobs may have written since analysis
        update_targets: dict[int, int] = {}
        if analysis.skipped:
            classifications = {i: RecordClassification.NEW for i in range(len(rows))}
            identities = {
                i: RecordIdentity(
                    unique_id=f"{dataset.id}:job:{job.id}:{i}",
                    content_hash=compute_content_hash(row),
                )
                for i, row in enumerate(rows)
            }
        else:
            resolver = IdentityResolver(dataset.id, config, analysis.id_path)
            candidate_ids = [i.unique_id for i in (resolver.resolve(r) for r in rows) if i is not None]
            existing = await self.identity.find_existing(dataset.id, candidate_ids)
            batch = classify_batch(rows, resolver, existing, config.duplicate_strategy)
            classifications, identities = batch.classifications, batch.identities
            update_targets = {
                r.row: r.event_id for r in batch.analysis.update_candidates if r.event_id is not None
            }

        chunk_size = self.import_settings.batch_size
        chunk_count = (len(rows) + chunk_size - 1) // chunk_size
        checkpoint = self.jobs.get_checkpoint(job)
        first_chunk = checkpoint + 1 if checkpoint is not None else 0

        new_rows = sum(
            1
            for i, c in classifications.items()
            if c == RecordClassification.NEW and i not in failed_rows and i >= first_chunk * chunk_size
        )
        if new_rows:
            owner = Actor(id=import_file.created_by or "anonymous", trust_level=import_file.trust_level)
            await self.quotas.check(owner, QuotaType.TOTAL_EVENTS, new_rows)

        stats = job.get_results()
        for chunk_index in range(first_chunk, chunk_count):
            start = chunk_index * chunk_size
            row_errors: list[RowError] = []
            created = 0

            for index in range(start, min(start + chunk_size, len(rows))):
                if index in failed_rows:
                    stats.rows_failed += 1
                    continue
                classification = classifications.get(index)
                identity = identities.get(index)
                if identity is None or classification in (
                    None,
                    RecordClassification.INTERNAL_DUPLICATE,
                    RecordClassification.EXTERNAL_DUPLICATE,
                ):
                    stats.events_skipped += 1
                    continue

                raw = rows[index]
                try:
                    payload = apply_transforms(raw, rules) if rules else dict(raw)
                except ValueError as e:
                    row_errors.append(
                        RowError(row=index, error=f"Transform failed: {e}", stage=ImportStage.CREATE_EVENTS)
                    )
                    stats.rows_failed += 1
                    continue

                location, location_error = self._locate(raw, mappings.geo, autofix, geocoded)
                if location_error:
                    row_errors.append(
                        RowError(
                            row=index,
                            field=mappings.geo.address_path or mappings.geo.latitude_path,
                            error=location_error,
                            stage=ImportStage.CREATE_EVENTS,
                        )
                    )

                if classification == RecordClassification.UPDATE_CANDIDATE:
                    event = await self.db.get(Event, update_targets[index])
                    if event is None:
                        stats.events_skipped += 1
                        continue
                    if config.duplicate_strategy == DuplicateStrategy.VERSION:
                        event.previous_versions = [
                            *(event.previous_versions or []),
                            {
                                "version": event.version,
                                "data": event.data,
                                "content_hash": event.content_hash,
                                "import_job_id": event.import_job_id,
                                "replaced_at": utc_now().isoformat(),
                            },
                        ]
                        event.version += 1
                        stats.events_versioned += 1
                    else:
                        stats.events_updated += 1
                else:
                    event = Event(
                        dataset_id=dataset.id,
                        unique_id=identity.unique_id,
                        content_hash=identity.content_hash,
                    )
                    created += 1
                    stats.events_created += 1

                self._fill_event(event, job, payload, identity, location, mappings)
                self.db.add(event)

            self.jobs.add_row_errors(job, row_errors)
            job.set_results(stats)
            self.jobs.update_stage_progress(
                job, min(start + chunk_size, len(rows)), len(rows), checkpoint=chunk_index
            )
            self.db.add(job)
            if created:
                await self.db.execute(
                    update(Dataset)
                    .where(Dataset.id == dataset.id)
                    .values(event_count=Dataset.event_count + created)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()

        logger.info(
            f"Import job {job.id}: {stats.events_created} created, {stats.events_updated} updated, "
            f"{stats.events_versioned} versioned, {stats.events_skipped} skipped, {stats.rows_failed} failed"
        )
        return StageOutcome.SUCCESS

    def _fill_event(
        self,
        event: Event,
        job: ImportJob,
        payload: dict[str, Any],
        identity: RecordIdentity,
        location: RowLocation,
        mappings,
    ) -> None:
        title = get_by_path(payload, mappings.title_path) if mappings.title_path else None
        description = get_by_path(payload, mappings.description_path) if mappings.description_path else None
        timestamp = get_by_path(payload, mappings.timestamp_path) if mappings.timestamp_path else None

        event.import_job_id = job.id
        event.data = payload
        event.content_hash = identity.content_hash
        event.source_id = identity.source_id
        event.title = str(title)[:MAX_TITLE_LENGTH] if title is not None else None
        event.description = str(description) if description is not None else None
        event.event_timestamp = parse_timestamp(timestamp)
        event.latitude = location.latitude
        event.longitude = location.longitude
        event.coordinate_source = location.source
        event.coordinate_confidence = location.confidence
        event.validation_status = location.status
        event.geocoding_info = location.geocoding_info


def get_import_pipeline(db: AsyncSession) -> ImportPipeline:
    """Factory function for ImportPipeline."""
    return ImportPipeline(db)
