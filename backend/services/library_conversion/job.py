"""
Library Conversion - Conversion Job

Runs the three stages end to end over a legacy content source:

1. Registration of the source's folders, in chunks of batch_size
2. Provisioning of the pending tracking records for those folders
3. Migration of the documents in those folders, read from the source one
   chunk at a time

Each chunk is atomic on its own; a failed chunk is recorded and the job
moves on to the next one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, TypeVar

from .directory import FolderDirectory
from .errors import LibraryConversionError
from .migration import DocumentMigrator
from .models import LegacyDocument, PermissionMapping
from .provisioning import LibraryProvisioner
from .registration import FolderRegistrar
from .sources import LegacyContentSource
from .store import ConversionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Split ``items`` into lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("size must be at least 1")
    chunk: List[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


class ConversionMode(str, Enum):
    """Conversion execution modes."""
    DRY_RUN = "dry_run"     # Compute and report without writing
    REAL = "real"           # Actually write to database


@dataclass
class StageStats:
    """Statistics for one stage of a conversion run."""
    batches: int = 0
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def record_batch(self, processed: int, succeeded: int, skipped: int, failed: int = 0) -> None:
        self.batches += 1
        self.processed += processed
        self.succeeded += succeeded
        self.skipped += skipped
        self.failed += failed

    def record_batch_error(self, error: LibraryConversionError, size: int) -> None:
        self.batches += 1
        self.processed += size
        self.failed += size
        self.errors.append({
            **error.to_dict(),
            "batch_size": size,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batches": self.batches,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors[:100],  # Limit errors in output
            "error_count": len(self.errors),
        }


@dataclass
class ConversionJobResult:
    """Result of a conversion job run."""
    mode: str
    source_name: str
    started_at: str
    completed_at: str = ""
    duration_seconds: float = 0.0
    registration: StageStats = field(default_factory=StageStats)
    provisioning: StageStats = field(default_factory=StageStats)
    migration: StageStats = field(default_factory=StageStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "source_name": self.source_name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "registration": self.registration.to_dict(),
            "provisioning": self.provisioning.to_dict(),
            "migration": self.migration.to_dict(),
        }


class ConversionJob:
    """
    End-to-end folder-to-library conversion.

    Usage:
        job = ConversionJob(source, store, directory, permissions)
        result = await job.run(mode=ConversionMode.DRY_RUN)

        # Review result, then run for real
        if not result.registration.errors:
            result = await job.run(mode=ConversionMode.REAL)
    """

    def __init__(
        self,
        source: LegacyContentSource,
        store: ConversionStore,
        directory: FolderDirectory,
        permissions: PermissionMapping,
        batch_size: int = 100
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.source = source
        self.store = store
        self.batch_size = batch_size

        self.registrar = FolderRegistrar(store, directory, max_batch_size=batch_size)
        self.provisioner = LibraryProvisioner(store, max_batch_size=batch_size)
        self.migrator = DocumentMigrator(store, source, max_batch_size=batch_size)
        self.permissions = permissions

    async def run(
        self,
        mode: ConversionMode = ConversionMode.DRY_RUN,
        folder_ids: Optional[List[str]] = None,
        limit: Optional[int] = None
    ) -> ConversionJobResult:
        """
        Execute the conversion.

        Args:
            mode: DRY_RUN to report only, REAL to write
            folder_ids: Restrict the run to these folders (default: all folders)
            limit: Maximum number of folders when folder_ids is not given

        In DRY_RUN nothing is written, so documents in folders whose
        libraries do not exist yet are reported as failed lookups.
        """
        started_at = datetime.now(timezone.utc)
        dry_run = mode == ConversionMode.DRY_RUN
        result = ConversionJobResult(
            mode=mode.value,
            source_name=self.source.get_source_name(),
            started_at=started_at.isoformat(),
        )

        logger.info(
            f"Starting conversion job in {mode.value} mode from {self.source.get_source_name()}"
        )

        if folder_ids is not None:
            folders = await self.source.get_folders(folder_ids)
        else:
            folders = await self.source.list_folders(limit)
        folder_set = {folder.id for folder in folders}

        # Stage 1
        planned_records = []
        for chunk in chunked(folders, self.batch_size):
            try:
                registration = await self.registrar.register(chunk, self.permissions, dry_run=dry_run)
            except LibraryConversionError as e:
                logger.error(f"Registration batch of {len(chunk)} folders failed: {e.message}")
                result.registration.record_batch_error(e, len(chunk))
                continue
            planned_records.extend(registration.records)
            result.registration.record_batch(
                processed=len(registration.folders),
                succeeded=registration.registered,
                skipped=registration.already_tracked + registration.not_in_directory,
            )

        # Stage 2
        pending = [
            r for r in await self.provisioner.pending_tracking_records()
            if r.folder_id in folder_set
        ]
        if dry_run:
            pending.extend(planned_records)

        for chunk in chunked(pending, self.batch_size):
            try:
                provisioning = await self.provisioner.provision(chunk, dry_run=dry_run)
            except LibraryConversionError as e:
                logger.error(f"Provisioning batch of {len(chunk)} records failed: {e.message}")
                result.provisioning.record_batch_error(e, len(chunk))
                continue
            result.provisioning.record_batch(
                processed=len(chunk),
                succeeded=provisioning.libraries_created,
                skipped=len(provisioning.libraries) - provisioning.libraries_created,
            )

        # Stage 3: documents are pulled from the source one chunk at a time
        batch: List[LegacyDocument] = []
        async for document in self.source.iter_documents(folder_ids=folder_set):
            batch.append(document)
            if len(batch) >= self.batch_size:
                await self._migrate_chunk(batch, dry_run, result.migration)
                batch = []
        if batch:
            await self._migrate_chunk(batch, dry_run, result.migration)

        completed_at = datetime.now(timezone.utc)
        result.completed_at = completed_at.isoformat()
        result.duration_seconds = (completed_at - started_at).total_seconds()

        logger.info(
            f"Conversion completed: {result.registration.succeeded} folders registered, "
            f"{result.provisioning.succeeded} libraries created, "
            f"{result.migration.succeeded} documents migrated "
            f"in {result.duration_seconds:.2f}s"
        )
        return result

    async def _migrate_chunk(
        self,
        chunk: List[LegacyDocument],
        dry_run: bool,
        stats: StageStats
    ) -> None:
        try:
            report = await self.migrator.migrate(chunk, dry_run=dry_run)
        except LibraryConversionError as e:
            logger.error(f"Migration batch of {len(chunk)} documents failed: {e.message}")
            stats.record_batch_error(e, len(chunk))
            return
        stats.record_batch(
            processed=len(report.results),
            succeeded=report.migrated,
            skipped=report.already_migrated,
            failed=report.failed,
        )


class ConversionJobBuilder:
    """
    Builder for conversion jobs.

    Example:
        job = (ConversionJobBuilder()
            .with_json_source("/path/to/export.json")
            .with_store(store)
            .with_directory(StaticDirectory(snapshots))
            .with_permissions("0PS_RO", "0PS_RW")
            .batch_size(50)
            .build())
    """

    def __init__(self):
        self._source = None
        self._store = None
        self._directory = None
        self._permissions = None
        self._batch_size = 100

    def with_source(self, source: LegacyContentSource) -> 'ConversionJobBuilder':
        self._source = source
        return self

    def with_json_source(self, file_path: str) -> 'ConversionJobBuilder':
        """Use a JSON export file as the source."""
        from .sources import JsonExportSource
        self._source = JsonExportSource(file_path)
        return self

    def with_store(self, store: ConversionStore) -> 'ConversionJobBuilder':
        self._store = store
        return self

    def with_directory(self, directory: FolderDirectory) -> 'ConversionJobBuilder':
        self._directory = directory
        return self

    def with_permissions(self, read_only_permission_id: str, read_write_permission_id: str) -> 'ConversionJobBuilder':
        self._permissions = PermissionMapping(read_only_permission_id, read_write_permission_id)
        return self

    def batch_size(self, size: int) -> 'ConversionJobBuilder':
        self._batch_size = size
        return self

    def build(self) -> ConversionJob:
        """Build the conversion job."""
        if self._source is None:
            raise ValueError("Source is required")
        if self._store is None:
            raise ValueError("Store is required")
        if self._directory is None:
            raise ValueError("Directory is required")
        if self._permissions is None:
            raise ValueError("Permissions are required")

        return ConversionJob(
            source=self._source,
            store=self._store,
            directory=self._directory,
            permissions=self._permissions,
            batch_size=self._batch_size
        )
