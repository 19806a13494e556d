"""
Library Conversion - Document Migration

Stage 3 of the conversion. Publishes each legacy document as a new file in
the library provisioned for its folder.

The migration:
1. Resolves each document's folder to its library by slug, at call time
2. Skips documents that already have a migrated file in those libraries
3. Builds a link file (URL documents) or a content file (everything else)
   that carries over title, description, tags and the original audit fields
4. Writes all new files in one all-or-nothing batch

Every input document gets a result: migrated, already migrated, or failed.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .errors import BatchTooLargeError, LookupMissError, ValidationError
from .models import (
    LegacyDocument, MigratedFile, MigrationOutcome, library_slug
)
from .sources import LegacyContentSource
from .store import ConversionStore

logger = logging.getLogger(__name__)


def client_path(document: LegacyDocument) -> str:
    """Client-visible filename given to migrated content files."""
    return f"/{document.developer_name}.{document.type}"


def build_migrated_file(document: LegacyDocument, library_id: str) -> MigratedFile:
    """
    Build the file that replaces ``document`` in library ``library_id``.

    The owner is the original author; creator, creation time, last modifier
    and modification time are copied verbatim.
    """
    migrated = MigratedFile(
        title=document.name,
        description=document.description,
        tags=document.keywords,
        publish_location_id=library_id,
        owner_id=document.author_id,
        created_by_id=document.created_by_id,
        created_date=document.created_date,
        last_modified_by_id=document.last_modified_by_id,
        last_modified_date=document.last_modified_date,
        original_record_id=document.id,
        original_folder_id=document.folder_id,
    )

    if document.is_link:
        if not document.url:
            raise ValidationError(f"URL document {document.id} has no URL")
        migrated.content_url = document.url
        return migrated

    if document.body is None:
        raise ValidationError(f"Document {document.id} has no content")
    migrated.version_data = document.body
    migrated.path_on_client = client_path(document)
    migrated.content_size = len(document.body)
    migrated.content_hash = hashlib.sha256(document.body).hexdigest()
    return migrated


@dataclass
class DocumentMigrationResult:
    """What happened to one legacy document."""
    document_id: str
    folder_id: str
    outcome: MigrationOutcome
    file_id: Optional[str] = None
    library_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "folder_id": self.folder_id,
            "outcome": self.outcome.value,
            "file_id": self.file_id,
            "library_id": self.library_id,
            "reason": self.reason,
        }


@dataclass
class MigrationReport:
    dry_run: bool = False
    results: List[DocumentMigrationResult] = field(default_factory=list)
    files: List[MigratedFile] = field(default_factory=list)

    def _count(self, outcome: MigrationOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def migrated(self) -> int:
        return self._count(MigrationOutcome.MIGRATED)

    @property
    def already_migrated(self) -> int:
        return self._count(MigrationOutcome.ALREADY_MIGRATED)

    @property
    def failed(self) -> int:
        return self._count(MigrationOutcome.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "migrated": self.migrated,
            "already_migrated": self.already_migrated,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
            "sample_files": [f.summary() for f in self.files[:20]],  # Limit sample size
        }


class DocumentMigrator:
    """
    Migrates legacy documents into their folders' libraries.

    Usage:
        migrator = DocumentMigrator(store, MongoLegacySource(...))
        report = await migrator.migrate(documents)
        for item in report.results:
            print(item.document_id, item.outcome)
    """

    def __init__(
        self,
        store: ConversionStore,
        source: LegacyContentSource,
        max_batch_size: Optional[int] = None
    ):
        self.store = store
        self.source = source
        self.max_batch_size = max_batch_size or config.MAX_BATCH_SIZE

    async def migrate(
        self,
        documents: Iterable[LegacyDocument],
        dry_run: bool = False
    ) -> MigrationReport:
        """
        Migrate every document that has no migrated file yet.

        Per-document problems (no library for the folder, missing content)
        become FAILED results; the other documents still migrate.

        Raises:
            BatchTooLargeError: more documents than max_batch_size
            PersistenceError: a query or the batch write failed (nothing is written)
        """
        documents = list(documents)
        report = MigrationReport(dry_run=dry_run)

        if not documents:
            logger.info("Document migration called with no documents, nothing to do")
            return report

        if len(documents) > self.max_batch_size:
            raise BatchTooLargeError("Document migration", len(documents), self.max_batch_size)

        # Step 1: folder id -> developer name -> library
        folder_ids = list(dict.fromkeys(doc.folder_id for doc in documents))
        folders = await self.source.get_folders(folder_ids)
        slug_by_folder = {folder.id: library_slug(folder.developer_name) for folder in folders}

        libraries = await self.store.find_libraries_by_slugs(slug_by_folder.values())
        library_by_slug = {row["developer_name"]: row["id"] for row in libraries}

        # Step 2: documents that already have a file in those libraries
        skip_ids = await self.store.find_migrated_record_ids(
            (doc.id for doc in documents), library_by_slug.values()
        )
        if skip_ids:
            logger.info(f"Found {len(skip_ids)} already migrated documents in this batch")

        # Step 3: build the new files
        seen = set()
        for doc in documents:
            if doc.id in skip_ids or doc.id in seen:
                report.results.append(DocumentMigrationResult(
                    document_id=doc.id,
                    folder_id=doc.folder_id,
                    outcome=MigrationOutcome.ALREADY_MIGRATED,
                ))
                logger.info(f"Skipped document {doc.id}: already migrated")
                continue
            seen.add(doc.id)

            try:
                library_id = self._resolve_library(doc, slug_by_folder, library_by_slug)
                migrated = build_migrated_file(doc, library_id)
            except (LookupMissError, ValidationError) as e:
                report.results.append(DocumentMigrationResult(
                    document_id=doc.id,
                    folder_id=doc.folder_id,
                    outcome=MigrationOutcome.FAILED,
                    reason=e.message,
                ))
                logger.error(f"Error migrating {doc.id}: {e.message}")
                continue

            report.files.append(migrated)
            report.results.append(DocumentMigrationResult(
                document_id=doc.id,
                folder_id=doc.folder_id,
                outcome=MigrationOutcome.MIGRATED,
                file_id=migrated.id,
                library_id=library_id,
            ))

        # Step 4: one all-or-nothing insert
        if report.files and not dry_run:
            async with self.store.unit_of_work() as uow:
                await uow.insert_many(
                    self.store.migrated_files, [f.to_dict() for f in report.files]
                )

        logger.info(
            f"Document migration{' (dry run)' if dry_run else ''}: "
            f"{report.migrated} migrated, {report.already_migrated} already migrated, "
            f"{report.failed} failed"
        )
        return report

    async def migrate_by_ids(self, document_ids: Iterable[str], dry_run: bool = False) -> MigrationReport:
        """Load documents from the source and migrate them."""
        document_ids = list(dict.fromkeys(document_ids))
        if len(document_ids) > self.max_batch_size:
            raise BatchTooLargeError("Document migration", len(document_ids), self.max_batch_size)

        documents = await self.source.get_documents(document_ids)
        found = {doc.id for doc in documents}
        missing = [doc_id for doc_id in document_ids if doc_id not in found]

        report = await self.migrate(documents, dry_run=dry_run)
        for doc_id in missing:
            report.results.append(DocumentMigrationResult(
                document_id=doc_id,
                folder_id="",
                outcome=MigrationOutcome.FAILED,
                reason=f"Legacy document {doc_id} not found",
            ))
            logger.error(f"Error migrating {doc_id}: legacy document not found")
        return report

    @staticmethod
    def _resolve_library(
        doc: LegacyDocument,
        slug_by_folder: Dict[str, str],
        library_by_slug: Dict[str, str]
    ) -> str:
        slug = slug_by_folder.get(doc.folder_id)
        if slug is None:
            raise LookupMissError(
                f"Folder {doc.folder_id} of document {doc.id} was not found",
                {"document_id": doc.id, "folder_id": doc.folder_id},
            )

        library_id = library_by_slug.get(slug)
        if library_id is None:
            raise LookupMissError(
                f"No library {slug} has been provisioned for folder {doc.folder_id}",
                {"document_id": doc.id, "folder_id": doc.folder_id, "slug": slug},
            )
        return library_id
