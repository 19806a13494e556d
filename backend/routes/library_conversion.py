"""
Library Conversion API Routes

REST API endpoints for converting legacy document folders into libraries:
registration, provisioning and document migration, plus status views.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from services.library_conversion import config
from services.library_conversion.directory import (
    DirectoryClient, DirectoryConnection, FolderDirectory
)
from services.library_conversion.errors import (
    DuplicateConversionError, ExternalServiceError, LibraryConversionError,
    PersistenceError, ValidationError
)
from services.library_conversion.migration import DocumentMigrator
from services.library_conversion.models import ConversionTrackingRecord, PermissionMapping
from services.library_conversion.provisioning import LibraryProvisioner
from services.library_conversion.registration import FolderRegistrar
from services.library_conversion.sources import MongoLegacySource
from services.library_conversion.store import ConversionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/library-conversion", tags=["Library Conversion"])

# Will be set by server.py when mounting the router
db: AsyncIOMotorDatabase = None
mongo_client: AsyncIOMotorClient = None
directory: Optional[FolderDirectory] = None


def set_db(database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None):
    """Set database reference for library conversion routes."""
    global db, mongo_client
    db = database
    mongo_client = client


def set_directory(folder_directory: Optional[FolderDirectory]):
    """Override the folder directory (defaults to the configured HTTP client)."""
    global directory
    directory = folder_directory


def get_store() -> ConversionStore:
    if not config.is_library_conversion_enabled():
        raise HTTPException(status_code=503, detail="Library conversion is disabled")
    if db is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return ConversionStore(
        db,
        client=mongo_client,
        use_transactions=config.USE_TRANSACTIONS,
        collection_prefix=config.COLLECTION_PREFIX,
    )


def get_directory() -> FolderDirectory:
    if directory is not None:
        return directory
    return DirectoryClient(DirectoryConnection.from_env())


def get_source(store: ConversionStore) -> MongoLegacySource:
    return MongoLegacySource(store.legacy_folders, store.legacy_documents)


def _to_http_error(error: LibraryConversionError) -> HTTPException:
    if isinstance(error, ValidationError):
        status_code = 422
    elif isinstance(error, DuplicateConversionError):
        status_code = 409
    elif isinstance(error, ExternalServiceError):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error.to_dict())


# Request Models

class RegisterFoldersRequest(BaseModel):
    """Request body for folder registration."""
    folder_ids: Optional[List[str]] = None  # None = first max_batch_size folders
    read_only_permission_id: Optional[str] = None
    read_write_permission_id: Optional[str] = None
    dry_run: bool = False


class ProvisionLibrariesRequest(BaseModel):
    """Request body for library provisioning."""
    folder_ids: Optional[List[str]] = None  # None = all pending tracking records
    dry_run: bool = False


class MigrateDocumentsRequest(BaseModel):
    """Request body for document migration."""
    document_ids: List[str]
    dry_run: bool = False


# Endpoints

@router.get("/config")
async def get_library_conversion_config():
    """Get library conversion configuration (sanitized - no secrets)."""
    return config.get_conversion_config()


@router.get("/summary")
async def get_library_conversion_summary():
    """Record counts for the ledger and everything provisioned from it."""
    store = get_store()
    try:
        return await store.get_summary()
    except LibraryConversionError as e:
        logger.error(f"Error getting summary: {e.message}")
        raise _to_http_error(e)


@router.post("/folders/register")
async def register_folders(request: RegisterFoldersRequest):
    """
    Register legacy folders in the conversion ledger.

    Folders that already have a tracking record are reported as
    already_tracked and left alone. Without folder_ids the next
    MAX_BATCH_SIZE folders that have no tracking record are registered.
    """
    store = get_store()
    source = get_source(store)

    try:
        permissions = PermissionMapping(
            request.read_only_permission_id or config.READ_ONLY_PERMISSION_ID,
            request.read_write_permission_id or config.READ_WRITE_PERMISSION_ID,
        )
        if request.folder_ids is not None:
            folders = await source.get_folders(request.folder_ids)
        else:
            # Next untracked folders, so repeated calls walk the whole source
            folders = await source.list_folders(
                limit=config.MAX_BATCH_SIZE,
                exclude_ids=await store.tracked_folder_ids(),
            )

        registrar = FolderRegistrar(store, get_directory())
        result = await registrar.register(folders, permissions, dry_run=request.dry_run)
    except LibraryConversionError as e:
        logger.error(f"Folder registration failed: {e.message}")
        raise _to_http_error(e)

    response = result.to_dict()
    if request.folder_ids is not None:
        found = {folder.id for folder in folders}
        response["unknown_folder_ids"] = [fid for fid in request.folder_ids if fid not in found]
    return response


@router.get("/tracking")
async def list_tracking_records(
    pending_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000)
):
    """List conversion tracking records."""
    store = get_store()
    try:
        if pending_only:
            records = await LibraryProvisioner(store).pending_tracking_records(limit=limit)
            return {"records": [r.to_dict() for r in records], "count": len(records)}

        rows = await store.list_tracking_records(limit=limit)
        return {"records": rows, "count": len(rows)}
    except PersistenceError as e:
        logger.error(f"Error listing tracking records: {e.message}")
        raise _to_http_error(e)


@router.post("/libraries/provision")
async def provision_libraries(request: ProvisionLibrariesRequest):
    """
    Create access groups and libraries for tracking records.

    Existing groups and libraries are reused, so repeating a call is safe.
    """
    store = get_store()
    provisioner = LibraryProvisioner(store)

    try:
        if request.folder_ids is not None:
            rows = await store.find_tracking_by_folder_ids(request.folder_ids)
            records = [ConversionTrackingRecord.from_dict(row) for row in rows]
        else:
            records = await provisioner.pending_tracking_records(limit=config.MAX_BATCH_SIZE)

        result = await provisioner.provision(records, dry_run=request.dry_run)
    except LibraryConversionError as e:
        logger.error(f"Library provisioning failed: {e.message}")
        raise _to_http_error(e)

    return result.to_dict()


@router.post("/documents/migrate")
async def migrate_documents(request: MigrateDocumentsRequest):
    """
    Migrate legacy documents into their folders' libraries.

    Returns one result per requested document id.
    """
    store = get_store()
    migrator = DocumentMigrator(store, get_source(store))

    try:
        report = await migrator.migrate_by_ids(request.document_ids, dry_run=request.dry_run)
    except LibraryConversionError as e:
        logger.error(f"Document migration failed: {e.message}")
        raise _to_http_error(e)

    return report.to_dict()
