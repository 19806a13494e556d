"""
Library Conversion - Folder Registration

Stage 1 of the conversion. Decides which legacy folders still need
converting and writes one ledger entry (tracking record) per folder with
its membership snapshot and the permission its library will be granted.

A folder that already has a tracking record is never registered again,
whatever happened downstream. Deleting the record from the ledger is the
only way to reprocess it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .directory import DirectoryClient, DirectoryConnection, FolderDirectory
from .errors import BatchTooLargeError, DuplicateConversionError, DuplicateRecordError
from .models import (
    AccessLevel, ConversionTrackingRecord, FolderMembershipSnapshot,
    LegacyFolder, PermissionMapping, RegistrationOutcome
)
from .store import ConversionStore

logger = logging.getLogger(__name__)


@dataclass
class FolderRegistration:
    """What happened to one candidate folder."""
    folder_id: str
    folder_developer_name: str
    outcome: RegistrationOutcome
    tracking_record_id: Optional[str] = None
    permission_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder_id": self.folder_id,
            "folder_developer_name": self.folder_developer_name,
            "outcome": self.outcome.value,
            "tracking_record_id": self.tracking_record_id,
            "permission_id": self.permission_id,
        }


@dataclass
class RegistrationResult:
    dry_run: bool = False
    folders: List[FolderRegistration] = field(default_factory=list)
    records: List[ConversionTrackingRecord] = field(default_factory=list)

    def _count(self, outcome: RegistrationOutcome) -> int:
        return sum(1 for f in self.folders if f.outcome == outcome)

    @property
    def registered(self) -> int:
        return self._count(RegistrationOutcome.REGISTERED)

    @property
    def already_tracked(self) -> int:
        return self._count(RegistrationOutcome.ALREADY_TRACKED)

    @property
    def not_in_directory(self) -> int:
        return self._count(RegistrationOutcome.NOT_IN_DIRECTORY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "registered": self.registered,
            "already_tracked": self.already_tracked,
            "not_in_directory": self.not_in_directory,
            "folders": [f.to_dict() for f in self.folders],
            "records": [r.to_dict() for r in self.records],
        }


class FolderRegistrar:
    """
    Registers legacy folders in the conversion ledger.

    Usage:
        registrar = FolderRegistrar(store, DirectoryClient(connection))
        result = await registrar.register(
            folders, PermissionMapping("0PS_RO", "0PS_RW")
        )
    """

    def __init__(
        self,
        store: ConversionStore,
        directory: FolderDirectory,
        max_batch_size: Optional[int] = None
    ):
        self.store = store
        self.directory = directory
        self.max_batch_size = max_batch_size or config.MAX_BATCH_SIZE

    async def register(
        self,
        folders: Iterable[LegacyFolder],
        permissions: PermissionMapping,
        dry_run: bool = False
    ) -> RegistrationResult:
        """
        Register every folder that has no tracking record yet.

        Raises:
            BatchTooLargeError: more folders than max_batch_size
            ExternalServiceError: the directory lookup failed
            UnsupportedAccessLevelError: a snapshot's access level has no
                permission mapping (nothing is written)
            DuplicateConversionError: a concurrent call registered one of the
                folders first (nothing is written)
            PersistenceError: the ledger could not be read or written
        """
        result = RegistrationResult(dry_run=dry_run)

        candidates: Dict[str, LegacyFolder] = {}
        for folder in folders:
            candidates.setdefault(folder.id, folder)

        if not candidates:
            logger.info("Folder registration called with no folders, nothing to do")
            return result

        if len(candidates) > self.max_batch_size:
            raise BatchTooLargeError("Folder registration", len(candidates), self.max_batch_size)

        outcomes: Dict[str, FolderRegistration] = {}

        # Step 1: drop folders that are already in the ledger
        existing = await self.store.find_tracking_by_folder_ids(candidates.keys())
        for row in existing:
            folder = candidates[row["folder_id"]]
            outcomes[folder.id] = FolderRegistration(
                folder_id=folder.id,
                folder_developer_name=folder.developer_name,
                outcome=RegistrationOutcome.ALREADY_TRACKED,
                tracking_record_id=row["id"],
                permission_id=row.get("permission_id"),
            )
            logger.warning(
                f"Folder {folder.developer_name} ({folder.id}) is already tracked by "
                f"record {row['id']}; delete that record to reprocess the folder"
            )

        remaining: Dict[str, List[LegacyFolder]] = {}
        for folder in candidates.values():
            if folder.id not in outcomes:
                remaining.setdefault(folder.developer_name, []).append(folder)

        # Step 2: one batched directory lookup for everything left
        snapshots: List[FolderMembershipSnapshot] = []
        if remaining:
            snapshots = await self.directory.get_document_folder_membership(remaining.keys())

        # Step 3: build all records before writing any of them
        for snapshot in snapshots:
            matching = remaining.get(snapshot.developer_name)
            if not matching:
                logger.warning(
                    f"Directory returned unrequested folder {snapshot.developer_name}, ignoring"
                )
                continue

            level = AccessLevel.parse(snapshot.access_level, snapshot.developer_name)
            permission_id = permissions.resolve(level)

            for folder in matching:
                if folder.id in outcomes:
                    continue
                record = ConversionTrackingRecord(
                    folder_id=folder.id,
                    folder_name=snapshot.name or folder.name,
                    folder_developer_name=folder.developer_name,
                    group_ids=list(snapshot.group_ids),
                    permission_id=permission_id,
                    access_level=level.value,
                )
                result.records.append(record)
                outcomes[folder.id] = FolderRegistration(
                    folder_id=folder.id,
                    folder_developer_name=folder.developer_name,
                    outcome=RegistrationOutcome.REGISTERED,
                    tracking_record_id=record.id,
                    permission_id=permission_id,
                )

        for folder in candidates.values():
            if folder.id not in outcomes:
                outcomes[folder.id] = FolderRegistration(
                    folder_id=folder.id,
                    folder_developer_name=folder.developer_name,
                    outcome=RegistrationOutcome.NOT_IN_DIRECTORY,
                )
                logger.warning(
                    f"Directory has no membership for folder {folder.developer_name} ({folder.id})"
                )

        # Step 4: one all-or-nothing insert
        if result.records and not dry_run:
            try:
                async with self.store.unit_of_work() as uow:
                    await uow.insert_many(
                        self.store.tracking, [r.to_dict() for r in result.records]
                    )
            except DuplicateRecordError as e:
                raise DuplicateConversionError(
                    "A folder in this batch was registered concurrently; no records were written",
                    {"folder_ids": [r.folder_id for r in result.records]},
                ) from e

        result.folders = [outcomes[folder_id] for folder_id in candidates]

        logger.info(
            f"Folder registration{' (dry run)' if dry_run else ''}: "
            f"{result.registered} registered, {result.already_tracked} already tracked, "
            f"{result.not_in_directory} missing from directory"
        )
        return result


async def register_folders(
    store: ConversionStore,
    folders: Iterable[LegacyFolder],
    connection: DirectoryConnection,
    read_only_permission_id: str,
    read_write_permission_id: str,
    dry_run: bool = False
) -> RegistrationResult:
    """Register folders against the remote directory described by ``connection``."""
    registrar = FolderRegistrar(store, DirectoryClient(connection))
    permissions = PermissionMapping(read_only_permission_id, read_write_permission_id)
    return await registrar.register(folders, permissions, dry_run=dry_run)
