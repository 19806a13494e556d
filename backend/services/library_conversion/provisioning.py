"""
Library Conversion - Library Provisioning

Stage 2 of the conversion. Turns tracking records into an access group and
a library per folder, copies the folder's sharing membership into the group
and grants the group access to the library.

Groups and libraries are looked up by their deterministic developer name
(doc2file_<folder developer name>) and only created when missing, so
provisioning the same records again adds nothing. When a reused group or
library no longer matches the tracking records (the folder was registered
again with a new snapshot), stale members and grants are removed in the
same unit of work that adds the new ones.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import config
from .errors import BatchTooLargeError
from .models import (
    AccessGroup, ConversionTrackingRecord, GroupMembership, Library,
    LibraryMembership, ProvisioningOutcome, library_group_name
)
from .store import ConversionStore

logger = logging.getLogger(__name__)


@dataclass
class ProvisionedLibrary:
    """The group/library pair behind one slug."""
    slug: str
    group_id: str
    library_id: str
    group_outcome: ProvisioningOutcome
    library_outcome: ProvisioningOutcome
    tracking_record_ids: List[str] = field(default_factory=list)
    members_added: List[str] = field(default_factory=list)
    permissions_granted: List[str] = field(default_factory=list)
    members_removed: List[str] = field(default_factory=list)
    permissions_revoked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "group_id": self.group_id,
            "library_id": self.library_id,
            "group_outcome": self.group_outcome.value,
            "library_outcome": self.library_outcome.value,
            "tracking_record_ids": self.tracking_record_ids,
            "members_added": self.members_added,
            "permissions_granted": self.permissions_granted,
            "members_removed": self.members_removed,
            "permissions_revoked": self.permissions_revoked,
        }


@dataclass
class ProvisioningResult:
    dry_run: bool = False
    libraries: List[ProvisionedLibrary] = field(default_factory=list)
    groups_created: int = 0
    libraries_created: int = 0
    group_memberships_created: int = 0
    library_memberships_created: int = 0
    group_memberships_removed: int = 0
    library_memberships_removed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "groups_created": self.groups_created,
            "libraries_created": self.libraries_created,
            "group_memberships_created": self.group_memberships_created,
            "library_memberships_created": self.library_memberships_created,
            "group_memberships_removed": self.group_memberships_removed,
            "library_memberships_removed": self.library_memberships_removed,
            "libraries": [lib.to_dict() for lib in self.libraries],
        }


@dataclass
class MembershipChanges:
    members_to_add: List[GroupMembership] = field(default_factory=list)
    members_to_remove: List[Dict[str, Any]] = field(default_factory=list)
    grants_to_add: List[LibraryMembership] = field(default_factory=list)
    grants_to_remove: List[Dict[str, Any]] = field(default_factory=list)


class LibraryProvisioner:
    """
    Creates access groups, libraries and memberships from tracking records.

    Usage:
        provisioner = LibraryProvisioner(store)
        records = await provisioner.pending_tracking_records()
        result = await provisioner.provision(records)
    """

    def __init__(self, store: ConversionStore, max_batch_size: Optional[int] = None):
        self.store = store
        self.max_batch_size = max_batch_size or config.MAX_BATCH_SIZE

    async def pending_tracking_records(self, limit: Optional[int] = None) -> List[ConversionTrackingRecord]:
        """Tracking records whose library has not been provisioned yet."""
        rows = await self.store.list_tracking_records()
        records = [ConversionTrackingRecord.from_dict(row) for row in rows]

        existing = await self.store.find_libraries_by_slugs(r.library_slug for r in records)
        provisioned = {row["developer_name"] for row in existing}

        pending = [r for r in records if r.library_slug not in provisioned]
        return pending[:limit] if limit else pending

    async def provision(
        self,
        records: Iterable[ConversionTrackingRecord],
        dry_run: bool = False
    ) -> ProvisioningResult:
        """
        Find or create the group and library for every record, then bring
        their memberships in line with the tracking records.

        Raises:
            BatchTooLargeError: more records than max_batch_size
            PersistenceError: any query or write failed (nothing is written)
        """
        records = list(records)
        result = ProvisioningResult(dry_run=dry_run)

        if not records:
            logger.info("Library provisioning called with no tracking records, nothing to do")
            return result

        if len(records) > self.max_batch_size:
            raise BatchTooLargeError("Library provisioning", len(records), self.max_batch_size)

        # Records sharing a slug collapse into one group/library pair
        by_slug: Dict[str, List[ConversionTrackingRecord]] = {}
        for record in records:
            by_slug.setdefault(record.library_slug, []).append(record)

        existing_groups = {
            row["developer_name"]: AccessGroup.from_dict(row)
            for row in await self.store.find_groups_by_slugs(by_slug.keys())
        }
        existing_libraries = {
            row["developer_name"]: Library.from_dict(row)
            for row in await self.store.find_libraries_by_slugs(by_slug.keys())
        }

        new_groups: List[AccessGroup] = []
        new_libraries: List[Library] = []
        pairs: Dict[str, Tuple[AccessGroup, Library]] = {}

        for slug, slug_records in by_slug.items():
            first = slug_records[0]
            if len(slug_records) > 1:
                logger.warning(
                    f"{len(slug_records)} tracking records share slug {slug}; "
                    f"provisioning a single group and library for them"
                )

            group = existing_groups.get(slug)
            group_outcome = ProvisioningOutcome.REUSED
            if group is None:
                group = AccessGroup(name=library_group_name(first.folder_name), developer_name=slug)
                new_groups.append(group)
                group_outcome = ProvisioningOutcome.CREATED

            library = existing_libraries.get(slug)
            library_outcome = ProvisioningOutcome.REUSED
            if library is None:
                library = Library(name=first.folder_name, developer_name=slug)
                new_libraries.append(library)
                library_outcome = ProvisioningOutcome.CREATED

            pairs[slug] = (group, library)
            result.libraries.append(ProvisionedLibrary(
                slug=slug,
                group_id=group.id,
                library_id=library.id,
                group_outcome=group_outcome,
                library_outcome=library_outcome,
                tracking_record_ids=[r.id for r in slug_records],
            ))

        changes = await self._build_memberships(by_slug, pairs, result)

        result.groups_created = len(new_groups)
        result.libraries_created = len(new_libraries)
        result.group_memberships_created = len(changes.members_to_add)
        result.library_memberships_created = len(changes.grants_to_add)
        result.group_memberships_removed = len(changes.members_to_remove)
        result.library_memberships_removed = len(changes.grants_to_remove)

        if not dry_run:
            async with self.store.unit_of_work() as uow:
                await uow.delete_many(self.store.library_memberships, changes.grants_to_remove)
                await uow.delete_many(self.store.group_memberships, changes.members_to_remove)
                await uow.insert_many(self.store.access_groups, [g.to_dict() for g in new_groups])
                await uow.insert_many(self.store.libraries, [lib.to_dict() for lib in new_libraries])
                await uow.insert_many(
                    self.store.group_memberships, [m.to_dict() for m in changes.members_to_add]
                )
                await uow.insert_many(
                    self.store.library_memberships, [m.to_dict() for m in changes.grants_to_add]
                )

        logger.info(
            f"Library provisioning{' (dry run)' if dry_run else ''}: "
            f"{result.groups_created} groups and {result.libraries_created} libraries created, "
            f"{result.group_memberships_created} group members and "
            f"{result.library_memberships_created} library grants added, "
            f"{result.group_memberships_removed} group members and "
            f"{result.library_memberships_removed} library grants removed"
        )
        return result

    async def _desired_access(
        self,
        by_slug: Dict[str, List[ConversionTrackingRecord]]
    ) -> Dict[str, List[ConversionTrackingRecord]]:
        """
        Every tracking record behind each slug.

        The ledger holds the current snapshot of folders that are not part of
        this call; the records passed in win over their ledger rows.
        """
        developer_names = {r.folder_developer_name for rs in by_slug.values() for r in rs}
        rows = await self.store.find_tracking_by_developer_names(developer_names)

        desired: Dict[str, Dict[str, ConversionTrackingRecord]] = {slug: {} for slug in by_slug}
        for row in rows:
            record = ConversionTrackingRecord.from_dict(row)
            if record.library_slug in desired:
                desired[record.library_slug][record.folder_id] = record
        for slug, slug_records in by_slug.items():
            for record in slug_records:
                desired[slug][record.folder_id] = record

        return {slug: list(records.values()) for slug, records in desired.items()}

    async def _build_memberships(
        self,
        by_slug: Dict[str, List[ConversionTrackingRecord]],
        pairs: Dict[str, Tuple[AccessGroup, Library]],
        result: ProvisioningResult
    ) -> MembershipChanges:
        """
        Reconcile group members and library grants with the tracking records.

        Missing memberships are added. Existing ones the records no longer
        call for are returned for removal, so a group always mirrors the
        folder snapshot it was provisioned from.
        """
        group_ids = [group.id for group, _ in pairs.values()]
        library_ids = [library.id for _, library in pairs.values()]

        member_rows: Dict[str, List[Dict]] = {}
        for row in await self.store.find_group_memberships(group_ids):
            member_rows.setdefault(row["group_id"], []).append(row)
        grant_rows: Dict[str, List[Dict]] = {}
        for row in await self.store.find_library_memberships(library_ids):
            grant_rows.setdefault(row["library_id"], []).append(row)

        desired = await self._desired_access(by_slug)
        provisioned = {lib.slug: lib for lib in result.libraries}
        changes = MembershipChanges()

        for slug in by_slug:
            group, library = pairs[slug]
            entry = provisioned[slug]

            wanted_members: List[str] = []
            wanted_permissions: List[str] = []
            for record in desired[slug]:
                for member_id in record.group_ids:
                    if member_id not in wanted_members:
                        wanted_members.append(member_id)
                if record.permission_id not in wanted_permissions:
                    wanted_permissions.append(record.permission_id)

            current_members = {row["member_id"] for row in member_rows.get(group.id, [])}
            for member_id in wanted_members:
                if member_id in current_members:
                    continue
                changes.members_to_add.append(GroupMembership(group_id=group.id, member_id=member_id))
                entry.members_added.append(member_id)

            for row in member_rows.get(group.id, []):
                if row["member_id"] not in wanted_members:
                    changes.members_to_remove.append(row)
                    entry.members_removed.append(row["member_id"])

            current_grants = {
                (row["group_id"], row["permission_id"]) for row in grant_rows.get(library.id, [])
            }
            for permission_id in wanted_permissions:
                if (group.id, permission_id) in current_grants:
                    continue
                changes.grants_to_add.append(LibraryMembership(
                    library_id=library.id,
                    group_id=group.id,
                    permission_id=permission_id,
                ))
                entry.permissions_granted.append(permission_id)

            # The library is shared with its own group only
            for row in grant_rows.get(library.id, []):
                if row["group_id"] != group.id or row["permission_id"] not in wanted_permissions:
                    changes.grants_to_remove.append(row)
                    entry.permissions_revoked.append(row["permission_id"])

        return changes
