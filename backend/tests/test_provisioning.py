"""
Tests for library provisioning (stage 2).
"""
import pytest
from pymongo.errors import PyMongoError

from services.library_conversion.errors import BatchTooLargeError, PersistenceError
from services.library_conversion.models import ConversionTrackingRecord, ProvisioningOutcome
from services.library_conversion.provisioning import LibraryProvisioner


def make_record(folder_id, developer_name, group_ids, permission_id="P1", folder_name=None):
    return ConversionTrackingRecord(
        folder_id=folder_id,
        folder_name=folder_name or developer_name.upper(),
        folder_developer_name=developer_name,
        group_ids=list(group_ids),
        permission_id=permission_id,
        access_level="ReadOnly" if permission_id == "P1" else "ReadWrite",
    )


@pytest.mark.asyncio
class TestLibraryProvisioning:

    async def test_creates_group_library_and_memberships(self, store):
        record = make_record("F1", "f1", ["g1"], "P1", folder_name="Folder 1")

        result = await LibraryProvisioner(store).provision([record])

        groups = store.access_groups.documents
        libraries = store.libraries.documents
        assert len(groups) == 1 and len(libraries) == 1
        assert groups[0]["developer_name"] == "doc2file_f1"
        assert groups[0]["name"] == "Library: Folder 1"
        assert libraries[0]["developer_name"] == "doc2file_f1"
        assert libraries[0]["name"] == "Folder 1"

        members = store.group_memberships.documents
        assert [(m["group_id"], m["member_id"]) for m in members] == [(groups[0]["id"], "g1")]

        grants = store.library_memberships.documents
        assert len(grants) == 1
        assert grants[0]["library_id"] == libraries[0]["id"]
        assert grants[0]["group_id"] == groups[0]["id"]
        assert grants[0]["permission_id"] == "P1"

        entry = result.libraries[0]
        assert entry.group_outcome == ProvisioningOutcome.CREATED
        assert entry.library_outcome == ProvisioningOutcome.CREATED
        assert entry.tracking_record_ids == [record.id]

    async def test_membership_fidelity_read_write(self, store):
        """Groups {G1, G2} at ReadWrite give exactly those members and one P2 grant."""
        record = make_record("F2", "f2", ["G1", "G2"], "P2")

        await LibraryProvisioner(store).provision([record])

        group_id = store.access_groups.documents[0]["id"]
        members = {m["member_id"] for m in store.group_memberships.documents if m["group_id"] == group_id}
        assert members == {"G1", "G2"}

        grants = store.library_memberships.documents
        assert [(g["group_id"], g["permission_id"]) for g in grants] == [(group_id, "P2")]

    async def test_empty_group_list_still_grants_library(self, store):
        result = await LibraryProvisioner(store).provision([make_record("F1", "f1", [])])

        assert store.group_memberships.documents == []
        assert len(store.library_memberships.documents) == 1
        assert result.group_memberships_created == 0

    async def test_second_run_reuses_everything(self, store):
        await store.ensure_indexes()
        record = make_record("F1", "f1", ["g1", "g2"])
        provisioner = LibraryProvisioner(store)

        await provisioner.provision([record])
        second = await provisioner.provision([record])

        assert len(store.access_groups.documents) == 1
        assert len(store.libraries.documents) == 1
        assert len(store.group_memberships.documents) == 2
        assert len(store.library_memberships.documents) == 1

        entry = second.libraries[0]
        assert entry.group_outcome == ProvisioningOutcome.REUSED
        assert entry.library_outcome == ProvisioningOutcome.REUSED
        assert second.groups_created == 0
        assert second.libraries_created == 0
        assert entry.members_added == []
        assert entry.permissions_granted == []

    async def test_reuse_adds_only_missing_members(self, store):
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([make_record("F1", "f1", ["g1"])])

        result = await provisioner.provision([make_record("F1", "f1", ["g1", "g2"])])

        assert result.libraries[0].members_added == ["g2"]
        assert sorted(m["member_id"] for m in store.group_memberships.documents) == ["g1", "g2"]

    async def test_reuse_replaces_stale_members_and_grants(self, store):
        """A folder re-registered as ReadWrite [g2] loses its ReadOnly [g1] access."""
        await store.ensure_indexes()
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([make_record("F1", "f1", ["g1"], "P1")])

        result = await provisioner.provision([make_record("F1", "f1", ["g2"], "P2")])

        group_id = store.access_groups.documents[0]["id"]
        assert [m["member_id"] for m in store.group_memberships.documents] == ["g2"]
        grants = store.library_memberships.documents
        assert [(g["group_id"], g["permission_id"]) for g in grants] == [(group_id, "P2")]

        entry = result.libraries[0]
        assert entry.members_added == ["g2"]
        assert entry.members_removed == ["g1"]
        assert entry.permissions_granted == ["P2"]
        assert entry.permissions_revoked == ["P1"]
        assert result.group_memberships_removed == 1
        assert result.library_memberships_removed == 1

    async def test_grants_to_other_groups_are_revoked(self, store):
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([make_record("F1", "f1", ["g1"])])
        library_id = store.libraries.documents[0]["id"]
        store.library_memberships.seed({
            "id": "lm-foreign", "library_id": library_id,
            "group_id": "other-group", "permission_id": "P1",
        })

        result = await provisioner.provision([make_record("F1", "f1", ["g1"])])

        assert result.libraries[0].permissions_revoked == ["P1"]
        assert "lm-foreign" not in [g["id"] for g in store.library_memberships.documents]
        assert len(store.library_memberships.documents) == 1

    async def test_reconciliation_keeps_access_of_other_tracked_folders(self, store):
        """Folders sharing a slug keep the members of ledger rows not in this call."""
        store.tracking.seed(make_record("F1b", "shared", ["g9"], "P2").to_dict())
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([
            make_record("F1", "shared", ["g1"], "P1"),
            make_record("F1b", "shared", ["g9"], "P2"),
        ])

        result = await provisioner.provision([make_record("F1", "shared", ["g1"], "P1")])

        entry = result.libraries[0]
        assert entry.members_removed == []
        assert entry.permissions_revoked == []
        assert sorted(m["member_id"] for m in store.group_memberships.documents) == ["g1", "g9"]
        assert sorted(g["permission_id"] for g in store.library_memberships.documents) == ["P1", "P2"]

    async def test_dry_run_reports_removals_without_writing(self, store):
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([make_record("F1", "f1", ["g1"], "P1")])

        result = await provisioner.provision([make_record("F1", "f1", ["g2"], "P2")], dry_run=True)

        assert result.libraries[0].members_removed == ["g1"]
        assert result.libraries[0].permissions_revoked == ["P1"]
        assert [m["member_id"] for m in store.group_memberships.documents] == ["g1"]
        assert [g["permission_id"] for g in store.library_memberships.documents] == ["P1"]

    async def test_failed_reconciliation_restores_removed_memberships(self, store):
        provisioner = LibraryProvisioner(store)
        await provisioner.provision([make_record("F1", "f1", ["g1"], "P1")])
        store.library_memberships.fail_next_insert = PyMongoError("write concern timeout")

        with pytest.raises(PersistenceError):
            await provisioner.provision([make_record("F1", "f1", ["g2"], "P2")])

        assert [m["member_id"] for m in store.group_memberships.documents] == ["g1"]
        assert [g["permission_id"] for g in store.library_memberships.documents] == ["P1"]

    async def test_records_sharing_slug_collapse(self, store):
        records = [
            make_record("F1", "shared", ["g1"], "P1"),
            make_record("F1b", "shared", ["g1", "g2"], "P2"),
        ]

        result = await LibraryProvisioner(store).provision(records)

        assert len(result.libraries) == 1
        assert len(store.access_groups.documents) == 1
        assert len(store.libraries.documents) == 1
        assert sorted(m["member_id"] for m in store.group_memberships.documents) == ["g1", "g2"]
        assert sorted(g["permission_id"] for g in store.library_memberships.documents) == ["P1", "P2"]

    async def test_slugs_are_stable(self, store):
        provisioner = LibraryProvisioner(store)
        first = await provisioner.provision([make_record("F1", "f1", ["g1"])], dry_run=True)
        second = await provisioner.provision([make_record("F1", "f1", ["g1"])], dry_run=True)
        assert first.libraries[0].slug == second.libraries[0].slug == "doc2file_f1"

    async def test_dry_run_writes_nothing(self, store):
        result = await LibraryProvisioner(store).provision(
            [make_record("F1", "f1", ["g1"])], dry_run=True
        )
        assert result.groups_created == 1
        assert result.libraries_created == 1
        assert store.access_groups.documents == []
        assert store.libraries.documents == []
        assert store.library_memberships.documents == []

    async def test_failed_write_rolls_back_stage(self, store):
        store.library_memberships.fail_next_insert = PyMongoError("write concern timeout")

        with pytest.raises(PersistenceError):
            await LibraryProvisioner(store).provision([make_record("F1", "f1", ["g1"])])

        assert store.access_groups.documents == []
        assert store.libraries.documents == []
        assert store.group_memberships.documents == []

    async def test_batch_too_large(self, store):
        records = [make_record(f"F{i}", f"f{i}", []) for i in range(3)]
        with pytest.raises(BatchTooLargeError):
            await LibraryProvisioner(store, max_batch_size=2).provision(records)

    async def test_empty_input_is_noop(self, store):
        result = await LibraryProvisioner(store).provision([])
        assert result.libraries == []
        assert store.access_groups.insert_calls == []


@pytest.mark.asyncio
class TestPendingTrackingRecords:

    async def test_lists_records_without_library(self, store):
        done = make_record("F1", "f1", ["g1"])
        pending = make_record("F2", "f2", ["g2"])
        store.tracking.seed(done.to_dict(), pending.to_dict())

        provisioner = LibraryProvisioner(store)
        await provisioner.provision([done])

        result = await provisioner.pending_tracking_records()
        assert [r.folder_id for r in result] == ["F2"]

    async def test_limit(self, store):
        for i in range(5):
            store.tracking.seed(make_record(f"F{i}", f"f{i}", []).to_dict())

        result = await LibraryProvisioner(store).pending_tracking_records(limit=2)
        assert len(result) == 2
