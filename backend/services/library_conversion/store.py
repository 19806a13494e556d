"""
Library Conversion - MongoDB Store

Collections used by the conversion stages and the unit of work that makes
each stage's writes all-or-nothing.

Collections:
- legacy_folders / legacy_documents: legacy records (read only)
- {prefix}conversion_tracking: the ledger, unique on folder_id
- {prefix}access_groups / {prefix}libraries: unique on developer_name
- {prefix}group_memberships / {prefix}library_memberships
- {prefix}migrated_files: unique on original_record_id

With transactions enabled every unit of work runs in a client session
transaction (replica set required). Without them, the unit of work undoes
its own inserts and deletes when the enclosing call fails.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from .errors import DuplicateRecordError, PersistenceError

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = 11000


def _translate_write_error(collection_name: str, exc: PyMongoError) -> PersistenceError:
    """Map a pymongo write error to the conversion error taxonomy."""
    if isinstance(exc, DuplicateKeyError):
        return DuplicateRecordError(collection_name, str(exc))

    if isinstance(exc, BulkWriteError):
        write_errors = exc.details.get("writeErrors", [])
        if any(err.get("code") == DUPLICATE_KEY_CODE for err in write_errors):
            first = write_errors[0].get("errmsg", "duplicate key")
            return DuplicateRecordError(collection_name, first)

    return PersistenceError(
        f"Write to {collection_name} failed: {exc}",
        {"collection": collection_name},
    )


class UnitOfWork:
    """
    Batch writer for one stage call.

    Writes go through the session when one is active. Otherwise every write
    is remembered so rollback() can undo it: inserted records are deleted
    again and deleted records are put back.
    """

    def __init__(self, session=None):
        self.session = session
        self._undo: List[Tuple[str, Any, List[Any]]] = []

    @property
    def transactional(self) -> bool:
        return self.session is not None

    async def insert_many(self, collection, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0

        # insert_many adds _id to the dicts it is given
        docs = [dict(record) for record in records]
        try:
            await collection.insert_many(docs, ordered=True, session=self.session)
        except BulkWriteError as e:
            inserted = e.details.get("nInserted", 0)
            self._remember("insert", collection, [doc["id"] for doc in docs[:inserted]])
            raise _translate_write_error(collection.name, e) from e
        except PyMongoError as e:
            raise _translate_write_error(collection.name, e) from e

        self._remember("insert", collection, [doc["id"] for doc in docs])
        logger.debug("Inserted %d records into %s", len(docs), collection.name)
        return len(docs)

    async def delete_many(self, collection, records: List[Dict[str, Any]]) -> int:
        """Delete the given records by id. The records must be complete rows."""
        if not records:
            return 0

        ids = [record["id"] for record in records]
        try:
            result = await collection.delete_many({"id": {"$in": ids}}, session=self.session)
        except PyMongoError as e:
            raise _translate_write_error(collection.name, e) from e

        self._remember("delete", collection, [dict(record) for record in records])
        logger.debug("Deleted %d records from %s", result.deleted_count, collection.name)
        return result.deleted_count

    def _remember(self, action: str, collection, payload: List[Any]) -> None:
        if self.transactional or not payload:
            return
        self._undo.append((action, collection, payload))

    async def rollback(self) -> None:
        """Undo every write of this unit of work, newest first."""
        for action, collection, payload in reversed(self._undo):
            try:
                if action == "insert":
                    await collection.delete_many({"id": {"$in": payload}})
                    logger.warning("Rolled back %d inserts into %s", len(payload), collection.name)
                else:
                    rows = [{k: v for k, v in row.items() if k != "_id"} for row in payload]
                    await collection.insert_many(rows, ordered=False)
                    logger.warning("Restored %d deleted records in %s", len(rows), collection.name)
            except PyMongoError as e:
                logger.error(
                    "Rollback of %d %s records in %s failed: %s",
                    len(payload), action, collection.name, str(e)
                )
        self._undo = []


class ConversionStore:
    """
    Access to every collection the conversion touches.

    Usage:
        store = ConversionStore(db)
        await store.ensure_indexes()
        async with store.unit_of_work() as uow:
            await uow.insert_many(store.tracking, [record.to_dict()])
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        use_transactions: bool = False,
        collection_prefix: str = "lc_",
    ):
        if use_transactions and client is None:
            raise ValueError("client is required when use_transactions is enabled")

        self.db = db
        self.client = client
        self.use_transactions = use_transactions

        self.legacy_folders = db["legacy_folders"]
        self.legacy_documents = db["legacy_documents"]

        self.tracking = db[f"{collection_prefix}conversion_tracking"]
        self.access_groups = db[f"{collection_prefix}access_groups"]
        self.libraries = db[f"{collection_prefix}libraries"]
        self.group_memberships = db[f"{collection_prefix}group_memberships"]
        self.library_memberships = db[f"{collection_prefix}library_memberships"]
        self.migrated_files = db[f"{collection_prefix}migrated_files"]

    async def ensure_indexes(self) -> None:
        """Create the indexes the idempotency guarantees rely on."""
        await self.tracking.create_index("id", unique=True)
        await self.tracking.create_index("folder_id", unique=True)
        await self.tracking.create_index("folder_developer_name")

        await self.access_groups.create_index("id", unique=True)
        await self.access_groups.create_index("developer_name", unique=True)

        await self.libraries.create_index("id", unique=True)
        await self.libraries.create_index("developer_name", unique=True)

        await self.group_memberships.create_index("id", unique=True)
        await self.group_memberships.create_index(
            [("group_id", 1), ("member_id", 1)], unique=True
        )

        await self.library_memberships.create_index("id", unique=True)
        await self.library_memberships.create_index(
            [("library_id", 1), ("group_id", 1), ("permission_id", 1)], unique=True
        )

        await self.migrated_files.create_index("id", unique=True)
        await self.migrated_files.create_index("original_record_id", unique=True)
        await self.migrated_files.create_index("publish_location_id")

        logger.info("Library conversion indexes created")

    @asynccontextmanager
    async def unit_of_work(self):
        """All-or-nothing scope for the writes of one stage call."""
        if self.use_transactions:
            try:
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        yield UnitOfWork(session)
            except PyMongoError as e:
                raise PersistenceError(f"Transaction aborted: {e}") from e
            return

        uow = UnitOfWork()
        try:
            yield uow
        except BaseException:
            await uow.rollback()
            raise

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def _fetch(
        self,
        collection,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        fields: Optional[List[str]] = None
    ) -> List[Dict]:
        projection = {"_id": 0}
        if fields:
            projection.update({name: 1 for name in fields})
        try:
            cursor = collection.find(query, projection)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(
                f"Query on {collection.name} failed: {e}",
                {"collection": collection.name},
            ) from e

    async def find_tracking_by_folder_ids(self, folder_ids: Iterable[str]) -> List[Dict]:
        ids = sorted(set(folder_ids))
        if not ids:
            return []
        return await self._fetch(self.tracking, {"folder_id": {"$in": ids}})

    async def find_tracking_by_developer_names(self, developer_names: Iterable[str]) -> List[Dict]:
        names = sorted(set(developer_names))
        if not names:
            return []
        return await self._fetch(self.tracking, {"folder_developer_name": {"$in": names}})

    async def list_tracking_records(self, limit: Optional[int] = None) -> List[Dict]:
        return await self._fetch(self.tracking, {}, limit=limit)

    async def tracked_folder_ids(self) -> Set[str]:
        """Folder ids that already have a tracking record."""
        rows = await self._fetch(self.tracking, {}, fields=["folder_id"])
        return {row["folder_id"] for row in rows if row.get("folder_id")}

    async def find_groups_by_slugs(self, slugs: Iterable[str]) -> List[Dict]:
        slugs = sorted(set(slugs))
        if not slugs:
            return []
        return await self._fetch(self.access_groups, {"developer_name": {"$in": slugs}})

    async def find_libraries_by_slugs(self, slugs: Iterable[str]) -> List[Dict]:
        slugs = sorted(set(slugs))
        if not slugs:
            return []
        return await self._fetch(self.libraries, {"developer_name": {"$in": slugs}})

    async def find_group_memberships(self, group_ids: Iterable[str]) -> List[Dict]:
        ids = sorted(set(group_ids))
        if not ids:
            return []
        return await self._fetch(self.group_memberships, {"group_id": {"$in": ids}})

    async def find_library_memberships(self, library_ids: Iterable[str]) -> List[Dict]:
        ids = sorted(set(library_ids))
        if not ids:
            return []
        return await self._fetch(self.library_memberships, {"library_id": {"$in": ids}})

    async def find_migrated_record_ids(
        self,
        document_ids: Iterable[str],
        library_ids: Iterable[str]
    ) -> Set[str]:
        """Legacy document ids that already have a file in one of the libraries."""
        document_ids = sorted(set(document_ids))
        library_ids = sorted(set(library_ids))
        if not document_ids or not library_ids:
            return set()

        rows = await self._fetch(
            self.migrated_files,
            {
                "original_record_id": {"$in": document_ids},
                "publish_location_id": {"$in": library_ids},
            },
        )
        return {row["original_record_id"] for row in rows}

    async def get_summary(self) -> Dict[str, int]:
        """Record counts per conversion collection."""
        collections = {
            "tracking_records": self.tracking,
            "access_groups": self.access_groups,
            "libraries": self.libraries,
            "group_memberships": self.group_memberships,
            "library_memberships": self.library_memberships,
            "migrated_files": self.migrated_files,
        }
        summary = {}
        try:
            for key, collection in collections.items():
                summary[key] = await collection.count_documents({})
        except PyMongoError as e:
            raise PersistenceError(f"Summary query failed: {e}") from e
        return summary
