"""
Library Conversion - Legacy Content Sources

Abstraction over where legacy folders and documents are read from, so the
conversion stages are not tied to one storage system.

- MongoLegacySource: legacy_folders / legacy_documents collections
- JsonExportSource: a JSON export file (bodies base64-encoded, audit
  timestamps kept as exported)
- InMemorySource: programmatic fixtures for tests
"""

import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from dateutil import parser as date_parser
from pymongo.errors import PyMongoError

from .errors import PersistenceError, ValidationError
from .models import LegacyDocument, LegacyFolder

logger = logging.getLogger(__name__)


class LegacyContentSource(ABC):
    """
    Read access to legacy folders and documents.
    """

    @abstractmethod
    async def get_folders(self, folder_ids: Iterable[str]) -> List[LegacyFolder]:
        """Folders with the given ids; unknown ids are left out."""
        pass

    @abstractmethod
    async def list_folders(
        self,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None
    ) -> List[LegacyFolder]:
        """Folders in source order, skipping exclude_ids, at most limit of them."""
        pass

    @abstractmethod
    async def get_documents(self, document_ids: Iterable[str]) -> List[LegacyDocument]:
        """Documents with the given ids; unknown ids are left out."""
        pass

    @abstractmethod
    def iter_documents(
        self,
        folder_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> AsyncIterator[LegacyDocument]:
        """Iterate documents, optionally restricted to some folders."""
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        pass


def _select_folders(
    folders: Iterable[LegacyFolder],
    limit: Optional[int],
    exclude_ids: Optional[Iterable[str]]
) -> List[LegacyFolder]:
    excluded = set(exclude_ids or ())
    selected = [folder for folder in folders if folder.id not in excluded]
    return selected[:limit] if limit else selected


class InMemorySource(LegacyContentSource):
    """
    In-memory source for testing.
    """

    def __init__(self, name: str = "in_memory"):
        self._name = name
        self._folders: Dict[str, LegacyFolder] = {}
        self._documents: List[LegacyDocument] = []

    def add_folder(self, folder: LegacyFolder) -> None:
        self._folders[folder.id] = folder

    def add_folders(self, folders: Iterable[LegacyFolder]) -> None:
        for folder in folders:
            self.add_folder(folder)

    def add_document(self, doc: LegacyDocument) -> None:
        self._documents.append(doc)

    def add_documents(self, docs: Iterable[LegacyDocument]) -> None:
        self._documents.extend(docs)

    async def get_folders(self, folder_ids: Iterable[str]) -> List[LegacyFolder]:
        return [self._folders[fid] for fid in dict.fromkeys(folder_ids) if fid in self._folders]

    async def list_folders(
        self,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None
    ) -> List[LegacyFolder]:
        return _select_folders(self._folders.values(), limit, exclude_ids)

    async def get_documents(self, document_ids: Iterable[str]) -> List[LegacyDocument]:
        wanted = set(document_ids)
        return [doc for doc in self._documents if doc.id in wanted]

    async def iter_documents(
        self,
        folder_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> AsyncIterator[LegacyDocument]:
        wanted = set(folder_ids) if folder_ids is not None else None
        count = 0
        for doc in self._documents:
            if wanted is not None and doc.folder_id not in wanted:
                continue
            if limit and count >= limit:
                break
            yield doc
            count += 1

    def get_source_name(self) -> str:
        return self._name


class MongoLegacySource(LegacyContentSource):
    """
    Reads the legacy_folders and legacy_documents collections.
    """

    def __init__(self, folders_collection, documents_collection, name: str = "mongo_legacy"):
        self._folders = folders_collection
        self._documents = documents_collection
        self._name = name

    async def _fetch(self, collection, query: Dict[str, Any], limit: Optional[int] = None) -> List[Dict]:
        try:
            cursor = collection.find(query, {"_id": 0})
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(f"Query on {collection.name} failed: {e}") from e

    async def get_folders(self, folder_ids: Iterable[str]) -> List[LegacyFolder]:
        ids = sorted(set(folder_ids))
        if not ids:
            return []
        rows = await self._fetch(self._folders, {"id": {"$in": ids}})
        return [LegacyFolder.from_dict(row) for row in rows]

    async def list_folders(
        self,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None
    ) -> List[LegacyFolder]:
        query: Dict[str, Any] = {}
        if exclude_ids:
            query["id"] = {"$nin": sorted(set(exclude_ids))}
        rows = await self._fetch(self._folders, query, limit=limit)
        return [LegacyFolder.from_dict(row) for row in rows]

    async def get_documents(self, document_ids: Iterable[str]) -> List[LegacyDocument]:
        ids = sorted(set(document_ids))
        if not ids:
            return []
        rows = await self._fetch(self._documents, {"id": {"$in": ids}})
        return [LegacyDocument.from_dict(row) for row in rows]

    async def iter_documents(
        self,
        folder_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> AsyncIterator[LegacyDocument]:
        query: Dict[str, Any] = {}
        if folder_ids is not None:
            query["folder_id"] = {"$in": sorted(set(folder_ids))}

        cursor = self._documents.find(query, {"_id": 0})
        if limit:
            cursor = cursor.limit(limit)
        try:
            async for row in cursor:
                yield LegacyDocument.from_dict(row)
        except PyMongoError as e:
            raise PersistenceError(f"Query on {self._documents.name} failed: {e}") from e

    def get_source_name(self) -> str:
        return self._name


def _check_timestamp(document_id: Optional[str], field_name: str, value: Any) -> Optional[str]:
    """
    Return an audit timestamp exactly as exported, once dateutil can read it.

    Raises:
        ValidationError: the value is not a date dateutil understands
    """
    if not value:
        return None
    try:
        date_parser.parse(value)
    except (ValueError, OverflowError, TypeError) as e:
        raise ValidationError(
            f"Document {document_id} has an unreadable {field_name}: {value!r}",
            {"document_id": document_id, "field": field_name, "value": str(value)},
        ) from e
    return value


class JsonExportSource(LegacyContentSource):
    """
    JSON file-based source for batch imports.

    Reads a legacy export with the following structure:
    {
        "source_name": "Documents export 2024-01",
        "folders": [
            {"id": "00l1", "developer_name": "f1", "name": "Folder 1"}
        ],
        "documents": [
            {
                "id": "015A",
                "folder_id": "00l1",
                "developer_name": "price_list",
                "name": "Price List",
                "type": "PDF",
                "body": "<base64>",
                "author_id": "005X",
                "created_by_id": "005X",
                "created_date": "2019-03-01T10:00:00Z",
                ...
            }
        ]
    }
    """

    def __init__(self, file_path: str):
        self._file_path = Path(file_path)
        self._data: Optional[Dict] = None
        self._folders: Dict[str, LegacyFolder] = {}
        self._documents: List[LegacyDocument] = []

    def _load(self) -> None:
        """Load and parse the JSON file."""
        if self._data is not None:
            return

        if not self._file_path.exists():
            raise FileNotFoundError(f"Legacy export file not found: {self._file_path}")

        with open(self._file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        folders = {}
        for folder_data in data.get("folders", []):
            folder = LegacyFolder.from_dict(folder_data)
            folders[folder.id] = folder

        documents = []
        for doc_data in data.get("documents", []):
            doc_data = dict(doc_data)

            body = doc_data.get("body")
            if body is not None:
                try:
                    doc_data["body"] = base64.b64decode(body, validate=True)
                except (binascii.Error, ValueError) as e:
                    raise ValidationError(
                        f"Document {doc_data.get('id')} has an invalid base64 body"
                    ) from e

            for field_name in ("created_date", "last_modified_date"):
                doc_data[field_name] = _check_timestamp(
                    doc_data.get("id"), field_name, doc_data.get(field_name)
                )
            documents.append(LegacyDocument.from_dict(doc_data))

        self._data = data
        self._folders = folders
        self._documents = documents
        logger.info(
            f"Loaded {len(folders)} folders and {len(documents)} documents from {self._file_path}"
        )

    async def get_folders(self, folder_ids: Iterable[str]) -> List[LegacyFolder]:
        self._load()
        return [self._folders[fid] for fid in dict.fromkeys(folder_ids) if fid in self._folders]

    async def list_folders(
        self,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None
    ) -> List[LegacyFolder]:
        self._load()
        return _select_folders(self._folders.values(), limit, exclude_ids)

    async def get_documents(self, document_ids: Iterable[str]) -> List[LegacyDocument]:
        self._load()
        wanted = set(document_ids)
        return [doc for doc in self._documents if doc.id in wanted]

    async def iter_documents(
        self,
        folder_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> AsyncIterator[LegacyDocument]:
        self._load()
        wanted = set(folder_ids) if folder_ids is not None else None
        count = 0
        for doc in self._documents:
            if wanted is not None and doc.folder_id not in wanted:
                continue
            if limit and count >= limit:
                break
            yield doc
            count += 1

    def get_source_name(self) -> str:
        self._load()
        return self._data.get("source_name", self._file_path.stem)
