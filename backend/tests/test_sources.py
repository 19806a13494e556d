"""
Tests for the legacy content sources.
"""
import base64
import json

import pytest
from pymongo.errors import PyMongoError

from services.library_conversion.errors import PersistenceError, ValidationError
from services.library_conversion.models import LegacyDocument, LegacyFolder
from services.library_conversion.sources import (
    InMemorySource, JsonExportSource, MongoLegacySource
)


def write_export(tmp_path, documents, folders=None, source_name="Documents export 2024-01"):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({
        "source_name": source_name,
        "folders": folders if folders is not None else [
            {"id": "F1", "developer_name": "f1", "name": "Folder 1"},
        ],
        "documents": documents,
    }), encoding="utf-8")
    return path


@pytest.mark.asyncio
class TestInMemorySource:

    async def test_iter_documents_by_folder(self):
        source = InMemorySource("test")
        source.add_documents([
            LegacyDocument(id="D1", folder_id="F1", developer_name="d1", name="D1", type="URL"),
            LegacyDocument(id="D2", folder_id="F2", developer_name="d2", name="D2", type="PDF"),
            LegacyDocument(id="D3", folder_id="F1", developer_name="d3", name="D3", type="PDF"),
        ])

        docs = [doc async for doc in source.iter_documents(folder_ids=["F1"])]
        assert [d.id for d in docs] == ["D1", "D3"]

    async def test_iter_documents_limit(self):
        source = InMemorySource("test")
        for i in range(10):
            source.add_document(
                LegacyDocument(id=f"D{i}", folder_id="F1", developer_name=f"d{i}", name="", type="PDF")
            )
        docs = [doc async for doc in source.iter_documents(limit=3)]
        assert len(docs) == 3

    async def test_get_folders_skips_unknown(self):
        source = InMemorySource("test")
        source.add_folder(LegacyFolder("F1", "f1", "Folder 1"))
        folders = await source.get_folders(["F1", "F404", "F1"])
        assert [f.id for f in folders] == ["F1"]

    async def test_list_folders_limit(self):
        source = InMemorySource("test")
        source.add_folders([LegacyFolder(f"F{i}", f"f{i}", "") for i in range(4)])
        assert len(await source.list_folders(limit=2)) == 2

    async def test_list_folders_excludes_ids(self):
        source = InMemorySource("test")
        source.add_folders([LegacyFolder(f"F{i}", f"f{i}", "") for i in range(4)])
        folders = await source.list_folders(limit=2, exclude_ids={"F0", "F2"})
        assert [f.id for f in folders] == ["F1", "F3"]


@pytest.mark.asyncio
class TestJsonExportSource:

    async def test_loads_folders_and_documents(self, tmp_path):
        body = b"%PDF-1.4 price list"
        path = write_export(tmp_path, [
            {
                "id": "D2", "folder_id": "F1", "developer_name": "price_list",
                "name": "Price List", "type": "PDF",
                "body": base64.b64encode(body).decode("ascii"),
                "created_date": "2019-03-01T10:00:00Z",
                "last_modified_date": "March 5, 2020 14:30",
            },
            {
                "id": "D1", "folder_id": "F1", "developer_name": "site",
                "name": "Intranet", "type": "URL", "url": "https://intranet.example.com",
            },
        ])
        source = JsonExportSource(str(path))

        assert source.get_source_name() == "Documents export 2024-01"
        folders = await source.list_folders()
        assert [f.developer_name for f in folders] == ["f1"]

        docs = await source.get_documents(["D2", "D1"])
        by_id = {d.id: d for d in docs}
        assert by_id["D2"].body == body
        # Audit fields are carried over exactly as exported
        assert by_id["D2"].created_date == "2019-03-01T10:00:00Z"
        assert by_id["D2"].last_modified_date == "March 5, 2020 14:30"
        assert by_id["D1"].is_link
        assert by_id["D1"].body is None

    async def test_invalid_base64_body(self, tmp_path):
        path = write_export(tmp_path, [
            {"id": "D9", "folder_id": "F1", "type": "PDF", "body": "not base64!!"},
        ])
        with pytest.raises(ValidationError, match="D9"):
            await JsonExportSource(str(path)).get_documents(["D9"])

    @pytest.mark.parametrize("field_name", ["created_date", "last_modified_date"])
    async def test_unreadable_timestamp(self, tmp_path, field_name):
        path = write_export(tmp_path, [
            {"id": "D7", "folder_id": "F1", "type": "URL", "url": "https://example.com",
             field_name: "n/a"},
        ])
        with pytest.raises(ValidationError, match="D7") as exc_info:
            await JsonExportSource(str(path)).list_folders()
        assert exc_info.value.details["field"] == field_name
        assert exc_info.value.details["value"] == "n/a"

    async def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await JsonExportSource(str(tmp_path / "missing.json")).list_folders()

    async def test_source_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "legacy_dump.json"
        path.write_text(json.dumps({"folders": [], "documents": []}), encoding="utf-8")
        assert JsonExportSource(str(path)).get_source_name() == "legacy_dump"


@pytest.mark.asyncio
class TestMongoLegacySource:

    async def test_reads_collections(self, mock_db):
        mock_db.legacy_folders.seed(
            {"_id": 1, "id": "F1", "developer_name": "f1", "name": "Folder 1"},
            {"_id": 2, "id": "F2", "developer_name": "f2", "name": "Folder 2"},
        )
        mock_db.legacy_documents.seed(
            {"_id": 3, "id": "D1", "folder_id": "F1", "developer_name": "d1", "name": "D1", "type": "URL",
             "url": "https://example.com"},
            {"_id": 4, "id": "D2", "folder_id": "F2", "developer_name": "d2", "name": "D2", "type": "PDF",
             "body": b"abc"},
        )
        source = MongoLegacySource(mock_db.legacy_folders, mock_db.legacy_documents)

        folders = await source.get_folders(["F2"])
        assert [f.name for f in folders] == ["Folder 2"]
        assert len(await source.list_folders(limit=1)) == 1

        docs = await source.get_documents(["D2"])
        assert docs[0].body == b"abc"

        in_f1 = [doc async for doc in source.iter_documents(folder_ids=["F1"])]
        assert [d.id for d in in_f1] == ["D1"]

    async def test_list_folders_excludes_ids(self, mock_db):
        mock_db.legacy_folders.seed(
            {"id": "F1", "developer_name": "f1", "name": "Folder 1"},
            {"id": "F2", "developer_name": "f2", "name": "Folder 2"},
            {"id": "F3", "developer_name": "f3", "name": "Folder 3"},
        )
        source = MongoLegacySource(mock_db.legacy_folders, mock_db.legacy_documents)

        folders = await source.list_folders(limit=1, exclude_ids=["F1"])
        assert [f.id for f in folders] == ["F2"]

    async def test_query_failure(self, mock_db):
        mock_db.legacy_folders.fail_find = PyMongoError("timeout")
        source = MongoLegacySource(mock_db.legacy_folders, mock_db.legacy_documents)
        with pytest.raises(PersistenceError):
            await source.get_folders(["F1"])
