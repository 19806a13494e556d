"""
Library Conversion - Data Model

Records read from the legacy document store (folders, documents), the
conversion ledger, and the records provisioned in the content library
model (access groups, libraries, memberships, migrated files).

All persisted records are plain dicts keyed by a string ``id``; the
dataclasses here convert to and from that form.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import UnsupportedAccessLevelError, ValidationError


# =============================================================================
# NAMING
# =============================================================================

LIBRARY_SLUG_PREFIX = "doc2file_"
GROUP_NAME_PREFIX = "Library: "

# Legacy document type that holds a link instead of binary content
URL_DOCUMENT_TYPE = "URL"


def library_slug(folder_developer_name: str) -> str:
    """Developer name shared by the access group and library of a folder."""
    return f"{LIBRARY_SLUG_PREFIX}{folder_developer_name}"


def library_group_name(folder_name: str) -> str:
    return f"{GROUP_NAME_PREFIX}{folder_name}"


def new_record_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def split_group_ids(value: Union[None, str, Iterable[str]]) -> List[str]:
    """
    Normalize a group id list.

    Accepts the legacy comma-joined form ("g1,g2", empty string means no
    members) as well as a list. Blank entries are dropped, order is kept,
    repeats are removed.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)

    result: List[str] = []
    for item in items:
        item = (item or "").strip()
        if item and item not in result:
            result.append(item)
    return result


# =============================================================================
# ACCESS LEVELS AND PERMISSIONS
# =============================================================================

class AccessLevel(str, Enum):
    """Public access classifications that can be converted."""
    READ_ONLY = "ReadOnly"
    READ_WRITE = "ReadWrite"

    @classmethod
    def parse(cls, value: Any, folder_developer_name: str) -> "AccessLevel":
        """
        Parse a directory access classification.

        Anything other than ReadOnly / ReadWrite (including "shared with all
        users" scopes and missing values) raises UnsupportedAccessLevelError.
        """
        for level in cls:
            if value == level.value:
                return level
        raise UnsupportedAccessLevelError(folder_developer_name, value)


@dataclass(frozen=True)
class PermissionMapping:
    """The two caller-supplied permission ids, one per access level."""
    read_only_permission_id: str
    read_write_permission_id: str

    def __post_init__(self):
        if not self.read_only_permission_id or not self.read_write_permission_id:
            raise ValidationError(
                "Both read-only and read-write permission ids are required",
                {
                    "read_only_permission_id": self.read_only_permission_id,
                    "read_write_permission_id": self.read_write_permission_id,
                },
            )

    def resolve(self, level: AccessLevel) -> str:
        if level is AccessLevel.READ_ONLY:
            return self.read_only_permission_id
        return self.read_write_permission_id


# =============================================================================
# OUTCOMES
# =============================================================================

class RegistrationOutcome(str, Enum):
    REGISTERED = "registered"
    ALREADY_TRACKED = "already_tracked"
    NOT_IN_DIRECTORY = "not_in_directory"


class ProvisioningOutcome(str, Enum):
    CREATED = "created"
    REUSED = "reused"


class MigrationOutcome(str, Enum):
    MIGRATED = "migrated"
    ALREADY_MIGRATED = "already_migrated"
    FAILED = "failed"


# =============================================================================
# LEGACY RECORDS
# =============================================================================

@dataclass
class LegacyFolder:
    """A folder in the legacy document store."""
    id: str
    developer_name: str
    name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LegacyFolder":
        return cls(
            id=data["id"],
            developer_name=data["developer_name"],
            name=data.get("name") or data["developer_name"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "developer_name": self.developer_name, "name": self.name}


@dataclass
class FolderMembershipSnapshot:
    """Sharing membership of one folder, as returned by the directory."""
    developer_name: str
    name: str
    group_ids: List[str] = field(default_factory=list)
    access_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FolderMembershipSnapshot":
        return cls(
            developer_name=data["developer_name"],
            name=data.get("name") or data["developer_name"],
            group_ids=split_group_ids(data.get("group_ids")),
            access_level=data.get("access_level"),
        )


@dataclass
class LegacyDocument:
    """
    A document in the legacy document store.

    ``type`` is either URL (``url`` holds the link) or a content type such
    as PDF (``body`` holds the bytes). Audit fields are kept as the source
    system reports them and are copied verbatim on migration.
    """
    id: str
    folder_id: str
    developer_name: str
    name: str
    type: str
    description: Optional[str] = None
    keywords: Optional[str] = None
    body: Optional[bytes] = None
    url: Optional[str] = None
    author_id: Optional[str] = None
    created_by_id: Optional[str] = None
    created_date: Optional[str] = None
    last_modified_by_id: Optional[str] = None
    last_modified_date: Optional[str] = None

    @property
    def is_link(self) -> bool:
        return self.type == URL_DOCUMENT_TYPE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LegacyDocument":
        return cls(
            id=data["id"],
            folder_id=data["folder_id"],
            developer_name=data.get("developer_name") or data["id"],
            name=data.get("name", ""),
            type=data.get("type", ""),
            description=data.get("description"),
            keywords=data.get("keywords"),
            body=data.get("body"),
            url=data.get("url"),
            author_id=data.get("author_id"),
            created_by_id=data.get("created_by_id"),
            created_date=data.get("created_date"),
            last_modified_by_id=data.get("last_modified_by_id"),
            last_modified_date=data.get("last_modified_date"),
        )


# =============================================================================
# LEDGER
# =============================================================================

@dataclass
class ConversionTrackingRecord:
    """
    Ledger entry marking a folder as queued for conversion.

    At most one record exists per ``folder_id``; deleting it is the only way
    to make the folder eligible for registration again.
    """
    folder_id: str
    folder_name: str
    folder_developer_name: str
    permission_id: str
    access_level: str
    group_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_record_id)
    created_utc: str = field(default_factory=utc_now_iso)

    @property
    def library_slug(self) -> str:
        return library_slug(self.folder_developer_name)

    @property
    def group_ids_joined(self) -> str:
        return ",".join(self.group_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "folder_id": self.folder_id,
            "folder_name": self.folder_name,
            "folder_developer_name": self.folder_developer_name,
            "group_ids": list(self.group_ids),
            "permission_id": self.permission_id,
            "access_level": self.access_level,
            "created_utc": self.created_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversionTrackingRecord":
        return cls(
            id=data["id"],
            folder_id=data["folder_id"],
            folder_name=data.get("folder_name", ""),
            folder_developer_name=data["folder_developer_name"],
            group_ids=split_group_ids(data.get("group_ids")),
            permission_id=data.get("permission_id"),
            access_level=data.get("access_level"),
            created_utc=data.get("created_utc") or utc_now_iso(),
        )


# =============================================================================
# PROVISIONED RECORDS
# =============================================================================

@dataclass
class AccessGroup:
    name: str
    developer_name: str
    id: str = field(default_factory=new_record_id)
    created_utc: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "developer_name": self.developer_name,
            "created_utc": self.created_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessGroup":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            developer_name=data["developer_name"],
            created_utc=data.get("created_utc") or utc_now_iso(),
        )


@dataclass
class Library:
    name: str
    developer_name: str
    id: str = field(default_factory=new_record_id)
    created_utc: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "developer_name": self.developer_name,
            "created_utc": self.created_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Library":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            developer_name=data["developer_name"],
            created_utc=data.get("created_utc") or utc_now_iso(),
        )


@dataclass
class GroupMembership:
    group_id: str
    member_id: str
    id: str = field(default_factory=new_record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "group_id": self.group_id, "member_id": self.member_id}


@dataclass
class LibraryMembership:
    library_id: str
    group_id: str
    permission_id: str
    id: str = field(default_factory=new_record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "library_id": self.library_id,
            "group_id": self.group_id,
            "permission_id": self.permission_id,
        }


@dataclass
class MigratedFile:
    """
    A versioned file published into a library in place of a legacy document.

    Exactly one of ``content_url`` / ``version_data`` is set.
    """
    title: str
    publish_location_id: str
    original_record_id: str
    original_folder_id: str
    description: Optional[str] = None
    tags: Optional[str] = None
    owner_id: Optional[str] = None
    created_by_id: Optional[str] = None
    created_date: Optional[str] = None
    last_modified_by_id: Optional[str] = None
    last_modified_date: Optional[str] = None
    content_url: Optional[str] = None
    version_data: Optional[bytes] = None
    path_on_client: Optional[str] = None
    content_size: Optional[int] = None
    content_hash: Optional[str] = None
    id: str = field(default_factory=new_record_id)
    migrated_utc: str = field(default_factory=utc_now_iso)

    @property
    def is_link(self) -> bool:
        return self.content_url is not None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "tags": self.tags,
            "publish_location_id": self.publish_location_id,
            "owner_id": self.owner_id,
            "created_by_id": self.created_by_id,
            "created_date": self.created_date,
            "last_modified_by_id": self.last_modified_by_id,
            "last_modified_date": self.last_modified_date,
            "original_record_id": self.original_record_id,
            "original_folder_id": self.original_folder_id,
            "migrated_utc": self.migrated_utc,
        }
        if self.is_link:
            result["content_url"] = self.content_url
        else:
            result["version_data"] = self.version_data
            result["path_on_client"] = self.path_on_client
            result["content_size"] = self.content_size
            result["content_hash"] = self.content_hash
        return result

    def summary(self) -> Dict[str, Any]:
        """Serializable view without the binary payload."""
        result = self.to_dict()
        result.pop("version_data", None)
        return result
