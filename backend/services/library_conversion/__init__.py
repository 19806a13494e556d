"""
GPI Document Hub - Folder to Library Conversion

Moves legacy documents, organized in folders with group-based sharing,
into content libraries with equivalent membership.

Components:
- FolderRegistrar: records each folder's sharing snapshot in the conversion ledger
- LibraryProvisioner: creates the access group and library for each ledger entry
- DocumentMigrator: publishes legacy documents as files in their folder's library
- ConversionJob: runs the three stages end to end in batches
- ConversionStore: MongoDB collections and all-or-nothing batch writes
"""

from .directory import DirectoryClient, DirectoryConnection, FolderDirectory, StaticDirectory
from .errors import (
    LibraryConversionError, ValidationError, UnsupportedAccessLevelError,
    BatchTooLargeError, DuplicateConversionError, LookupMissError,
    PersistenceError, DuplicateRecordError, ExternalServiceError
)
from .job import ConversionJob, ConversionJobBuilder, ConversionMode
from .migration import DocumentMigrator, MigrationReport
from .models import (
    AccessLevel, ConversionTrackingRecord, FolderMembershipSnapshot,
    LegacyDocument, LegacyFolder, MigratedFile, MigrationOutcome,
    PermissionMapping, ProvisioningOutcome, RegistrationOutcome, library_slug
)
from .provisioning import LibraryProvisioner, ProvisioningResult
from .registration import FolderRegistrar, RegistrationResult, register_folders
from .sources import InMemorySource, JsonExportSource, LegacyContentSource, MongoLegacySource
from .store import ConversionStore

__all__ = [
    'ConversionStore',
    'FolderDirectory', 'DirectoryClient', 'DirectoryConnection', 'StaticDirectory',
    'LegacyContentSource', 'MongoLegacySource', 'JsonExportSource', 'InMemorySource',
    'FolderRegistrar', 'RegistrationResult', 'register_folders',
    'LibraryProvisioner', 'ProvisioningResult',
    'DocumentMigrator', 'MigrationReport',
    'ConversionJob', 'ConversionJobBuilder', 'ConversionMode',
    'AccessLevel', 'PermissionMapping', 'library_slug',
    'LegacyFolder', 'LegacyDocument', 'FolderMembershipSnapshot',
    'ConversionTrackingRecord', 'MigratedFile',
    'RegistrationOutcome', 'ProvisioningOutcome', 'MigrationOutcome',
    'LibraryConversionError', 'ValidationError', 'UnsupportedAccessLevelError',
    'BatchTooLargeError', 'DuplicateConversionError', 'LookupMissError',
    'PersistenceError', 'DuplicateRecordError', 'ExternalServiceError',
]
