"""
Library Conversion - Configuration

All settings come from environment variables (optionally loaded from a
.env file). Secrets never leave this module through get_conversion_config().
"""

import os
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# FEATURE FLAG
# =============================================================================

def is_library_conversion_enabled() -> bool:
    """Check if the library conversion endpoints are enabled."""
    return os.environ.get("LIBRARY_CONVERSION_ENABLED", "true").lower() in ("true", "1", "yes")


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "gpi_hub")

COLLECTION_PREFIX = os.environ.get("LIBRARY_CONVERSION_COLLECTION_PREFIX", "lc_")

# Multi-document transactions need a replica set; standalone servers fall
# back to compensating deletes.
USE_TRANSACTIONS = os.environ.get("LIBRARY_CONVERSION_USE_TRANSACTIONS", "false").lower() == "true"


# =============================================================================
# BATCHING
# =============================================================================

MAX_BATCH_SIZE = int(os.environ.get("LIBRARY_CONVERSION_MAX_BATCH_SIZE", "200"))


# =============================================================================
# PERMISSIONS
# =============================================================================

READ_ONLY_PERMISSION_ID = os.environ.get("READ_ONLY_PERMISSION_ID", "")
READ_WRITE_PERMISSION_ID = os.environ.get("READ_WRITE_PERMISSION_ID", "")


# =============================================================================
# DIRECTORY SERVICE
# =============================================================================

DIRECTORY_API_BASE = os.environ.get("DIRECTORY_API_BASE", "")
DIRECTORY_API_TOKEN = os.environ.get("DIRECTORY_API_TOKEN", "")
DIRECTORY_TIMEOUT_SECONDS = float(os.environ.get("DIRECTORY_TIMEOUT_SECONDS", "30"))
DIRECTORY_MAX_RETRIES = int(os.environ.get("DIRECTORY_MAX_RETRIES", "3"))
DIRECTORY_RETRY_DELAY_SECONDS = float(os.environ.get("DIRECTORY_RETRY_DELAY_SECONDS", "1.0"))


def get_conversion_config() -> Dict[str, Any]:
    """Sanitized configuration for status endpoints."""
    return {
        "enabled": is_library_conversion_enabled(),
        "db_name": DB_NAME,
        "collection_prefix": COLLECTION_PREFIX,
        "use_transactions": USE_TRANSACTIONS,
        "max_batch_size": MAX_BATCH_SIZE,
        "read_only_permission_configured": bool(READ_ONLY_PERMISSION_ID),
        "read_write_permission_configured": bool(READ_WRITE_PERMISSION_ID),
        "directory_api_base": DIRECTORY_API_BASE,
        "directory_configured": bool(DIRECTORY_API_BASE and DIRECTORY_API_TOKEN),
        "directory_timeout_seconds": DIRECTORY_TIMEOUT_SECONDS,
        "directory_max_retries": DIRECTORY_MAX_RETRIES,
    }
