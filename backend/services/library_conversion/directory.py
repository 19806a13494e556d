"""
Library Conversion - Folder Directory

Lookup of legacy folder sharing membership. The directory answers, for a
set of folder developer names, which groups/roles can see each folder and
at which public access level.

API Style: one batched POST per lookup

    POST {base_url}/folders/membership
    {"developer_names": ["f1", "f2"]}

    200 {"folders": [
        {"developer_name": "f1", "name": "Folder 1",
         "group_ids": ["g1"], "access_level": "ReadOnly"}
    ]}
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from . import config
from .errors import ExternalServiceError
from .models import FolderMembershipSnapshot

logger = logging.getLogger(__name__)

MEMBERSHIP_ENDPOINT = "/folders/membership"


@dataclass(frozen=True)
class DirectoryConnection:
    """Where and how to reach the directory service."""
    base_url: str
    api_token: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "DirectoryConnection":
        return cls(
            base_url=config.DIRECTORY_API_BASE,
            api_token=config.DIRECTORY_API_TOKEN,
            timeout_seconds=config.DIRECTORY_TIMEOUT_SECONDS,
            max_retries=config.DIRECTORY_MAX_RETRIES,
            retry_delay_seconds=config.DIRECTORY_RETRY_DELAY_SECONDS,
        )

    def is_configured(self) -> bool:
        return bool(self.base_url)


class FolderDirectory(ABC):
    """Source of folder membership snapshots."""

    @abstractmethod
    async def get_document_folder_membership(
        self,
        developer_names: Iterable[str]
    ) -> List[FolderMembershipSnapshot]:
        """
        Fetch membership snapshots for all the given folders in one call.

        Folders the directory does not know are simply absent from the result.
        Failures raise ExternalServiceError.
        """
        pass


class StaticDirectory(FolderDirectory):
    """
    In-memory directory for tests and dry runs.

    Snapshots can be added programmatically.
    """

    def __init__(self, snapshots: Optional[Iterable[FolderMembershipSnapshot]] = None):
        self._snapshots: Dict[str, FolderMembershipSnapshot] = {}
        self.calls: List[List[str]] = []
        for snapshot in snapshots or []:
            self.add_snapshot(snapshot)

    def add_snapshot(self, snapshot: FolderMembershipSnapshot) -> None:
        self._snapshots[snapshot.developer_name] = snapshot

    async def get_document_folder_membership(
        self,
        developer_names: Iterable[str]
    ) -> List[FolderMembershipSnapshot]:
        names = sorted(set(developer_names))
        self.calls.append(names)
        return [self._snapshots[name] for name in names if name in self._snapshots]


class DirectoryClient(FolderDirectory):
    """
    HTTP client for the remote directory service.

    Usage:
        client = DirectoryClient(DirectoryConnection.from_env())
        snapshots = await client.get_document_folder_membership({"f1", "f2"})
    """

    def __init__(self, connection: DirectoryConnection, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.connection = connection
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.connection.api_token:
            headers["Authorization"] = f"Bearer {self.connection.api_token}"
        return headers

    async def get_document_folder_membership(
        self,
        developer_names: Iterable[str]
    ) -> List[FolderMembershipSnapshot]:
        names = sorted(set(developer_names))
        if not names:
            return []

        if not self.connection.is_configured():
            raise ExternalServiceError("Directory service base URL is not configured")

        payload = await self._post(MEMBERSHIP_ENDPOINT, {"developer_names": names})
        snapshots = self._parse_snapshots(payload)

        logger.info(
            "Directory returned %d membership snapshots for %d folders",
            len(snapshots), len(names)
        )
        return snapshots

    async def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.connection.base_url.rstrip('/')}{endpoint}"
        attempts = max(1, self.connection.max_retries)

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(
                    timeout=self.connection.timeout_seconds,
                    transport=self._transport
                ) as client:
                    resp = await client.post(url, headers=self._headers(), json=body)
            except httpx.TimeoutException:
                logger.warning("Directory request timeout on attempt %d", attempt + 1)
                await self._backoff(attempt, attempts)
                continue
            except httpx.HTTPError as e:
                raise ExternalServiceError(
                    f"Directory request failed: {e}", {"url": url}
                ) from e

            if resp.status_code == 200:
                try:
                    return resp.json()
                except ValueError as e:
                    raise ExternalServiceError(
                        "Directory returned a non-JSON response", {"url": url}
                    ) from e

            if resp.status_code == 429:
                logger.warning("Directory rate limited, waiting before retry")
                await self._backoff(attempt, attempts)
                continue

            logger.error("Directory API error: %d - %s", resp.status_code, resp.text[:300])
            raise ExternalServiceError(
                f"Directory returned HTTP {resp.status_code}",
                {"url": url, "status_code": resp.status_code, "body": resp.text[:300]},
            )

        raise ExternalServiceError(
            f"Directory request failed after {attempts} attempts", {"url": url}
        )

    async def _backoff(self, attempt: int, attempts: int) -> None:
        if attempt + 1 < attempts:
            await asyncio.sleep(self.connection.retry_delay_seconds * (attempt + 1))

    @staticmethod
    def _parse_snapshots(payload: Any) -> List[FolderMembershipSnapshot]:
        if not isinstance(payload, dict) or not isinstance(payload.get("folders"), list):
            raise ExternalServiceError("Directory response has no 'folders' list")

        snapshots = []
        for item in payload["folders"]:
            try:
                snapshots.append(FolderMembershipSnapshot.from_dict(item))
            except (KeyError, TypeError, AttributeError) as e:
                raise ExternalServiceError(
                    f"Malformed folder entry in directory response: {item!r}"
                ) from e
        return snapshots
