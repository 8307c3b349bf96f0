"""
Source data provider reading the legacy correspondence REST API.

Every endpoint answers with the envelope ``{"success": bool, "message": str,
"data": [...]}``. Requests carry the API key in ``X-API-KEY`` and, when a
credential provider is configured, a bearer token as well. An empty response
body is treated as an empty list.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final

import requests

from .exceptions import SourceError
from .models import ASSIGNMENTS, BUSINESS_LOGS, Attachment, Category, Dependent, EntityType, ItemDetails

if TYPE_CHECKING:
    from .protocols import CredentialProvider

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final[float] = 60.0
DEFAULT_PAGE_SIZE: Final[int] = 10000
ASSIGNMENT_ACTION_ID: Final[int] = 12

CATEGORY_TYPE_IDS: Final[dict[Category, int]] = {
    Category.OUTGOING: 1,
    Category.INCOMING: 2,
    Category.INTERNAL: 3,
}

# entity type -> path prefix, the dependent's parent id is appended
ENDPOINTS: Final[dict[str, str]] = {
    EntityType.ATTACHMENTS: "/CorrespondenceAttachments/docGuid/",
    EntityType.COMMENTS: "/CorrespondenceComments/docGuid/",
    EntityType.COPY_TOS: "/CorrespondenceCopyTo/docGUId/",
    EntityType.CURRENT_DEPARTMENTS: "/CorrespondenceCurrentDepartments/docGuid/",
    EntityType.CURRENT_POSITIONS: "/CorrespondenceCurrentPositions/docGuid/",
    EntityType.CURRENT_USERS: "/CorrespondenceCurrentUsers/docGuid/",
    EntityType.CUSTOM_FIELDS: "/CorrespondenceCustomFields/docGuid/",
    EntityType.LINKS: "/CorrespondenceLinks/docGuid/",
    EntityType.SEND_TOS: "/CorrespondenceSendTo/docGUId/",
    EntityType.TRANSACTIONS: "/CorrespondenceTransactions/docGuid/",
}


def _is_true(value: Any) -> bool:
    return value is True or str(value).lower() == "true"


def _dependent_id(entry: dict[str, Any], index: int) -> str:
    for key in ("GUId", "GUID", "Guid", "guid", "Id", "id"):
        if entry.get(key):
            return str(entry[key])
    return str(index)


class HttpSourceProvider:
    """SourceDataProvider backed by the source system's REST API.

    The correspondence list is fetched once and cached; item details are built
    from the cached entry plus the item's attachment list.
    """

    _session: requests.Session
    _correspondences: dict[str, dict[str, Any]] | None

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        credentials: CredentialProvider | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._credentials = credentials
        self._timeout = timeout
        self._page_size = page_size
        self._session = session or requests.Session()
        self._correspondences = None

    def list_item_ids(self, category: Category) -> list[str]:
        type_id = CATEGORY_TYPE_IDS[category]
        return [
            item_id
            for item_id, entry in self._all_correspondences().items()
            if entry.get("CorrespondenceTypeId") == type_id
            and not _is_true(entry.get("IsDeleted"))
            and not _is_true(entry.get("IsDraft"))
            and not _is_true(entry.get("IsCanceled"))
        ]

    def fetch(self, item_id: str) -> ItemDetails:
        entry = self._all_correspondences().get(item_id)
        if entry is None:
            # Not in the cached list (created after it was loaded): reload once
            self._correspondences = None
            entry = self._all_correspondences().get(item_id)
        if entry is None:
            msg = f"Correspondence {item_id} not found in the source system"
            raise SourceError(msg)

        type_id = entry.get("CorrespondenceTypeId")
        category = next((c for c, t in CATEGORY_TYPE_IDS.items() if t == type_id), None)
        if category is None:
            msg = f"Correspondence {item_id} has unknown type id {type_id!r}"
            raise SourceError(msg)

        attachments = [
            Attachment(
                attachment_id=str(raw.get("GUId") or index),
                name=raw.get("Name") or "",
                file_type=raw.get("FileType") or "",
                caption=raw.get("Caption") or "",
                data=raw.get("FileData"),
            )
            for index, raw in enumerate(self._get_list(ENDPOINTS[EntityType.ATTACHMENTS] + item_id))
        ]
        return ItemDetails(
            item_id=item_id,
            category=category,
            subject=entry.get("Subject") or "",
            as_user=entry.get("CreationUserName") or None,
            attachments=attachments,
            is_final=_is_true(entry.get("IsFinal")),
            is_archive=_is_true(entry.get("IsArchive")),
            fields=entry,
        )

    def fetch_dependents(self, item_id: str, entity_type: str) -> list[Dependent]:
        if entity_type in (ASSIGNMENTS, BUSINESS_LOGS):
            entries = self._get_list(ENDPOINTS[EntityType.TRANSACTIONS] + item_id)
            wanted = entity_type == ASSIGNMENTS
            entries = [e for e in entries if (e.get("ActionId") == ASSIGNMENT_ACTION_ID) == wanted]
        elif entity_type in ENDPOINTS:
            entries = self._get_list(ENDPOINTS[entity_type] + item_id)
        else:
            msg = f"Unknown dependent entity type: {entity_type}"
            raise SourceError(msg)
        return [
            Dependent(dependent_id=_dependent_id(entry, index), entity_type=entity_type, payload=entry)
            for index, entry in enumerate(entries)
        ]

    def _all_correspondences(self) -> dict[str, dict[str, Any]]:
        if self._correspondences is None:
            entries = self._get_list(f"/Correspondences/All/PageIndex/1/PageSize/{self._page_size}")
            self._correspondences = {str(entry["GUId"]): entry for entry in entries if entry.get("GUId")}
            logger.info(f"Loaded {len(self._correspondences)} correspondence(s) from the source system")
        return self._correspondences

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-API-KEY"] = self._api_key
        if self._credentials is not None:
            headers["Authorization"] = f"Bearer {self._credentials.current_credential()}"
        return headers

    def _get_list(self, path: str) -> list[dict[str, Any]]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.get(url, headers=self._headers(), timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            msg = f"Request to {url} failed: {e}"
            raise SourceError(msg) from e

        if not response.text.strip():
            logger.debug(f"Empty response body from {url}")
            return []
        try:
            body = response.json()
        except ValueError as e:
            msg = f"Invalid JSON from {url}"
            raise SourceError(msg) from e

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            msg = f"Source API returned failure for {url}: {message or 'unknown error'}"
            raise SourceError(msg)
        return [entry for entry in body.get("data") or [] if isinstance(entry, dict)]
