"""Remote accounting client abstract base class.

Every remote accounting backend implements this ABC. Implementations are
thin: they translate calls into HTTP and raise RemoteAPIError for any
failure. Retry and error classification belong to the RetryExecutor; the
adapter never retries on its own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from src.ledgerlink.accounting.schemas import EntityType, RemoteRecord


class RemoteClient(ABC):
    """Abstract interface for one tenant's remote accounting company.

    Methods:
        list_page: One page of records of a type, optionally modified since a time.
        create: Create a record; the idempotency key makes retries safe.
        update: Update a record guarded by its revision token.
        get_company_info: Company profile (name, country, ...).
    """

    @abstractmethod
    async def list_page(
        self,
        entity_type: EntityType,
        start_position: int,
        max_results: int,
        modified_since: datetime | None = None,
    ) -> list[RemoteRecord]:
        """Fetch one page. start_position is 1-based; a short page is the last."""
        ...

    @abstractmethod
    async def create(
        self, entity_type: EntityType, fields: dict[str, Any], idempotency_key: str
    ) -> RemoteRecord:
        ...

    @abstractmethod
    async def update(
        self,
        entity_type: EntityType,
        remote_id: str,
        revision_token: str,
        fields: dict[str, Any],
    ) -> RemoteRecord:
        ...

    @abstractmethod
    async def get_company_info(self) -> dict[str, Any]:
        ...
