from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from listing_sync.config import SinkSettings
from listing_sync.domain.errors import DomainInvariantError, SinkError
from listing_sync.domain.listing import StandardListing

logger = logging.getLogger("listing_sync.clients.sink")


@dataclass
class CoreServiceSink:
    """Downstream property service; both endpoints upsert on (portal, portal_id)."""

    settings: SinkSettings
    client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=30.0)
            self._owns_client = True

    async def ingest(
        self,
        *,
        catalog: str,
        item_id: str,
        country: str,
        record: StandardListing,
        raw: dict[str, object],
    ) -> None:
        if not self.settings.enabled:
            logger.warning("sink api key is not configured; skipping ingest", extra={"item_id": item_id})
            return
        await self._post(
            "/properties/ingest",
            {
                "portal": catalog,
                "portal_id": item_id,
                "country": country,
                "data": record.model_dump(mode="json"),
                "raw_data": raw,
                "status": "active",
            },
            item_id=item_id,
        )

    async def mark_inactive(self, *, catalog: str, item_id: str, country: str, reason: str) -> None:
        if not self.settings.enabled:
            logger.warning("sink api key is not configured; skipping mark-inactive", extra={"item_id": item_id})
            return
        await self._post(
            "/properties/mark-inactive",
            {
                "portal": catalog,
                "portal_id": item_id,
                "country": country,
                "reason": reason,
            },
            item_id=item_id,
        )

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()

    async def _post(self, path: str, payload: dict[str, object], *, item_id: str) -> None:
        if self.client is None:
            raise DomainInvariantError("sink http client is not set")
        url = f"{self.settings.api_url.rstrip('/')}{path}"
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise SinkError(f"sink request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "sink rejected request",
                extra={"item_id": item_id, "error": f"{path} status {response.status_code}"},
            )
            raise SinkError(f"sink request to {path} failed with status {response.status_code}")
