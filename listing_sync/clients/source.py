from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from listing_sync.config import SourceSettings
from listing_sync.domain.errors import DomainInvariantError, SourceError
from listing_sync.domain.listing import ListingDetail
from listing_sync.domain.models import DiscoveryPage, FetchOutcome, FetchResult, Partition

logger = logging.getLogger("listing_sync.clients.source")

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)"
TOKEN_REFRESH_BUFFER_SECONDS = 60
NOT_FOUND_STATUSES = frozenset({404, 410})
BLOCKED_STATUSES = frozenset({403, 429})

_NEXT_DATA_PATTERN = re.compile(
    r'<script id="__NEXT_DATA__" type="application/json"[^>]*>(.*?)</script>',
    re.DOTALL,
)


class _MalformedPage(ValueError):
    pass


def _require_client(client: httpx.AsyncClient | None) -> httpx.AsyncClient:
    if client is None:
        raise DomainInvariantError("http client is not set")
    return client


def extract_next_data(html: str) -> dict[str, Any] | None:
    """Return the embedded Next.js page state, None when the page carries none.

    Raises _MalformedPage when the script tag exists but its body is not a JSON object.
    """
    match = _NEXT_DATA_PATTERN.search(html)
    if match is None:
        return None
    try:
        payload = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        raise _MalformedPage(f"__NEXT_DATA__ is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise _MalformedPage("__NEXT_DATA__ is not a JSON object")
    return payload


def _ad_from_next_data(payload: dict[str, Any]) -> dict[str, Any] | None:
    ad = payload.get("props", {}).get("pageProps", {}).get("ad")
    if isinstance(ad, dict) and ad.get("id") not in (None, ""):
        return ad
    return None


@dataclass
class _AccessToken:
    value: str
    expires_at: float

    def usable(self, now: float) -> bool:
        return self.expires_at - now > TOKEN_REFRESH_BUFFER_SECONDS


@dataclass
class SourceSearchClient:
    """Search surface of the source: ids for one partition page."""

    settings: SourceSettings
    client: httpx.AsyncClient | None = None
    _token: _AccessToken | None = field(default=None, init=False, repr=False)
    _owns_client: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            self._owns_client = True

    @property
    def uses_oauth(self) -> bool:
        return bool(self.settings.oauth_token_url and self.settings.client_id and self.settings.client_secret)

    async def fetch_page(self, partition: Partition, *, offset: int, limit: int) -> DiscoveryPage:
        params = {
            "city": partition.city,
            "listing_type": partition.transaction_type,
            "offset": offset,
            "limit": limit,
        }
        response = await self._get(params)
        if response.status_code == 401 and self.uses_oauth:
            self._token = None
            response = await self._get(params)
        if response.status_code >= 400:
            raise SourceError(f"search page failed with status {response.status_code} for {partition.key}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError(f"search page for {partition.key} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise SourceError(f"search page for {partition.key} has unexpected shape")
        return _parse_search_page(payload)

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()

    async def _get(self, params: dict[str, object]) -> httpx.Response:
        client = _require_client(self.client)
        headers: dict[str, str] = {}
        if self.uses_oauth:
            headers["Authorization"] = f"Bearer {await self._access_token()}"
        try:
            return await client.get(self.settings.search_url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise SourceError(f"search request failed: {exc}") from exc

    async def _access_token(self) -> str:
        now = time.monotonic()
        if self._token is not None and self._token.usable(now):
            return self._token.value

        client = _require_client(self.client)
        logger.info("requesting source access token")
        try:
            response = await client.post(
                str(self.settings.oauth_token_url),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                },
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceError(f"access token request failed: {exc}") from exc

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise SourceError("access token response has no access_token")
        expires_in = int(body.get("expires_in") or 3600)
        self._token = _AccessToken(value=str(token), expires_at=now + expires_in)
        return self._token.value


def _parse_search_page(payload: dict[str, Any]) -> DiscoveryPage:
    items = payload.get("data") or payload.get("results") or []
    ids: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        item_id = item.get("id")
        if item_id is None or str(item_id).strip() == "":
            continue
        ids.append(str(item_id).strip())

    total = None
    for container in ("pagination", "meta"):
        block = payload.get(container)
        if isinstance(block, dict) and block.get("total") is not None:
            try:
                total = int(block["total"])
            except (TypeError, ValueError):
                total = None
            break
    return DiscoveryPage(ids=tuple(ids), total=total)


@dataclass
class HttpDetailFetcher:
    """Fetches an item's own detail page, trying each configured URL form in order.

    Outcome rules:
    - a page with a valid ad payload is FOUND;
    - every URL form answering 404/410 is NOT_FOUND;
    - 403/429 or a page without ad data is AMBIGUOUS;
    - network errors, timeouts, 5xx, malformed JSON and schema failures are TRANSIENT_ERROR.
    Transient evidence outranks ambiguous evidence when forms disagree.
    """

    settings: SourceSettings
    client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
            )
            self._owns_client = True

    async def fetch(self, item_id: str) -> FetchResult:
        client = _require_client(self.client)
        templates = self.settings.detail_url_templates
        not_found = 0
        transient: FetchResult | None = None
        ambiguous: FetchResult | None = None

        for template in templates:
            url = template.format(item_id=item_id)
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                transient = FetchResult(outcome=FetchOutcome.TRANSIENT_ERROR, detail=f"{type(exc).__name__}: {exc}")
                continue

            status = response.status_code
            if status in NOT_FOUND_STATUSES:
                not_found += 1
                continue
            if status in BLOCKED_STATUSES:
                ambiguous = FetchResult(outcome=FetchOutcome.AMBIGUOUS, status_code=status, detail="access denied")
                continue
            if status >= 500:
                transient = FetchResult(
                    outcome=FetchOutcome.TRANSIENT_ERROR,
                    status_code=status,
                    detail=f"server error {status}",
                )
                continue
            if status >= 400:
                ambiguous = FetchResult(outcome=FetchOutcome.AMBIGUOUS, status_code=status, detail=f"status {status}")
                continue

            result = _result_from_page(response.text, status)
            if result.outcome == FetchOutcome.FOUND:
                return result
            if result.outcome == FetchOutcome.TRANSIENT_ERROR:
                transient = result
            else:
                ambiguous = result

        if templates and not_found == len(templates):
            return FetchResult(outcome=FetchOutcome.NOT_FOUND, status_code=404, detail="all url forms not found")
        if transient is not None:
            return transient
        if ambiguous is not None:
            return ambiguous
        return FetchResult(outcome=FetchOutcome.AMBIGUOUS, detail="no conclusive response")

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()


def _result_from_page(html: str, status: int) -> FetchResult:
    try:
        next_data = extract_next_data(html)
    except _MalformedPage as exc:
        return FetchResult(outcome=FetchOutcome.TRANSIENT_ERROR, status_code=status, detail=str(exc))
    if next_data is None:
        return FetchResult(outcome=FetchOutcome.AMBIGUOUS, status_code=status, detail="page has no __NEXT_DATA__")

    ad = _ad_from_next_data(next_data)
    if ad is None:
        return FetchResult(outcome=FetchOutcome.AMBIGUOUS, status_code=status, detail="page has no ad data")

    try:
        listing = ListingDetail.model_validate(ad)
    except ValidationError as exc:
        return FetchResult(
            outcome=FetchOutcome.TRANSIENT_ERROR,
            status_code=status,
            raw=ad,
            detail=f"ad failed schema validation: {exc.error_count()} errors",
        )
    return FetchResult(outcome=FetchOutcome.FOUND, listing=listing, raw=ad, status_code=status)
