"""
Shopify Content Provider

Read-only client for the Shopify Admin API used to snapshot storefront
content (products, theme assets, script tags, metaobjects, blogs) into full
backups. Nothing here writes to the shop.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from tradein.providers.base import (
    ContentAPIError,
    ContentFetchResult,
    ContentProviderError,
    ContentRateLimitError,
    ExternalContentProvider,
)

logger = logging.getLogger(__name__)

METAOBJECT_DEFINITIONS_QUERY = """
query MetaobjectDefinitions($first: Int!, $after: String) {
  metaobjectDefinitions(first: $first, after: $after) {
    nodes { type name }
    pageInfo { hasNextPage endCursor }
  }
}
"""

METAOBJECTS_QUERY = """
query Metaobjects($type: String!, $first: Int!, $after: String) {
  metaobjects(type: $type, first: $first, after: $after) {
    nodes {
      id
      handle
      type
      displayName
      updatedAt
      fields { key type value }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


class ShopifyContentProvider(ExternalContentProvider):
    """
    Async client for reading storefront content from the Shopify Admin API.

    Features:
    - Automatic retry with exponential backoff for 429 and 5xx responses
    - Cursor pagination through the Link header (REST) and pageInfo (GraphQL)
    - Per-category error capture so callers always get a result
    """

    DEFAULT_MAX_RETRIES = 3
    DEFAULT_RETRY_DELAY = 1.0  # seconds
    DEFAULT_RETRY_BACKOFF = 2.0
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
    PAGE_SIZE = 250
    MAX_PAGES = 40

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = "2024-10",
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the Shopify client.

        Args:
            shop: Shop domain (my-store.myshopify.com)
            access_token: Admin API access token with read scopes
            api_version: Admin API version
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            retry_delay: Initial delay between retries (exponential backoff applies)
            transport: Optional httpx transport (tests)
        """
        shop = shop.replace("https://", "").replace("http://", "").rstrip("/")
        self.base_url = f"https://{shop}/admin/api/{api_version}"
        self.access_token = access_token
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings) -> Optional["ShopifyContentProvider"]:
        """Build a provider from app settings, or None when Shopify is not configured."""
        if not settings.shopify_configured:
            return None
        return cls(
            shop=settings.shopify_shop,
            access_token=settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            timeout=settings.shopify_timeout,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "X-Shopify-Access-Token": self.access_token,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ==================== Transport ====================

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        try:
            data = response.json()
            message = data.get("errors") or data.get("error") or str(data)
        except ValueError:
            message = response.text or f"HTTP {status}"

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ContentRateLimitError(
                f"Rate limit exceeded: {message}",
                retry_after=float(retry_after) if retry_after else None
            )
        raise ContentAPIError(f"Shopify API error {status}: {message}", status_code=status)

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> httpx.Response:
        """Make an HTTP request, retrying transient failures."""
        client = await self._get_client()
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            delay = self.retry_delay * (self.DEFAULT_RETRY_BACKOFF ** attempt)
            try:
                response = await client.request(method, url, params=params, json=json)

                if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                    retry_after = response.headers.get("Retry-After")
                    if response.status_code == 429 and retry_after:
                        delay = float(retry_after)
                    logger.warning(
                        f"Shopify {url} returned {response.status_code}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue

                self._raise_for_status(response)
                return response

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_exception = e
                if attempt < self.max_retries:
                    logger.warning(
                        f"Shopify request to {url} failed, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise ContentProviderError(f"Could not reach Shopify: {e}") from e

        raise ContentProviderError(f"Failed after {self.max_retries} retries: {last_exception}")

    async def _get_paginated(self, path: str, key: str, params: Optional[dict] = None) -> list[dict[str, Any]]:
        """Follow Link-header pagination and collect ``key`` from every page."""
        items: list[dict[str, Any]] = []
        url: Optional[str] = path
        page_params = {"limit": self.PAGE_SIZE, **(params or {})}

        for _ in range(self.MAX_PAGES):
            response = await self._request_with_retry("GET", url, params=page_params)
            items.extend(response.json().get(key, []))

            next_url = response.links.get("next", {}).get("url")
            if not next_url:
                break
            # page_info URLs carry their own query string
            url, page_params = next_url, None
        else:
            logger.warning(f"Stopped paginating {path} after {self.MAX_PAGES} pages")

        return items

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = await self._request_with_retry(
            "POST", "/graphql.json", json={"query": query, "variables": variables}
        )
        payload = response.json()
        if payload.get("errors"):
            messages = "; ".join(
                err.get("message", str(err)) if isinstance(err, dict) else str(err)
                for err in payload["errors"]
            )
            raise ContentAPIError(f"GraphQL error: {messages}")
        return payload.get("data") or {}

    async def _graphql_paginated(self, query: str, key: str, variables: dict[str, Any]) -> list[dict[str, Any]]:
        """Follow pageInfo cursors and collect the ``key`` connection's nodes."""
        nodes: list[dict[str, Any]] = []
        cursor: Optional[str] = None

        for _ in range(self.MAX_PAGES):
            data = await self._graphql(query, {**variables, "first": self.PAGE_SIZE, "after": cursor})
            connection = data.get(key) or {}
            nodes.extend(connection.get("nodes", []))

            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
        else:
            logger.warning(f"Stopped paginating {key} {variables} after {self.MAX_PAGES} pages")

        return nodes

    async def _capture(self, category: str, fetch) -> ContentFetchResult:
        try:
            items = await fetch()
        except (ContentProviderError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Shopify {category} fetch failed: {e}")
            return ContentFetchResult.failed(str(e))
        logger.info(f"Fetched {len(items)} Shopify {category}")
        return ContentFetchResult(items=items, count=len(items))

    # ==================== Content Listings ====================

    async def list_catalog_items(self) -> ContentFetchResult:
        return await self._capture(
            "products", lambda: self._get_paginated("/products.json", "products")
        )

    async def list_theme_assets(self) -> ContentFetchResult:
        async def fetch():
            response = await self._request_with_retry("GET", "/themes.json")
            themes = response.json().get("themes", [])
            main = next((t for t in themes if t.get("role") == "main"), None)
            if main is None:
                raise ContentAPIError("No published (main) theme found")
            response = await self._request_with_retry("GET", f"/themes/{main['id']}/assets.json")
            return [
                {**asset, "theme_id": main["id"], "theme_name": main.get("name")}
                for asset in response.json().get("assets", [])
            ]

        return await self._capture("theme assets", fetch)

    async def list_embedded_scripts(self) -> ContentFetchResult:
        return await self._capture(
            "script tags", lambda: self._get_paginated("/script_tags.json", "script_tags")
        )

    async def list_structured_content_objects(self) -> ContentFetchResult:
        async def fetch():
            definitions = await self._graphql_paginated(
                METAOBJECT_DEFINITIONS_QUERY, "metaobjectDefinitions", {}
            )

            objects: list[dict[str, Any]] = []
            for definition in definitions:
                objects.extend(await self._graphql_paginated(
                    METAOBJECTS_QUERY, "metaobjects", {"type": definition["type"]}
                ))
            return objects

        return await self._capture("metaobjects", fetch)

    async def list_published_content(self) -> ContentFetchResult:
        async def fetch():
            blogs = await self._get_paginated("/blogs.json", "blogs")
            for blog in blogs:
                blog["articles"] = await self._get_paginated(
                    f"/blogs/{blog['id']}/articles.json", "articles"
                )
            return blogs

        return await self._capture("blogs", fetch)
