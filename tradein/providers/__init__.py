"""
External Content Providers Package

Read-only access to storefront content that lives outside the database and
is snapshotted alongside it in full backups.

Supported Providers:
- Shopify (Admin REST + GraphQL, access token)
"""

from tradein.providers.base import (
    ContentFetchResult,
    ContentProviderError,
    ContentRateLimitError,
    ContentAPIError,
    ExternalContentProvider,
    CONTENT_CATEGORIES,
)
from tradein.providers.shopify import ShopifyContentProvider

__all__ = [
    "ContentFetchResult",
    "ContentProviderError",
    "ContentRateLimitError",
    "ContentAPIError",
    "ExternalContentProvider",
    "CONTENT_CATEGORIES",
    "ShopifyContentProvider",
]
