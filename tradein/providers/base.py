"""
Base Content Provider Interface and Data Classes

Defines the read-only interface the backup engine uses to snapshot content
held by the storefront platform, along with the per-category result type.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


# Category keys, in the order they appear in backup records
CATALOG_ITEMS = "products"
THEME_ASSETS = "theme_assets"
EMBEDDED_SCRIPTS = "script_tags"
STRUCTURED_CONTENT = "metaobjects"
PUBLISHED_CONTENT = "blogs"

CONTENT_CATEGORIES = [
    CATALOG_ITEMS,
    THEME_ASSETS,
    EMBEDDED_SCRIPTS,
    STRUCTURED_CONTENT,
    PUBLISHED_CONTENT,
]


@dataclass
class ContentFetchResult:
    """Items fetched for one content category."""
    items: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0
    error: Optional[str] = None

    def __post_init__(self):
        if not self.count:
            self.count = len(self.items)

    @classmethod
    def failed(cls, error: str) -> "ContentFetchResult":
        return cls(items=[], count=0, error=error)


class ContentProviderError(Exception):
    """Base exception for content provider errors."""
    pass


class ContentRateLimitError(ContentProviderError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ContentAPIError(ContentProviderError):
    """API returned an error response."""
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class ExternalContentProvider(ABC):
    """
    Read-only client for storefront content.

    Each listing returns a ContentFetchResult and reports failures in its
    ``error`` field instead of raising.
    """

    @abstractmethod
    async def list_catalog_items(self) -> ContentFetchResult:
        """List catalog products."""
        pass

    @abstractmethod
    async def list_theme_assets(self) -> ContentFetchResult:
        """List assets of the published theme."""
        pass

    @abstractmethod
    async def list_embedded_scripts(self) -> ContentFetchResult:
        """List script tags injected into the storefront."""
        pass

    @abstractmethod
    async def list_structured_content_objects(self) -> ContentFetchResult:
        """List structured content entries (metaobjects)."""
        pass

    @abstractmethod
    async def list_published_content(self) -> ContentFetchResult:
        """List blogs with their articles."""
        pass

    def fetchers(self) -> dict[str, Callable[[], Awaitable[ContentFetchResult]]]:
        return {
            CATALOG_ITEMS: self.list_catalog_items,
            THEME_ASSETS: self.list_theme_assets,
            EMBEDDED_SCRIPTS: self.list_embedded_scripts,
            STRUCTURED_CONTENT: self.list_structured_content_objects,
            PUBLISHED_CONTENT: self.list_published_content,
        }

    async def fetch_all(self) -> dict[str, ContentFetchResult]:
        """Fetch every category concurrently; one failure never hides the others."""
        fetchers = self.fetchers()
        results = await asyncio.gather(
            *(fetch() for fetch in fetchers.values()),
            return_exceptions=True
        )

        content: dict[str, ContentFetchResult] = {}
        for category, result in zip(fetchers.keys(), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Content fetch for {category} failed: {result}")
                content[category] = ContentFetchResult.failed(str(result) or type(result).__name__)
            else:
                content[category] = result
        return content

    async def close(self) -> None:
        """Clean up resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
