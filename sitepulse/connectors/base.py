"""SitePulse — Platform Capability Contract.

A single narrow interface every vendor adapter implements, so the registry
and the snapshot engine never need to know which vendor they talk to.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Dict, Generic, List, Optional, TypeVar

from sitepulse.config import settings
from sitepulse.connectors.errors import AuthError, PlatformError
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import (
    PlatformType,
    SiteConfig,
    SiteInfo,
    SiteSummary,
    TenantAllocation,
)

logger = get_logger("connectors")

T = TypeVar("T")


class PlatformClient(ABC):
    """Abstract base for all platform adapters.

    Each instance owns its own session/token cache and HTTP pool; instances
    are never shared between sites.
    """

    def __init__(self, config: SiteConfig):
        self.config = config

    @abstractmethod
    def platform_type(self) -> PlatformType:
        ...

    def site_info(self) -> SiteInfo:
        """Static site description. No I/O."""
        return SiteInfo(
            id=self.config.site_id,
            name=self.config.name or self.config.site_id,
            location=self.config.location,
            url=self.config.url,
            platform_type=self.platform_type(),
        )

    @abstractmethod
    async def authenticate(self) -> None:
        """Establish or refresh the session. Raises AuthError.

        Safe to call when already authenticated; an expired or rejected
        credential forces a fresh handshake.
        """
        ...

    async def test_connection(self) -> bool:
        """Try to authenticate; report the outcome instead of raising."""
        try:
            await asyncio.wait_for(
                self.authenticate(), timeout=settings.health_check_timeout_seconds
            )
            return True
        except (PlatformError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Connection test failed for {self.config.composite_id}: {e}",
                extra={"site_id": self.config.site_id},
            )
            return False
        except Exception as e:
            logger.warning(
                f"Connection test for {self.config.composite_id} raised unexpectedly: {e!r}",
                extra={"site_id": self.config.site_id},
            )
            return False

    @abstractmethod
    async def get_site_summary(self) -> SiteSummary:
        ...

    @abstractmethod
    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        ...

    @abstractmethod
    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        """Single-tenant lookup. Returns None when the tenant does not exist."""
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""


# ─────────────────────────────────────────────
# BEST-EFFORT SUB-FETCHES
# ─────────────────────────────────────────────


@dataclass
class FetchResult(Generic[T]):
    """Value of a secondary fetch, or its default when the fetch failed."""

    value: T
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def fetch_or_default(
    coro: Awaitable[T], default: T, what: str
) -> FetchResult[T]:
    """Await a secondary fetch, absorbing platform errors into `default`.

    Authentication failures still propagate: they are fatal for the call.
    """
    try:
        return FetchResult(await coro)
    except AuthError:
        raise
    except PlatformError as e:
        logger.warning(f"{what} unavailable, using default: {e}")
        return FetchResult(default, e)


def log_partial(subject: str, results: Dict[str, FetchResult]) -> None:
    """Log a partial-data warning naming the sub-fetches that fell back."""
    failed = [name for name, r in results.items() if not r.ok]
    if failed:
        logger.warning(f"Partial data for {subject}: {', '.join(failed)} unavailable")
