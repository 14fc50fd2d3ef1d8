"""SitePulse — Shared Platform HTTP Transport.

Owns one httpx.AsyncClient per adapter instance, with bounded timeouts and
retry on rate limiting, server errors and connection failures.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from sitepulse.config import settings
from sitepulse.connectors.errors import (
    AuthError,
    PlatformAPIError,
    TransientFetchError,
)
from sitepulse.core.logging import get_logger

logger = get_logger("connectors.http")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds


def normalize_base_url(url: str) -> str:
    """Add a scheme when missing and strip the trailing slash."""
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


class PlatformHTTPClient:
    """Async HTTP transport shared by the vendor adapters."""

    def __init__(
        self,
        base_url: str,
        platform: str,
        timeout: float | None = None,
        verify_ssl: bool | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.platform = platform
        self.timeout = timeout or settings.http_timeout_seconds
        self.verify_ssl = settings.verify_ssl if verify_ssl is None else verify_ssl
        self.retry_base_delay: float = RETRY_BASE_DELAY
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify_ssl,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    # ── Core Request Method ──

    async def send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying 429 / 5xx / connection errors.

        Returns the final response whatever its status; callers decide how
        a non-2xx answer maps onto the error taxonomy.
        """
        client = await self._get_client()
        url = self.url(path)

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = await client.request(method, url, **kwargs)
            except httpx.InvalidURL as e:
                raise PlatformAPIError(
                    f"{self.platform} URL is invalid: {e}", self.platform
                ) from e
            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"{self.platform} request error: {e}. Retrying in {wait}s"
                    )
                    await asyncio.sleep(wait)
                    continue
                raise TransientFetchError(
                    f"{self.platform} connection failed after {MAX_RETRIES} attempts: {e}",
                    self.platform,
                ) from e

            retryable = resp.status_code == 429 or resp.status_code >= 500
            if retryable and attempt < MAX_RETRIES:
                wait = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"{self.platform} returned {resp.status_code}. Retrying in {wait}s "
                    f"(attempt {attempt}/{MAX_RETRIES})",
                    extra={"status_code": resp.status_code},
                )
                await asyncio.sleep(wait)
                continue
            return resp

        raise TransientFetchError("Max retries exhausted", self.platform)

    def raise_for_status(self, resp: httpx.Response) -> None:
        """Map a non-2xx response onto the platform error taxonomy."""
        if resp.is_success:
            return
        detail = resp.text[:300]
        message = f"{self.platform} API error: {resp.status_code} {detail}"
        if resp.status_code == 401:
            raise AuthError(message, self.platform, resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientFetchError(message, self.platform, resp.status_code)
        raise PlatformAPIError(message, self.platform, resp.status_code)

    def parse_json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise PlatformAPIError(
                f"{self.platform} returned non-JSON body from {resp.request.url}",
                self.platform,
                resp.status_code,
            ) from e

    def parse_object(self, resp: httpx.Response) -> Dict[str, Any]:
        """Like parse_json, but the body must be a JSON object."""
        data = self.parse_json(resp)
        if not isinstance(data, dict):
            raise PlatformAPIError(
                f"{self.platform} returned {type(data).__name__} where an object "
                f"was expected from {resp.request.url}",
                self.platform,
                resp.status_code,
            )
        return data
