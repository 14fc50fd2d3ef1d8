"""SitePulse — Veeam ONE Adapter.

OAuth password grant against /api/token. The access token is refreshed
proactively shortly before its declared expiry, with the refresh grant
tried first and the password grant as the fallback.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from sitepulse.config import settings
from sitepulse.connectors.base import PlatformClient, fetch_or_default, log_partial
from sitepulse.connectors.errors import AuthError, PlatformError
from sitepulse.connectors.http import PlatformHTTPClient
from sitepulse.connectors.veeam import transformer
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import (
    BackupMetrics,
    BackupSiteSummary,
    PlatformType,
    SiteConfig,
    SiteSummary,
    TenantAllocation,
)

logger = get_logger("veeam.client")

TOKEN_PATH = "/api/token"
PROTECTED_VMS_PATH = "/api/infrastructure/protectedVirtualMachines"
REPOSITORIES_PATH = "/api/backupInfrastructure/repositories"


@dataclass
class TokenCache:
    access_token: str
    refresh_token: Optional[str]
    expires_at: float

    def needs_refresh(self, margin: float) -> bool:
        return time.time() >= self.expires_at - margin


class VeeamOneClient(PlatformClient):
    """Veeam ONE adapter. Backup reporting only: no tenants."""

    def __init__(
        self, config: SiteConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(config)
        self.http = PlatformHTTPClient(
            config.url, "veeam", verify_ssl=config.verify_ssl, transport=transport
        )
        self.refresh_margin = settings.token_refresh_margin_seconds
        self._token: Optional[TokenCache] = None
        self._auth_lock = asyncio.Lock()

    def platform_type(self) -> PlatformType:
        return PlatformType.VEEAM

    async def close(self) -> None:
        await self.http.close()

    # ── Authentication ──

    async def _grant(self, form: Dict[str, str]) -> TokenCache:
        resp = await self.http.send(
            "POST", TOKEN_PATH, data=form, headers={"Accept": "application/json"}
        )
        if resp.status_code in (400, 401, 403):
            raise AuthError(
                f"Veeam {form['grant_type']} grant rejected: {resp.status_code}",
                "veeam",
                resp.status_code,
            )
        self.http.raise_for_status(resp)
        data = self.http.parse_object(resp)
        if not data.get("access_token"):
            raise AuthError("No access token received from Veeam ONE", "veeam")
        return TokenCache(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=time.time() + float(data.get("expires_in") or 0),
        )

    async def _password_grant(self) -> TokenCache:
        return await self._grant(
            {
                "grant_type": "password",
                "username": self.config.username,
                "password": self.config.password,
            }
        )

    async def _login(self) -> None:
        """Refresh grant when a refresh token exists, else password grant."""
        previous = self._token
        self._token = None
        if previous and previous.refresh_token:
            try:
                self._token = await self._grant(
                    {"grant_type": "refresh_token", "refresh_token": previous.refresh_token}
                )
                logger.info("Veeam ONE token refreshed")
                return
            except PlatformError as e:
                logger.info(f"Veeam refresh grant failed, using password grant: {e}")
        self._token = await self._password_grant()
        logger.info(
            "Veeam ONE authentication successful", extra={"site_id": self.config.site_id}
        )

    async def authenticate(self) -> None:
        async with self._auth_lock:
            if self._token is None or self._token.needs_refresh(self.refresh_margin):
                await self._login()

    # ── Core Request Method ──

    async def _get(self, path: str) -> Any:
        await self.authenticate()
        resp = None
        for attempt in range(2):
            resp = await self.http.send(
                "GET",
                path,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self._token.access_token}",
                },
            )
            if resp.status_code == 401 and attempt == 0:
                logger.info("Veeam token rejected, re-authenticating")
                self._token = await self._password_grant()
                continue
            break
        self.http.raise_for_status(resp)
        return self.http.parse_json(resp)

    # ── Resource Fetches ──

    async def get_protected_vms(self) -> List[Dict[str, Any]]:
        return transformer.unwrap_items(await self._get(PROTECTED_VMS_PATH))

    async def get_protected_vm_names(self) -> List[str]:
        return transformer.protected_vm_names(await self.get_protected_vms())

    async def get_repositories(self) -> List[Dict[str, Any]]:
        return transformer.unwrap_items(await self._get(REPOSITORIES_PATH))

    async def get_backup_summary(self) -> BackupSiteSummary:
        vms, repos = await asyncio.gather(
            fetch_or_default(self.get_protected_vms(), [], "Veeam protected VMs"),
            fetch_or_default(self.get_repositories(), [], "Veeam repositories"),
        )
        log_partial(
            f"Veeam site {self.config.site_id}", {"protected VMs": vms, "repositories": repos}
        )
        metrics = transformer.backup_metrics(vms.value) if vms.ok else BackupMetrics()
        return transformer.build_backup_summary(
            self.config.site_id,
            metrics,
            [transformer.map_repository(r) for r in repos.value],
        )

    # ── Capability Contract ──

    async def get_site_summary(self) -> SiteSummary:
        return transformer.to_site_summary(await self.get_backup_summary())

    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        return []

    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        return None
