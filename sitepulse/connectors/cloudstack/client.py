"""SitePulse — Apache CloudStack Adapter.

Stateless signed-request authentication: every call carries the API key and
an HMAC-SHA1 signature of its own parameters, so there is no session to
cache or expire.
"""

import asyncio
import base64
import hashlib
import hmac
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from sitepulse.config import settings
from sitepulse.connectors.base import PlatformClient, fetch_or_default, log_partial
from sitepulse.connectors.cloudstack import transformer
from sitepulse.connectors.errors import AuthError, PlatformAPIError
from sitepulse.connectors.http import PlatformHTTPClient
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import (
    NetworkMetrics,
    PlatformType,
    SiteConfig,
    SiteSummary,
    TenantAllocation,
)

logger = get_logger("cloudstack.client")

API_PATH = "/client/api"
PAGE_SIZE = 500
MAX_PAGES = 50
# 431 is CloudStack's "invalid parameter" answer, e.g. for an unknown UUID.
NOT_FOUND_STATUSES = (400, 403, 404, 431)

# Characters JavaScript's encodeURIComponent leaves untouched.
_UNRESERVED = "-_.!~*'()"


def _encode(value: str) -> str:
    return quote(str(value), safe=_UNRESERVED)


def sign_request(params: Dict[str, str], secret_key: str) -> str:
    """HMAC-SHA1 signature over the parameters, sorted by lower-cased key.

    Keys are lower-cased in the signed string; values keep their case and
    are percent-encoded. Base64 output.
    """
    ordered = sorted(params.items(), key=lambda kv: kv[0].lower())
    payload = "&".join(f"{k.lower()}={_encode(v)}" for k, v in ordered)
    digest = hmac.new(secret_key.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class CloudStackClient(PlatformClient):
    """CloudStack adapter. Tenants are projects."""

    def __init__(
        self, config: SiteConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(config)
        self.http = PlatformHTTPClient(
            config.url, "cloudstack", verify_ssl=config.verify_ssl, transport=transport
        )
        self.mhz_per_core = config.mhz_per_core or settings.cloudstack_mhz_per_core

    def platform_type(self) -> PlatformType:
        return PlatformType.CLOUDSTACK

    async def close(self) -> None:
        await self.http.close()

    # ── Core Request Methods ──

    def _signed_query(self, command: str, params: Dict[str, Any]) -> str:
        all_params = {k: str(v) for k, v in params.items()}
        all_params.update(
            {"command": command, "apikey": self.config.api_key or "", "response": "json"}
        )
        all_params["signature"] = sign_request(all_params, self.config.secret_key or "")
        return "&".join(f"{k}={_encode(v)}" for k, v in all_params.items())

    async def _request(self, command: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """Signed GET of one API command; returns the `<command>response` body."""
        query = self._signed_query(command, params or {})
        resp = await self.http.send(
            "GET", f"{API_PATH}?{query}", headers={"Accept": "application/json"}
        )
        self.http.raise_for_status(resp)
        data = self.http.parse_object(resp)
        return data.get(f"{command.lower()}response") or {}

    async def _list(
        self, command: str, item_key: str, params: Dict[str, Any] | None = None
    ) -> List[Dict[str, Any]]:
        """Page through a list* command until `count` items are collected."""
        items: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            body = await self._request(
                command, {**(params or {}), "page": page, "pagesize": PAGE_SIZE}
            )
            batch = body.get(item_key) or []
            items.extend(batch)
            if len(batch) < PAGE_SIZE or len(items) >= (body.get("count") or 0):
                break
        return items

    async def authenticate(self) -> None:
        """Verify the key pair with a cheap signed call."""
        if not self.config.api_key or not self.config.secret_key:
            raise AuthError("CloudStack API key and secret key are required", "cloudstack")
        await self._request("listZones")
        logger.info(
            "CloudStack authentication successful", extra={"site_id": self.config.site_id}
        )

    # ── Resource Fetches ──

    async def get_hosts(self) -> List[Dict[str, Any]]:
        return await self._list("listHosts", "host", {"type": "Routing"})

    async def get_storage_pools(self) -> List[Dict[str, Any]]:
        return await self._list("listStoragePools", "storagepool")

    async def get_public_ips(self) -> List[Dict[str, Any]]:
        return await self._list(
            "listPublicIpAddresses", "publicipaddress", {"listall": "true"}
        )

    async def get_vms(self, project_id: str | None = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"listall": "true"}
        if project_id:
            params["projectid"] = project_id
        return await self._list("listVirtualMachines", "virtualmachine", params)

    async def get_projects(self) -> List[Dict[str, Any]]:
        return await self._list("listProjects", "project", {"listall": "true"})

    # ── Capability Contract ──

    async def get_site_summary(self) -> SiteSummary:
        hosts, vms, pools, ips, projects = await asyncio.gather(
            self.get_hosts(),
            self.get_vms(),
            fetch_or_default(self.get_storage_pools(), [], "CloudStack storage pools"),
            fetch_or_default(self.get_public_ips(), [], "CloudStack public IPs"),
            fetch_or_default(self.get_projects(), [], "CloudStack projects"),
        )
        log_partial(
            f"CloudStack site {self.config.site_id}",
            {"storage pools": pools, "public IPs": ips, "projects": projects},
        )
        return transformer.build_site_summary(
            self.config.site_id,
            hosts,
            vms,
            transformer.map_storage_pools(pools.value),
            transformer.count_public_ips(ips.value) if ips.ok else NetworkMetrics(),
            len(projects.value),
        )

    async def _project_tenant(self, project: Dict[str, Any]) -> TenantAllocation:
        vms = await fetch_or_default(
            self.get_vms(project["id"]), [], f"CloudStack project {project['id']} VMs"
        )
        return transformer.map_project_to_tenant(project, vms.value, self.mhz_per_core)

    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        projects = await self.get_projects()
        if not projects:
            summary = await self.get_site_summary()
            return [transformer.default_tenant(summary)]
        return list(await asyncio.gather(*(self._project_tenant(p) for p in projects)))

    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        if tenant_id == transformer.DEFAULT_TENANT_ID:
            tenants = await self.get_tenant_allocations()
            return next((t for t in tenants if t.id == tenant_id), None)
        try:
            projects = await self._list(
                "listProjects", "project", {"id": tenant_id, "listall": "true"}
            )
        except PlatformAPIError as e:
            if e.status_code in NOT_FOUND_STATUSES:
                return None
            raise
        if not projects:
            return None
        return await self._project_tenant(projects[0])
