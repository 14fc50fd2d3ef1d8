"""SitePulse — VMware Cloud Director Adapter.

Session-token authentication with a credential fallback chain, CloudAPI and
query-service pagination, and per-VDC best-effort enrichment.
"""

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from sitepulse.config import settings
from sitepulse.connectors.base import PlatformClient, fetch_or_default, log_partial
from sitepulse.connectors.errors import AuthError, PlatformAPIError
from sitepulse.connectors.http import PlatformHTTPClient
from sitepulse.connectors.vcd import transformer
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import (
    PlatformType,
    SiteConfig,
    SiteSummary,
    TenantAllocation,
)

logger = get_logger("vcd.client")

API_VERSION = "38.0"
PROVIDER_SESSION_PATH = "/cloudapi/1.0.0/sessions/provider"
TENANT_SESSION_PATH = "/cloudapi/1.0.0/sessions"
LEGACY_SESSION_PATH = "/api/sessions"
MODERN_TOKEN_HEADER = "x-vmware-vcloud-access-token"
LEGACY_TOKEN_HEADER = "x-vcloud-authorization"

PAGE_SIZE = 128
MAX_PAGES = 50
MAX_CONCURRENT_VDC_FETCHES = 8
NOT_FOUND_STATUSES = (400, 403, 404)


@dataclass
class VcdSession:
    """Cached token. VCD does not echo a TTL, so expiry is estimated."""

    token: str
    legacy: bool
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at

    def headers(self) -> Dict[str, str]:
        if self.legacy:
            return {LEGACY_TOKEN_HEADER: self.token}
        return {"Authorization": f"Bearer {self.token}"}


class VcdClient(PlatformClient):
    """Cloud Director adapter. Tenants are Org VDCs."""

    def __init__(
        self, config: SiteConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(config)
        self.org = config.org or "System"
        self.http = PlatformHTTPClient(
            config.url, "vcd", verify_ssl=config.verify_ssl, transport=transport
        )
        self.session_ttl = settings.vcd_session_ttl_minutes * 60
        self._session: Optional[VcdSession] = None
        self._auth_lock = asyncio.Lock()

    def platform_type(self) -> PlatformType:
        return PlatformType.VCD

    async def close(self) -> None:
        await self.http.close()

    # ── Authentication ──

    def _modern_session_path(self) -> str:
        if self.org.lower() == "system":
            return PROVIDER_SESSION_PATH
        return TENANT_SESSION_PATH

    def _credential_variants(self) -> List[str]:
        """Bare username first, then username@org (deduplicated)."""
        bare = self.config.username
        with_org = bare if "@" in bare else f"{bare}@{self.org}"
        return list(dict.fromkeys([bare, with_org]))

    def _basic(self, user: str) -> str:
        raw = f"{user}:{self.config.password}".encode()
        return f"Basic {base64.b64encode(raw).decode()}"

    async def _open_session(self, path: str, user: str, legacy: bool) -> Optional[str]:
        """POST one session request; return the token or None if rejected."""
        accept = (
            f"application/*+xml;version={API_VERSION}"
            if legacy
            else f"application/json;version={API_VERSION}"
        )
        resp = await self.http.send(
            "POST",
            path,
            headers={"Accept": accept, "Authorization": self._basic(user)},
        )
        if not resp.is_success:
            logger.info(
                f"VCD session attempt {path} as {user} rejected: {resp.status_code}",
                extra={"site_id": self.config.site_id, "status_code": resp.status_code},
            )
            return None
        header = LEGACY_TOKEN_HEADER if legacy else MODERN_TOKEN_HEADER
        return resp.headers.get(header)

    async def _login(self) -> None:
        """Run the full fallback chain once; raise AuthError if nothing works."""
        self._session = None
        modern_path = self._modern_session_path()

        for user in self._credential_variants():
            token = await self._open_session(modern_path, user, legacy=False)
            if token:
                self._session = VcdSession(token, False, time.time() + self.session_ttl)
                logger.info(f"VCD authentication successful ({modern_path})")
                return

        user = self._credential_variants()[-1]
        token = await self._open_session(LEGACY_SESSION_PATH, user, legacy=True)
        if token:
            self._session = VcdSession(token, True, time.time() + self.session_ttl)
            logger.info("VCD authentication successful (legacy /api/sessions)")
            return

        raise AuthError(
            f"VCD authentication failed for {self.config.username} (org {self.org})",
            "vcd",
            401,
        )

    async def authenticate(self) -> None:
        # Concurrent sub-fetches share one handshake
        async with self._auth_lock:
            if self._session is None or self._session.expired:
                await self._login()

    # ── Core Request Methods ──

    async def _get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        """Authenticated GET; one transparent re-login on a 401."""
        await self.authenticate()
        accept = (
            f"application/*+json;version={API_VERSION}"
            if path.startswith("/api/")
            else f"application/json;version={API_VERSION}"
        )

        resp = None
        for attempt in range(2):
            headers = {"Accept": accept, **self._session.headers()}
            resp = await self.http.send("GET", path, params=params, headers=headers)
            if resp.status_code == 401 and attempt == 0:
                logger.info("VCD session rejected, re-authenticating")
                await self._login()
                continue
            break

        self.http.raise_for_status(resp)
        return self.http.parse_object(resp)

    async def _cloudapi_all(
        self, path: str, params: Dict[str, Any] | None = None
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a CloudAPI collection."""
        items: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            result = await self._get(
                path, {**(params or {}), "page": page, "pageSize": PAGE_SIZE}
            )
            items.extend(result.get("values") or [])
            if page >= (result.get("pageCount") or 1):
                break
        return items

    async def _query_all(
        self, query_type: str, filter_expr: str | None = None
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a legacy query-service record query."""
        records: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            "type": query_type,
            "format": "records",
            "pageSize": PAGE_SIZE,
        }
        if filter_expr:
            params["filter"] = filter_expr
        for page in range(1, MAX_PAGES + 1):
            result = await self._get("/api/query", {**params, "page": page})
            batch = result.get("record") or []
            records.extend(batch)
            if not batch or len(records) >= (result.get("total") or 0):
                break
        return records

    # ── Resource Fetches ──

    def _vdc_href(self, vdc_id: str) -> str:
        return f"{self.http.base_url}/api/vdc/{transformer.vdc_uuid(vdc_id)}"

    async def get_org_vdcs(self) -> List[Dict[str, Any]]:
        return await self._cloudapi_all("/cloudapi/1.0.0/vdcs")

    async def get_vdc(self, vdc_id: str) -> Dict[str, Any]:
        return await self._get(f"/cloudapi/1.0.0/vdcs/{transformer.vdc_urn(vdc_id)}")

    async def get_vdc_details(self, vdc_id: str) -> Dict[str, Any]:
        return await self._get(f"/api/admin/vdc/{transformer.vdc_uuid(vdc_id)}")

    async def get_vdc_storage_profiles(self, vdc_id: str) -> List[Dict[str, Any]]:
        return await self._query_all(
            "adminOrgVdcStorageProfile", f"vdc=={self._vdc_href(vdc_id)}"
        )

    async def get_edge_gateways(self, vdc_id: str) -> List[Dict[str, Any]]:
        return await self._cloudapi_all(
            "/cloudapi/1.0.0/edgeGateways",
            {"filter": f"ownerRef.id=={transformer.vdc_urn(vdc_id)}"},
        )

    async def get_vms_for_vdc(self, vdc_id: str) -> List[Dict[str, Any]]:
        return await self._query_all("adminVM", f"vdc=={self._vdc_href(vdc_id)}")

    async def get_vm_names(self, vdc_id: str) -> List[str]:
        """Names of the non-template VMs in one VDC (backup cross-reference)."""
        return [
            r["name"]
            for r in await self.get_vms_for_vdc(vdc_id)
            if r.get("name") and r.get("isVAppTemplate") not in (True, "true")
        ]

    async def get_org_display_names(self) -> Dict[str, str]:
        orgs = await self._cloudapi_all("/cloudapi/1.0.0/orgs")
        return {o["name"]: o.get("displayName") or o["name"] for o in orgs if o.get("name")}

    async def get_provider_capacity(self) -> Dict[str, float]:
        return transformer.parse_provider_capacity(await self._query_all("providerVdc"))

    async def get_external_network_ips(self) -> tuple[int, int]:
        networks = await self._cloudapi_all("/cloudapi/1.0.0/externalNetworks")
        return transformer.count_external_network_ips(networks)

    # ── Comprehensive Tenant ──

    async def _comprehensive_vdc(
        self,
        entry: Dict[str, Any],
        org_display_names: Dict[str, str],
        details: Dict[str, Any] | None = None,
    ) -> TenantAllocation:
        """Fan out the per-VDC sub-fetches and combine whatever came back."""
        vdc_id = entry["id"]
        fetches = {
            "storage profiles": fetch_or_default(
                self.get_vdc_storage_profiles(vdc_id), [], f"VDC {vdc_id} storage profiles"
            ),
            "edge gateways": fetch_or_default(
                self.get_edge_gateways(vdc_id), [], f"VDC {vdc_id} edge gateways"
            ),
            "vms": fetch_or_default(self.get_vms_for_vdc(vdc_id), [], f"VDC {vdc_id} VMs"),
        }
        if details is None:
            fetches["details"] = fetch_or_default(
                self.get_vdc_details(vdc_id), {}, f"VDC {vdc_id} details"
            )
        results = dict(zip(fetches, await asyncio.gather(*fetches.values())))
        log_partial(f"VDC {entry.get('name', vdc_id)}", results)

        total_ips, _ = transformer.count_edge_gateway_ips(results["edge gateways"].value)
        return transformer.map_vdc_to_tenant(
            vdc_id,
            entry,
            details if details is not None else results["details"].value,
            transformer.map_storage_profiles(results["storage profiles"].value),
            total_ips,
            transformer.count_vms(results["vms"].value),
            org_display_names,
        )

    async def _all_tenants(self) -> List[TenantAllocation]:
        vdcs, org_names = await asyncio.gather(
            self.get_org_vdcs(),
            fetch_or_default(self.get_org_display_names(), {}, "VCD organizations"),
        )
        sem = asyncio.Semaphore(MAX_CONCURRENT_VDC_FETCHES)

        async def one(entry: Dict[str, Any]) -> TenantAllocation:
            async with sem:
                return await self._comprehensive_vdc(entry, org_names.value)

        return list(await asyncio.gather(*(one(v) for v in vdcs)))

    # ── Capability Contract ──

    async def get_site_summary(self) -> SiteSummary:
        tenants, capacity, ext_ips = await asyncio.gather(
            self._all_tenants(),
            fetch_or_default(
                self.get_provider_capacity(), {}, "VCD provider VDC capacity"
            ),
            fetch_or_default(self.get_external_network_ips(), (0, 0), "VCD external networks"),
        )
        return transformer.build_site_summary(
            self.config.site_id, tenants, capacity.value, ext_ips.value
        )

    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        return await self._all_tenants()

    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        try:
            entry = await self.get_vdc(tenant_id)
        except PlatformAPIError as e:
            if e.status_code in NOT_FOUND_STATUSES:
                return None
            raise
        if not entry or not entry.get("id"):
            return None
        org_names = await fetch_or_default(
            self.get_org_display_names(), {}, "VCD organizations"
        )
        return await self._comprehensive_vdc(entry, org_names.value)
