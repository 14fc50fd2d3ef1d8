"""SitePulse — Proxmox VE Adapter.

Ticket authentication: the ticket travels as the PVEAuthCookie cookie and
write calls also carry the CSRFPreventionToken header.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from sitepulse.config import settings
from sitepulse.connectors.base import PlatformClient, fetch_or_default, log_partial
from sitepulse.connectors.errors import AuthError
from sitepulse.connectors.http import PlatformHTTPClient
from sitepulse.connectors.proxmox import transformer
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import (
    PlatformType,
    SiteConfig,
    SiteSummary,
    TenantAllocation,
)

logger = get_logger("proxmox.client")

API_PREFIX = "/api2/json"
DEFAULT_REALM = "pam"


@dataclass
class ProxmoxTicket:
    ticket: str
    csrf_token: str
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at


class ProxmoxClient(PlatformClient):
    """Proxmox VE adapter. Tenants are cluster nodes."""

    def __init__(
        self, config: SiteConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(config)
        self.realm = config.realm or DEFAULT_REALM
        self.http = PlatformHTTPClient(
            config.url, "proxmox", verify_ssl=config.verify_ssl, transport=transport
        )
        self.mhz_per_core = config.mhz_per_core or settings.proxmox_mhz_per_core
        self.ticket_ttl = settings.proxmox_ticket_ttl_minutes * 60
        self._ticket: Optional[ProxmoxTicket] = None
        self._auth_lock = asyncio.Lock()

    def platform_type(self) -> PlatformType:
        return PlatformType.PROXMOX

    async def close(self) -> None:
        await self.http.close()

    @property
    def login_name(self) -> str:
        user = self.config.username
        return user if "@" in user else f"{user}@{self.realm}"

    # ── Authentication ──

    async def _login(self) -> None:
        self._ticket = None
        resp = await self.http.send(
            "POST",
            f"{API_PREFIX}/access/ticket",
            data={"username": self.login_name, "password": self.config.password},
        )
        if resp.status_code in (401, 403):
            raise AuthError(
                f"Proxmox authentication failed for {self.login_name}: {resp.status_code}",
                "proxmox",
                resp.status_code,
            )
        self.http.raise_for_status(resp)
        data = self.http.parse_object(resp).get("data") or {}
        if not data.get("ticket"):
            raise AuthError("No ticket received from Proxmox", "proxmox", resp.status_code)

        self._ticket = ProxmoxTicket(
            ticket=data["ticket"],
            csrf_token=data.get("CSRFPreventionToken") or "",
            expires_at=time.time() + self.ticket_ttl,
        )
        logger.info(
            "Proxmox authentication successful", extra={"site_id": self.config.site_id}
        )

    async def authenticate(self) -> None:
        async with self._auth_lock:
            if self._ticket is None or self._ticket.expired:
                await self._login()

    # ── Core Request Method ──

    async def _request(self, path: str, method: str = "GET", data: Dict[str, Any] | None = None) -> Any:
        """Authenticated call returning the `data` member; one re-auth on 401."""
        await self.authenticate()
        resp = None
        for attempt in range(2):
            headers = {
                "Accept": "application/json",
                "Cookie": f"PVEAuthCookie={self._ticket.ticket}",
            }
            if method != "GET" and self._ticket.csrf_token:
                headers["CSRFPreventionToken"] = self._ticket.csrf_token
            resp = await self.http.send(
                method, f"{API_PREFIX}{path}", headers=headers, data=data
            )
            if resp.status_code == 401 and attempt == 0:
                logger.info("Proxmox ticket rejected, re-authenticating")
                await self._login()
                continue
            break

        self.http.raise_for_status(resp)
        return self.http.parse_object(resp).get("data")

    # ── Resource Fetches ──

    async def get_cluster_resources(self) -> List[Dict[str, Any]]:
        return await self._request("/cluster/resources") or []

    async def get_node_mhz(self, node: str) -> float:
        status = await self._request(f"/nodes/{node}/status") or {}
        return transformer.node_mhz_from_status(status)

    async def get_node_interfaces(self, node: str) -> List[Dict[str, Any]]:
        return await self._request(f"/nodes/{node}/network") or []

    async def _node_tenant(
        self, node: Dict[str, Any], guests: List[Dict[str, Any]], storages: List[Dict[str, Any]]
    ) -> Tuple[TenantAllocation, Tuple[int, int]]:
        name = node.get("node") or ""
        mhz, interfaces = await asyncio.gather(
            fetch_or_default(self.get_node_mhz(name), 0.0, f"Proxmox node {name} status"),
            fetch_or_default(self.get_node_interfaces(name), [], f"Proxmox node {name} network"),
        )
        log_partial(f"Proxmox node {name}", {"status": mhz, "network": interfaces})
        ips = transformer.count_interface_ips(interfaces.value)
        tenant = transformer.map_node_to_tenant(
            node, guests, storages, mhz.value or self.mhz_per_core, allocated_ips=ips[1]
        )
        return tenant, ips

    async def _collect(self) -> Tuple[List[TenantAllocation], List[Dict[str, Any]], Tuple[int, int]]:
        nodes, guests, storages = transformer.split_resources(
            await self.get_cluster_resources()
        )
        results = await asyncio.gather(
            *(self._node_tenant(n, guests, storages) for n in nodes)
        )
        tenants = [t for t, _ in results]
        network = (sum(ips[0] for _, ips in results), sum(ips[1] for _, ips in results))
        return tenants, storages, network

    # ── Capability Contract ──

    async def get_site_summary(self) -> SiteSummary:
        tenants, storages, network = await self._collect()
        return transformer.build_site_summary(
            self.config.site_id, tenants, storages, network
        )

    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        tenants, _, _ = await self._collect()
        return tenants

    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        nodes, guests, storages = transformer.split_resources(
            await self.get_cluster_resources()
        )
        for node in nodes:
            if tenant_id in (node.get("id"), node.get("node")):
                tenant, _ = await self._node_tenant(node, guests, storages)
                return tenant
        return None
