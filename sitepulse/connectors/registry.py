"""SitePulse — Platform Adapter Registry.

Maps `platform_type:site_id` to one live adapter instance. Sites come from
environment variable groups and from persisted site records; replacing a
site always builds a fresh adapter so sessions are never carried over.
"""

import asyncio
import os
from typing import Dict, Iterable, List, Mapping, Optional, Set

import httpx

from sitepulse.connectors.base import PlatformClient
from sitepulse.connectors.cloudstack.client import CloudStackClient
from sitepulse.connectors.proxmox.client import ProxmoxClient
from sitepulse.connectors.vcd.client import VcdClient
from sitepulse.connectors.veeam.client import VeeamOneClient
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import PlatformType, SiteConfig, SiteInfo

logger = get_logger("registry")

ENV_PREFIXES: Dict[PlatformType, str] = {
    PlatformType.VCD: "VCD",
    PlatformType.CLOUDSTACK: "CLOUDSTACK",
    PlatformType.PROXMOX: "PROXMOX",
    PlatformType.VEEAM: "VEEAM",
}

_CLIENT_CLASSES = {
    PlatformType.VCD: VcdClient,
    PlatformType.CLOUDSTACK: CloudStackClient,
    PlatformType.PROXMOX: ProxmoxClient,
    PlatformType.VEEAM: VeeamOneClient,
}


def create_platform_client(
    config: SiteConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> PlatformClient:
    """Build the adapter for the config's platform tag."""
    cls = _CLIENT_CLASSES.get(config.platform_type)
    if cls is None:
        raise ValueError(f"Unknown platform type: {config.platform_type}")
    return cls(config, transport=transport)


def missing_credentials(config: SiteConfig) -> Optional[str]:
    """Describe what the platform needs but the config lacks, or None."""
    if not config.url:
        return "URL"
    if config.platform_type == PlatformType.CLOUDSTACK:
        if not config.api_key or not config.secret_key:
            return "API key/secret"
    elif not config.username or not config.password:
        return "username/password"
    return None


def site_configs_from_env(
    platform_type: PlatformType, environ: Mapping[str, str]
) -> List[SiteConfig]:
    """Read `{PREFIX}_SITES` and the `{PREFIX}_{SITEID}_*` group of each site."""
    prefix = ENV_PREFIXES[platform_type]
    site_ids = [s.strip() for s in environ.get(f"{prefix}_SITES", "").split(",") if s.strip()]
    if not site_ids:
        logger.info(f"No {prefix} sites configured")
        return []

    configs = []
    for site_id in site_ids:

        def env(key: str) -> Optional[str]:
            return environ.get(f"{prefix}_{site_id.upper()}_{key}") or None

        config = SiteConfig(
            site_id=site_id,
            platform_type=platform_type,
            name=env("NAME") or site_id,
            location=env("LOCATION") or "Unknown",
            url=env("URL") or "",
            username=env("USERNAME") or "",
            password=env("PASSWORD") or "",
            org=env("ORG"),
            api_key=env("API_KEY"),
            secret_key=env("SECRET_KEY"),
            realm=env("REALM"),
        )
        missing = missing_credentials(config)
        if missing:
            logger.warning(
                f"Missing {missing} for {platform_type.value} site {site_id}. Skipping.",
                extra={"site_id": site_id, "platform_type": platform_type.value},
            )
            continue
        configs.append(config)
    return configs


class PlatformRegistry:
    """Live adapters keyed by composite id."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._clients: Dict[str, PlatformClient] = {}
        self._transport = transport
        self._closing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._clients)

    # ── Population ──

    def initialize_from_env(self, environ: Optional[Mapping[str, str]] = None) -> int:
        """Register every valid env-configured site. Returns how many were added."""
        environ = os.environ if environ is None else environ
        added = 0
        for platform_type in ENV_PREFIXES:
            for config in site_configs_from_env(platform_type, environ):
                if self.add_site_from_config(config):
                    added += 1
        return added

    def initialize_from_configs(self, configs: Iterable[SiteConfig]) -> int:
        configs = list(configs)
        logger.info(f"Loading {len(configs)} sites from database")
        return sum(1 for c in configs if self.add_site_from_config(c))

    def add_site_from_config(self, config: SiteConfig) -> Optional[PlatformClient]:
        """Create (or replace) the adapter for one site.

        A disabled record removes any adapter registered under its key.
        """
        key = config.composite_id
        if not config.is_enabled:
            logger.info(f"Site {key} is disabled. Skipping.")
            self._retire(self._clients.pop(key, None))
            return None

        try:
            client = create_platform_client(config, transport=self._transport)
        except ValueError as e:
            logger.error(f"Failed to create client for {key}: {e}")
            return None

        old = self._clients.get(key)
        if old is not None:
            logger.info(f"Site {key} already registered. Replacing adapter.")
            self._retire(old)
        self._clients[key] = client
        logger.info(
            f"Registered {config.platform_type.value} client for site {config.site_id}",
            extra={"site_id": config.site_id, "platform_type": config.platform_type.value},
        )
        return client

    def remove_site(self, site_id: str, platform_type: PlatformType) -> bool:
        client = self._clients.pop(f"{platform_type.value}:{site_id}", None)
        if client is None:
            return False
        self._retire(client)
        logger.info(f"Removed {platform_type.value} client for site {site_id}")
        return True

    def _retire(self, client: Optional[PlatformClient]) -> None:
        """Close a replaced adapter in the background when a loop is running."""
        if client is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(client.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # ── Lookup ──

    def get_all_clients(self) -> Dict[str, PlatformClient]:
        return dict(self._clients)

    def get_clients_by_type(self, platform_type: PlatformType) -> List[PlatformClient]:
        return [
            c for key, c in self._clients.items() if key.startswith(f"{platform_type.value}:")
        ]

    def get_client(self, composite_id: str) -> Optional[PlatformClient]:
        return self._clients.get(composite_id)

    def get_client_by_site_id(self, site_id: str) -> Optional[PlatformClient]:
        """First adapter whose site id matches, across every platform."""
        for key, client in self._clients.items():
            if key.split(":", 1)[1] == site_id:
                return client
        return None

    def get_all_sites(self) -> List[SiteInfo]:
        return [c.site_info() for c in self._clients.values()]

    async def close_all(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        await asyncio.gather(*(c.close() for c in clients), return_exceptions=True)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
