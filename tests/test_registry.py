import asyncio

import pytest

from conftest import make_config
from sitepulse.connectors.cloudstack.client import CloudStackClient
from sitepulse.connectors.registry import (
    PlatformRegistry,
    create_platform_client,
    missing_credentials,
    site_configs_from_env,
)
from sitepulse.connectors.vcd.client import VcdClient
from sitepulse.main import _load_db_sites
from sitepulse.models.config_models import PlatformSite
from sitepulse.models.resource_models import PlatformType

ENV = {
    "VCD_SITES": "dc1, dc2",
    "VCD_DC1_URL": "https://vcd1.example.com",
    "VCD_DC1_USERNAME": "admin",
    "VCD_DC1_PASSWORD": "pw",
    "VCD_DC1_NAME": "Datacenter One",
    "VCD_DC1_LOCATION": "Mumbai",
    # dc2 has no password and is skipped
    "VCD_DC2_URL": "https://vcd2.example.com",
    "VCD_DC2_USERNAME": "admin",
    "CLOUDSTACK_SITES": "cs1",
    "CLOUDSTACK_CS1_URL": "https://cs.example.com",
    "CLOUDSTACK_CS1_API_KEY": "key",
    "CLOUDSTACK_CS1_SECRET_KEY": "secret",
    "PROXMOX_SITES": "dc1",
    "PROXMOX_DC1_URL": "https://pve.example.com:8006",
    "PROXMOX_DC1_USERNAME": "root",
    "PROXMOX_DC1_PASSWORD": "pw",
    "PROXMOX_DC1_REALM": "pve",
}


def test_env_groups_are_parsed_per_site():
    configs = site_configs_from_env(PlatformType.VCD, ENV)
    assert [c.site_id for c in configs] == ["dc1"]
    assert configs[0].name == "Datacenter One"
    assert configs[0].location == "Mumbai"

    proxmox = site_configs_from_env(PlatformType.PROXMOX, ENV)
    assert proxmox[0].realm == "pve"
    assert site_configs_from_env(PlatformType.VEEAM, ENV) == []


def test_missing_credentials_depend_on_platform():
    cs = make_config(PlatformType.CLOUDSTACK, username="", password="")
    assert missing_credentials(cs) == "API key/secret"
    cs_ok = make_config(PlatformType.CLOUDSTACK, api_key="k", secret_key="s")
    assert missing_credentials(cs_ok) is None
    assert missing_credentials(make_config(PlatformType.VCD, password="")) == "username/password"
    assert missing_credentials(make_config(PlatformType.VEEAM, url="")) == "URL"


def test_factory_picks_adapter_by_platform_tag():
    assert isinstance(create_platform_client(make_config(PlatformType.VCD)), VcdClient)
    cs = make_config(PlatformType.CLOUDSTACK, api_key="k", secret_key="s")
    assert isinstance(create_platform_client(cs), CloudStackClient)


def test_same_site_id_on_two_platforms_is_two_entries():
    registry = PlatformRegistry()
    assert registry.initialize_from_env(ENV) == 3

    keys = set(registry.get_all_clients())
    assert keys == {"vcd:dc1", "cloudstack:cs1", "proxmox:dc1"}
    assert len(registry.get_clients_by_type(PlatformType.VCD)) == 1
    assert registry.get_client("proxmox:dc1").platform_type() == PlatformType.PROXMOX
    assert registry.get_client_by_site_id("cs1") is registry.get_client("cloudstack:cs1")
    assert registry.get_client_by_site_id("nope") is None


def test_get_all_sites_describes_each_adapter():
    registry = PlatformRegistry()
    registry.initialize_from_env(ENV)
    sites = {(s.platform_type, s.id): s for s in registry.get_all_sites()}
    assert sites[(PlatformType.VCD, "dc1")].location == "Mumbai"
    assert sites[(PlatformType.CLOUDSTACK, "cs1")].name == "cs1"


async def test_re_adding_a_site_replaces_and_closes_the_old_adapter():
    registry = PlatformRegistry()
    config = make_config(PlatformType.VCD)
    first = registry.add_site_from_config(config)
    closed = []

    async def record_close():
        closed.append(first)

    first.close = record_close
    second = registry.add_site_from_config(config.model_copy(update={"name": "renamed"}))
    await asyncio.sleep(0)

    assert len(registry) == 1
    assert second is not first
    assert registry.get_client("vcd:site1").config.name == "renamed"
    assert closed == [first]
    await registry.close_all()


async def test_disabled_config_removes_existing_adapter():
    registry = PlatformRegistry()
    config = make_config(PlatformType.PROXMOX)
    registry.add_site_from_config(config)

    assert registry.add_site_from_config(config.model_copy(update={"is_enabled": False})) is None
    assert len(registry) == 0
    await registry.close_all()


async def test_remove_site_and_close_all():
    registry = PlatformRegistry()
    registry.add_site_from_config(make_config(PlatformType.VCD, site_id="a"))
    registry.add_site_from_config(make_config(PlatformType.VCD, site_id="b"))

    assert registry.remove_site("a", PlatformType.VCD) is True
    assert registry.remove_site("a", PlatformType.VCD) is False
    await registry.close_all()
    assert len(registry) == 0


def test_initialize_from_configs_counts_enabled_sites():
    registry = PlatformRegistry()
    configs = [
        make_config(PlatformType.VCD, site_id="a"),
        make_config(PlatformType.VCD, site_id="b", is_enabled=False),
    ]
    assert registry.initialize_from_configs(configs) == 1


def test_stored_site_with_unknown_platform_skips_only_itself(session, session_factory):
    session.add_all([
        PlatformSite(site_id="good", platform_type="vcd", name="Good", url="https://good.example.com",
                     username="admin", password="pw"),
        PlatformSite(site_id="bad", platform_type="vcenter", name="Bad", url="https://bad.example.com",
                     username="admin", password="pw"),
    ])
    session.commit()
    registry = PlatformRegistry()

    _load_db_sites(registry, session_factory)

    assert isinstance(registry.get_client("vcd:good"), VcdClient)
    assert len(registry) == 1


@pytest.mark.parametrize("value", ["", " , "])
def test_blank_site_list_yields_nothing(value):
    assert site_configs_from_env(PlatformType.VCD, {"VCD_SITES": value}) == []
