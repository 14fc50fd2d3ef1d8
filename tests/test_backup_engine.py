from conftest import FakePlatformClient, make_config, make_tenant
from sitepulse.analyzer.backup_engine import aggregate_backup_by_org, compute_backup_by_org
from sitepulse.connectors.errors import PlatformAPIError
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.models.resource_models import PlatformType


class FakeVeeam(FakePlatformClient):
    def __init__(self, config, names):
        super().__init__(config, tenants=[])
        self.names = names

    async def get_protected_vm_names(self):
        return list(self.names)


class FakeVcd(FakePlatformClient):
    def __init__(self, config, tenants, vms):
        super().__init__(config, tenants=tenants)
        self.vms = vms

    async def get_vm_names(self, vdc_id):
        names = self.vms[vdc_id]
        if isinstance(names, Exception):
            raise names
        return names


def registry_with(*clients) -> PlatformRegistry:
    registry = PlatformRegistry()
    for client in clients:
        registry._clients[client.config.composite_id] = client
    return registry


def test_names_match_case_insensitively_and_orgs_merge():
    vdcs = [
        ("s1", make_tenant("v1", org_name="Acme", org_full_name="Acme Corp"), ["WEB01", "db01"]),
        ("s2", make_tenant("v2", org_name="acme"), ["cache01"]),
        ("s1", make_tenant("v3", org_name="globex"), ["app"]),
    ]
    orgs = aggregate_backup_by_org({"web01", "db01", "app"}, vdcs)

    acme, globex = orgs
    assert acme.org_name == "acme"
    assert acme.org_full_name == "Acme Corp"
    assert acme.site_ids == ["s1", "s2"]
    assert acme.vdc_count == 2
    assert (acme.total_vms, acme.protected_vms, acme.unprotected_vms) == (3, 2, 1)
    assert acme.protection_percentage == 67
    assert globex.protection_percentage == 100


def test_failed_vm_listing_counts_tenant_vms_as_unprotected():
    tenant = make_tenant("v1", org_name="acme", vm_count=4)
    (org,) = aggregate_backup_by_org({"x"}, [("s1", tenant, None)])
    assert (org.total_vms, org.protected_vms, org.unprotected_vms) == (4, 0, 4)


def test_tenant_without_org_is_keyed_by_tenant_id():
    (org,) = aggregate_backup_by_org(set(), [("s1", make_tenant("VDC-9"), [])])
    assert org.org_name == "vdc-9"
    assert org.protection_percentage == 0


async def test_report_without_backup_sites_is_not_configured():
    vcd = FakeVcd(make_config(PlatformType.VCD), [make_tenant("v1")], {"v1": ["a"]})
    report = await compute_backup_by_org(registry_with(vcd))
    assert report.configured is False
    assert report.organizations == []


async def test_report_joins_backup_names_with_cloud_director_vms():
    veeam = FakeVeeam(make_config(PlatformType.VEEAM, site_id="bk"), ["web01", "db01"])
    vcd = FakeVcd(
        make_config(PlatformType.VCD, site_id="dc1"),
        [make_tenant("v1", org_name="acme"), make_tenant("v2", org_name="globex", vm_count=2)],
        {"v1": ["Web01", "scratch"], "v2": PlatformAPIError("denied", "vcd", 403)},
    )
    report = await compute_backup_by_org(registry_with(veeam, vcd))

    assert report.configured is True
    assert report.protected_vm_names == 2
    by_org = {o.org_name: o for o in report.organizations}
    assert by_org["acme"].protected_vms == 1
    assert by_org["acme"].total_vms == 2
    assert by_org["globex"].unprotected_vms == 2
