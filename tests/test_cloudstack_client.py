import base64
import hashlib
import hmac

import httpx
import pytest

from conftest import make_config, mock_transport, no_retry_delay
from sitepulse.connectors.cloudstack.client import CloudStackClient, sign_request
from sitepulse.connectors.cloudstack.transformer import parse_limit, parse_percent
from sitepulse.connectors.errors import AuthError
from sitepulse.models.resource_models import PlatformType

API_KEY = "key-ABC"
SECRET = "s3cr3t"

GiB = 1024 ** 3


def _expected(payload: str, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def test_signature_is_independent_of_parameter_order():
    a = sign_request({"command": "listZones", "apikey": API_KEY, "response": "json"}, SECRET)
    b = sign_request({"response": "json", "apikey": API_KEY, "command": "listZones"}, SECRET)
    assert a == b
    assert a == _expected(f"apikey={API_KEY}&command=listZones&response=json")


def test_signature_lowercases_keys_but_keeps_value_case():
    sig = sign_request({"Name": "My VM", "command": "listVirtualMachines"}, SECRET)
    assert sig == _expected("command=listVirtualMachines&name=My%20VM")


def test_percent_and_limit_parsing():
    assert parse_percent("12.5%") == pytest.approx(0.125)
    assert parse_percent(None) == 0
    assert parse_percent("garbage") == 0
    assert parse_limit("Unlimited") is None
    assert parse_limit("-1") is None
    assert parse_limit("8") == 8.0


class FakeCloudStack:
    def __init__(self, projects=None, status=200):
        self.projects = projects if projects is not None else []
        self.status = status
        self.commands = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        signature = params.pop("signature")
        if self.status != 200:
            return httpx.Response(self.status, json={"errorresponse": {"errortext": "denied"}})
        assert params["apikey"] == API_KEY
        assert params["response"] == "json"
        assert sign_request(params, SECRET) == signature

        command = params["command"]
        self.commands.append(command)
        if command == "listZones":
            return httpx.Response(200, json={"listzonesresponse": {"count": 1, "zone": [{"id": "z1"}]}})
        if command == "listHosts":
            hosts = [
                {
                    "cpunumber": 4,
                    "cpuspeed": 2000,
                    "cpuallocated": "50%",
                    "cpuused": "25%",
                    "memorytotal": 16 * GiB,
                    "memoryallocated": 8 * GiB,
                    "memoryused": 4 * GiB,
                },
                {
                    "cpunumber": 2,
                    "cpuspeed": 1000,
                    "cpuallocated": "10%",
                    "cpuused": "5%",
                    "memorytotal": 8 * GiB,
                    "memoryallocated": 0,
                    "memoryused": 1 * GiB,
                },
            ]
            return httpx.Response(200, json={"listhostsresponse": {"count": 2, "host": hosts}})
        if command == "listStoragePools":
            pools = [
                {"tags": "ssd", "disksizetotal": 100 * GiB, "disksizeused": 40 * GiB},
                {"tags": "ssd,fast", "disksizetotal": 100 * GiB, "disksizeused": 10 * GiB},
                {"disksizetotal": 50 * GiB, "disksizeused": 5 * GiB},
            ]
            return httpx.Response(
                200, json={"liststoragepoolsresponse": {"count": 3, "storagepool": pools}}
            )
        if command == "listPublicIpAddresses":
            ips = [
                {"ipaddress": "1.1.1.1", "allocated": "2024-01-01", "virtualmachineid": "vm1"},
                {"ipaddress": "1.1.1.2", "allocated": "2024-01-01"},
                {"ipaddress": "1.1.1.3"},
            ]
            return httpx.Response(
                200, json={"listpublicipaddressesresponse": {"count": 3, "publicipaddress": ips}}
            )
        if command == "listVirtualMachines":
            vms = [
                {"id": "vm1", "state": "Running", "cpunumber": 2, "cpuspeed": 1000, "memory": 2048},
                {"id": "vm2", "state": "Stopped", "cpunumber": 4, "cpuspeed": 1000, "memory": 4096},
            ]
            return httpx.Response(
                200, json={"listvirtualmachinesresponse": {"count": 2, "virtualmachine": vms}}
            )
        if command == "listProjects":
            if "id" in params:
                if params["id"] == "bad-uuid":
                    return httpx.Response(431, json={"listprojectsresponse": {"errortext": "invalid"}})
                found = [p for p in self.projects if p["id"] == params["id"]]
                body = {"count": len(found), "project": found} if found else {}
                return httpx.Response(200, json={"listprojectsresponse": body})
            return httpx.Response(
                200,
                json={"listprojectsresponse": {"count": len(self.projects), "project": self.projects}},
            )
        return httpx.Response(431, json={})


def make_client(fake: FakeCloudStack) -> CloudStackClient:
    config = make_config(PlatformType.CLOUDSTACK, api_key=API_KEY, secret_key=SECRET)
    client = CloudStackClient(config, transport=mock_transport(fake.handler))
    no_retry_delay(client)
    return client


PROJECT = {
    "id": "p1",
    "name": "proj-one",
    "displaytext": "Project One",
    "state": "Active",
    "account": "acme",
    "cputotal": 4,
    "cpulimit": "Unlimited",
    "memorytotal": 6144,
    "memorylimit": "16384",
    "primarystoragetotal": 100,
    "primarystoragelimit": "200",
    "iptotal": 2,
}


async def test_site_summary_applies_percentages_per_host():
    client = make_client(FakeCloudStack(projects=[PROJECT]))
    summary = await client.get_site_summary()

    assert summary.platform_type == PlatformType.CLOUDSTACK
    assert summary.cpu.capacity == 10000
    assert summary.cpu.allocated == 4200
    assert summary.cpu.used == 2100
    assert summary.memory.capacity == 24 * 1024
    assert summary.memory.used == 5 * 1024
    assert summary.storage.capacity == 250 * 1024
    assert {t.name: t.used for t in summary.storage_tiers} == {"ssd": 50 * 1024, "default": 5 * 1024}
    assert summary.network.total_ips == 3
    assert summary.network.allocated_ips == 2
    assert summary.network.used_ips == 1
    assert (summary.total_vms, summary.running_vms) == (2, 1)
    assert summary.total_tenants == 1
    await client.close()


async def test_projects_become_tenants():
    client = make_client(FakeCloudStack(projects=[PROJECT]))
    tenants = await client.get_tenant_allocations()

    assert len(tenants) == 1
    t = tenants[0]
    assert t.id == "p1"
    assert t.status == "active"
    assert t.cpu.allocated == 4000
    assert t.cpu.capacity == 4000  # unlimited falls back to the allocation
    assert t.cpu.used == 2000
    assert t.memory.capacity == 16384
    assert t.memory.used == 2048
    assert t.storage.used == 100 * 1024
    assert t.storage.limit == 200 * 1024
    assert (t.vm_count, t.running_vm_count) == (2, 1)
    assert t.allocated_ips == 2
    assert t.org_name == "acme"
    await client.close()


async def test_no_projects_synthesizes_default_tenant():
    client = make_client(FakeCloudStack(projects=[]))
    tenants = await client.get_tenant_allocations()

    assert [t.id for t in tenants] == ["default"]
    assert tenants[0].cpu.capacity == 10000
    assert tenants[0].vm_count == 2
    await client.close()


async def test_missing_project_returns_none():
    client = make_client(FakeCloudStack(projects=[PROJECT]))
    assert await client.get_tenant_allocation("p404") is None
    assert await client.get_tenant_allocation("bad-uuid") is None
    found = await client.get_tenant_allocation("p1")
    assert found is not None and found.name == "proj-one"
    await client.close()


async def test_rejected_signature_raises_auth_error():
    client = make_client(FakeCloudStack(status=401))
    with pytest.raises(AuthError):
        await client.authenticate()
    assert await client.test_connection() is False
    await client.close()


async def test_failed_public_ip_listing_is_partial_not_fatal():
    fake = FakeCloudStack(projects=[PROJECT])
    original = fake.handler

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("command") == "listPublicIpAddresses":
            return httpx.Response(503)
        return original(request)

    client = CloudStackClient(
        make_config(PlatformType.CLOUDSTACK, api_key=API_KEY, secret_key=SECRET),
        transport=mock_transport(handler),
    )
    no_retry_delay(client)
    summary = await client.get_site_summary()
    assert summary.network.total_ips == 0
    assert summary.cpu.capacity == 10000
    await client.close()
