import httpx
import pytest

from conftest import make_config, mock_transport, no_retry_delay
from sitepulse.connectors.errors import AuthError, PlatformAPIError
from sitepulse.connectors.veeam.client import VeeamOneClient
from sitepulse.connectors.veeam.transformer import is_protected, unwrap_items
from sitepulse.models.resource_models import PlatformType


class FakeVeeam:
    def __init__(self, expires_in=3600, refresh_ok=True):
        self.expires_in = expires_in
        self.refresh_ok = refresh_ok
        self.grants = []
        self.repo_status = 200
        self.token_body = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/token":
            form = dict(httpx.QueryParams(request.content.decode()))
            grant = form["grant_type"]
            self.grants.append(grant)
            if grant == "password" and form.get("password") != "secret":
                return httpx.Response(400, json={"error": "invalid_grant"})
            if grant == "refresh_token" and not self.refresh_ok:
                return httpx.Response(400, json={"error": "invalid_grant"})
            if self.token_body is not None:
                return httpx.Response(200, json=self.token_body)
            n = len(self.grants)
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{n}",
                    "refresh_token": f"refresh-{n}",
                    "expires_in": self.expires_in,
                },
            )

        if not request.headers.get("authorization", "").startswith("Bearer access-"):
            return httpx.Response(401)

        if path == "/api/infrastructure/protectedVirtualMachines":
            return httpx.Response(
                200,
                json={"items": [
                    {"name": "Web01", "isProtected": True},
                    {"name": "db01", "protectionStatus": "Success"},
                    {"name": "scratch", "protectionStatus": "Unprotected"},
                ]},
            )
        if path == "/api/backupInfrastructure/repositories":
            if self.repo_status != 200:
                return httpx.Response(self.repo_status)
            return httpx.Response(
                200,
                json={"data": [
                    {"id": "r1", "name": "Primary", "capacityGB": 1000, "usedSpaceGB": 250},
                    {"id": "r2", "name": "Offsite", "capacityGB": 500, "usedSpaceGB": 500, "freeGB": 0},
                ]},
            )
        return httpx.Response(404)


def make_client(fake: FakeVeeam, **overrides) -> VeeamOneClient:
    client = VeeamOneClient(
        make_config(PlatformType.VEEAM, **overrides), transport=mock_transport(fake.handler)
    )
    no_retry_delay(client)
    return client


def test_unwrap_items_accepts_list_and_envelopes():
    assert unwrap_items([{"a": 1}]) == [{"a": 1}]
    assert unwrap_items({"items": [{"a": 1}]}) == [{"a": 1}]
    assert unwrap_items({"data": [{"b": 2}]}) == [{"b": 2}]
    assert unwrap_items(None) == []


def test_protection_flags():
    assert is_protected({"isProtected": True})
    assert is_protected({"protectionStatus": "OK"})
    assert not is_protected({"protectionStatus": "Warning"})


async def test_protected_names_are_lowercased():
    client = make_client(FakeVeeam())
    assert await client.get_protected_vm_names() == ["web01", "db01"]
    await client.close()


async def test_backup_summary():
    client = make_client(FakeVeeam())
    summary = await client.get_backup_summary()

    assert summary.backup.total_vm_count == 3
    assert summary.backup.protected_vm_count == 2
    assert summary.backup.unprotected_vm_count == 1
    assert summary.backup.protection_percentage == 67
    assert summary.total_repository_capacity_gb == 1500
    assert summary.total_repository_used_gb == 750
    assert summary.total_repository_free_gb == 750
    assert [r.usage_percentage for r in summary.repositories] == [25, 100]
    await client.close()


async def test_site_summary_converts_repository_gb_to_mb():
    client = make_client(FakeVeeam())
    summary = await client.get_site_summary()
    assert summary.platform_type == PlatformType.VEEAM
    assert summary.total_tenants == 0
    assert summary.running_vms == 0
    assert summary.total_vms == 3
    assert summary.storage.capacity == 1500 * 1024
    assert await client.get_tenant_allocations() == []
    assert await client.get_tenant_allocation("anything") is None
    await client.close()


async def test_failed_repository_listing_is_partial():
    fake = FakeVeeam()
    fake.repo_status = 500
    client = make_client(fake)
    summary = await client.get_backup_summary()
    assert summary.repositories == []
    assert summary.backup.protected_vm_count == 2
    await client.close()


async def test_bad_credentials_raise_auth_error():
    client = make_client(FakeVeeam(), password="wrong")
    with pytest.raises(AuthError):
        await client.authenticate()
    await client.close()


async def test_token_near_expiry_uses_refresh_grant():
    # expires_in below the refresh margin: every call renews first
    fake = FakeVeeam(expires_in=30)
    client = make_client(fake)
    await client.authenticate()
    await client.authenticate()
    assert fake.grants == ["password", "refresh_token"]
    await client.close()


async def test_rejected_refresh_falls_back_to_password_grant():
    fake = FakeVeeam(expires_in=30, refresh_ok=False)
    client = make_client(fake)
    await client.authenticate()
    await client.authenticate()
    assert fake.grants == ["password", "refresh_token", "password"]
    assert client._token.access_token == "access-3"
    await client.close()


async def test_valid_token_is_reused():
    fake = FakeVeeam()
    client = make_client(fake)
    await client.get_repositories()
    await client.get_protected_vms()
    assert fake.grants == ["password"]
    await client.close()


async def test_non_object_token_body_is_an_api_error():
    fake = FakeVeeam()
    fake.token_body = ["unexpected"]
    client = make_client(fake)
    with pytest.raises(PlatformAPIError):
        await client.authenticate()
    assert await client.test_connection() is False
    await client.close()
