"""SitePulse — VCD Raw → Normalized Transformer.

Pure functions mapping Cloud Director CloudAPI / legacy admin JSON onto the
shared resource model. VCD already reports CPU in MHz and memory / storage
in MB, so no unit conversion happens here.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from sitepulse.models.resource_models import (
    NetworkMetrics,
    PlatformType,
    ResourceMetrics,
    SiteSummary,
    StorageMetrics,
    StorageTier,
    TenantAllocation,
)

VDC_URN_PREFIX = "urn:vcloud:vdc:"
VDC_STATUS_READY = 1


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    return int(_safe_float(value))


def vdc_urn(vdc_id: str) -> str:
    """Accept a bare UUID or a URN and return the URN form."""
    return vdc_id if vdc_id.startswith("urn:") else f"{VDC_URN_PREFIX}{vdc_id}"


def vdc_uuid(vdc_id: str) -> str:
    return vdc_id.rsplit(":", 1)[-1]


# ── Sub-resources ──


def map_storage_profiles(records: Iterable[Dict[str, Any]]) -> List[StorageTier]:
    """adminOrgVdcStorageProfile query records → storage tiers."""
    tiers: List[StorageTier] = []
    for rec in records:
        limit = _safe_float(rec.get("storageLimitMB"))
        used = _safe_float(rec.get("storageUsedMB"))
        tiers.append(
            StorageTier(
                name=rec.get("name") or "Unknown",
                capacity=limit,
                limit=limit,
                used=used,
                available=limit - used,
            )
        )
    return tiers


def count_edge_gateway_ips(gateways: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """Sum (total, used) IP counts across every uplink subnet of the gateways."""
    total = used = 0
    for gw in gateways:
        for uplink in gw.get("edgeGatewayUplinks") or []:
            for subnet in (uplink.get("subnets") or {}).get("values") or []:
                total += _safe_int(subnet.get("totalIpCount"))
                used += _safe_int(subnet.get("usedIpCount"))
    return total, used


def count_external_network_ips(networks: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    total = used = 0
    for net in networks:
        for subnet in (net.get("subnets") or {}).get("values") or []:
            total += _safe_int(subnet.get("totalIpCount"))
            used += _safe_int(subnet.get("usedIpCount"))
    return total, used


def count_vms(records: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """adminVM query records → (total, powered on). vApp templates are skipped."""
    total = running = 0
    for rec in records:
        if rec.get("isVAppTemplate") in (True, "true"):
            continue
        total += 1
        if rec.get("status") == "POWERED_ON":
            running += 1
    return total, running


def parse_provider_capacity(records: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """providerVdc query records → summed capacity in MHz / MB."""
    cap = {"cpu": 0.0, "memory": 0.0, "storage": 0.0}
    for rec in records:
        cap["cpu"] += _safe_float(rec.get("cpuLimitMhz"))
        cap["memory"] += _safe_float(rec.get("memoryLimitMB"))
        cap["storage"] += _safe_float(rec.get("storageLimitMB"))
    return cap


def merge_tiers(tier_lists: Iterable[List[StorageTier]]) -> List[StorageTier]:
    """Sum same-named tiers across tenants, keeping first-seen order."""
    merged: Dict[str, StorageTier] = {}
    for tiers in tier_lists:
        for t in tiers:
            if t.name not in merged:
                merged[t.name] = StorageTier(name=t.name)
            m = merged[t.name]
            m.capacity += t.capacity
            m.limit += t.limit
            m.used += t.used
            m.available = m.limit - m.used
    return list(merged.values())


# ── Tenant ──


def map_vdc_to_tenant(
    vdc_id: str,
    entry: Dict[str, Any],
    details: Dict[str, Any],
    tiers: List[StorageTier],
    allocated_ips: int,
    vm_counts: Tuple[int, int],
    org_display_names: Optional[Dict[str, str]] = None,
) -> TenantAllocation:
    """Combine the CloudAPI VDC entry and its sub-fetches into one tenant.

    `details` may be empty when the admin view could not be fetched; the
    tenant then carries identity and whatever else was available.
    """
    compute = details.get("computeCapacity") or {}
    cpu = compute.get("cpu") or {}
    mem = compute.get("memory") or {}

    cpu_alloc = _safe_float(cpu.get("allocated"))
    cpu_used = _safe_float(cpu.get("used"))
    mem_alloc = _safe_float(mem.get("allocated"))
    mem_used = _safe_float(mem.get("used"))

    storage_limit = sum(t.limit for t in tiers)
    storage_used = sum(t.used for t in tiers)

    if details:
        status = "active" if details.get("status") == VDC_STATUS_READY else "inactive"
    else:
        status = "active" if entry.get("isEnabled", True) else "inactive"

    org = entry.get("org") or {}
    org_name = org.get("name")
    org_full_name = (org_display_names or {}).get(org_name or "", None)

    return TenantAllocation(
        id=vdc_urn(entry.get("id") or vdc_id),
        name=entry.get("name") or details.get("name") or vdc_uuid(vdc_id),
        description=entry.get("description") or details.get("description"),
        status=status,
        cpu=ResourceMetrics(
            capacity=_safe_float(cpu.get("limit")) or cpu_alloc,
            allocated=cpu_alloc,
            used=cpu_used,
            reserved=_safe_float(cpu.get("reserved")),
            available=cpu_alloc - cpu_used,
            units="MHz",
        ),
        memory=ResourceMetrics(
            capacity=_safe_float(mem.get("limit")) or mem_alloc,
            allocated=mem_alloc,
            used=mem_used,
            reserved=_safe_float(mem.get("reserved")),
            available=mem_alloc - mem_used,
            units="MB",
        ),
        storage=StorageMetrics(
            capacity=storage_limit,
            limit=storage_limit,
            used=storage_used,
            available=storage_limit - storage_used,
        ),
        storage_tiers=tiers,
        vm_count=vm_counts[0],
        running_vm_count=vm_counts[1],
        allocated_ips=allocated_ips,
        org_name=org_name,
        org_full_name=org_full_name or org_name,
    )


# ── Site ──


def build_site_summary(
    site_id: str,
    tenants: List[TenantAllocation],
    provider_capacity: Dict[str, float],
    external_ips: Tuple[int, int],
) -> SiteSummary:
    """Aggregate tenant allocations; provider VDC limits are the site capacity."""
    cpu_alloc = sum(t.cpu.allocated for t in tenants)
    cpu_used = sum(t.cpu.used for t in tenants)
    cpu_reserved = sum(t.cpu.reserved or 0 for t in tenants)
    mem_alloc = sum(t.memory.allocated for t in tenants)
    mem_used = sum(t.memory.used for t in tenants)
    mem_reserved = sum(t.memory.reserved or 0 for t in tenants)
    storage_limit = sum(t.storage.limit for t in tenants)
    storage_used = sum(t.storage.used for t in tenants)

    cpu_capacity = provider_capacity.get("cpu") or cpu_alloc
    mem_capacity = provider_capacity.get("memory") or mem_alloc
    storage_capacity = provider_capacity.get("storage") or storage_limit

    tenant_ips = sum(t.allocated_ips for t in tenants)
    total_ips, used_ips = external_ips
    if not total_ips:
        total_ips, used_ips = tenant_ips, tenant_ips

    return SiteSummary(
        site_id=site_id,
        platform_type=PlatformType.VCD,
        total_tenants=len(tenants),
        total_vms=sum(t.vm_count for t in tenants),
        running_vms=sum(t.running_vm_count for t in tenants),
        cpu=ResourceMetrics(
            capacity=cpu_capacity,
            allocated=cpu_alloc,
            used=cpu_used,
            reserved=cpu_reserved,
            available=cpu_capacity - cpu_alloc,
            units="MHz",
        ),
        memory=ResourceMetrics(
            capacity=mem_capacity,
            allocated=mem_alloc,
            used=mem_used,
            reserved=mem_reserved,
            available=mem_capacity - mem_alloc,
            units="MB",
        ),
        storage=StorageMetrics(
            capacity=storage_capacity,
            limit=storage_limit,
            used=storage_used,
            available=storage_capacity - storage_used,
        ),
        storage_tiers=merge_tiers(t.storage_tiers for t in tenants),
        network=NetworkMetrics(
            total_ips=total_ips,
            allocated_ips=tenant_ips,
            used_ips=used_ips,
            free_ips=total_ips - tenant_ips,
        ),
    )
