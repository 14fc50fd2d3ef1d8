"""SitePulse — CloudStack Raw → Normalized Transformer.

CloudStack reports host CPU as cores × clock, utilisation as percentage
strings ("12.5%"), memory and storage in bytes, and project limits in
cores / MB / GB. Everything is converted to MHz and MB here.
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

BYTES_PER_MB = 1024 * 1024
MB_PER_GB = 1024
DEFAULT_TENANT_ID = "default"
DEFAULT_TIER = "default"


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_percent(value: Any) -> float:
    """'12.5%' → 0.125. Missing or malformed values count as zero."""
    if value is None:
        return 0.0
    return _safe_float(str(value).strip().rstrip("%")) / 100


def parse_limit(value: Any) -> Optional[float]:
    """Project limits are numbers or the string 'Unlimited' (→ None)."""
    if value is None or str(value).strip().lower() in ("", "unlimited", "-1"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def bytes_to_mb(value: Any) -> float:
    return round(_safe_float(value) / BYTES_PER_MB)


# ── Site-level aggregation ──


def aggregate_hosts(hosts: Iterable[Dict[str, Any]]) -> Tuple[ResourceMetrics, ResourceMetrics]:
    """Routing hosts → (cpu, memory). Percentages are applied per host."""
    cpu_cap = cpu_alloc = cpu_used = 0.0
    mem_cap = mem_alloc = mem_used = 0.0
    for host in hosts:
        host_cap = _safe_float(host.get("cpunumber")) * _safe_float(host.get("cpuspeed"))
        cpu_cap += host_cap
        cpu_alloc += parse_percent(host.get("cpuallocated")) * host_cap
        cpu_used += parse_percent(host.get("cpuused")) * host_cap
        mem_cap += _safe_float(host.get("memorytotal"))
        mem_alloc += _safe_float(host.get("memoryallocated"))
        mem_used += _safe_float(host.get("memoryused"))

    cpu = ResourceMetrics(
        capacity=round(cpu_cap),
        allocated=round(cpu_alloc),
        used=round(cpu_used),
        available=round(cpu_cap - cpu_alloc),
        units="MHz",
    )
    mem_cap, mem_alloc, mem_used = (bytes_to_mb(v) for v in (mem_cap, mem_alloc, mem_used))
    memory = ResourceMetrics(
        capacity=mem_cap,
        allocated=mem_alloc,
        used=mem_used,
        available=mem_cap - mem_alloc,
        units="MB",
    )
    return cpu, memory


def map_storage_pools(pools: Iterable[Dict[str, Any]]) -> List[StorageTier]:
    """Primary storage pools grouped by their first storage tag."""
    tiers: Dict[str, StorageTier] = {}
    for pool in pools:
        tag = (pool.get("tags") or "").split(",")[0].strip() or DEFAULT_TIER
        if tag not in tiers:
            tiers[tag] = StorageTier(name=tag)
        tier = tiers[tag]
        tier.capacity += bytes_to_mb(pool.get("disksizetotal"))
        tier.used += bytes_to_mb(pool.get("disksizeused"))
        tier.limit = tier.capacity
        tier.available = tier.capacity - tier.used
    return list(tiers.values())


def count_public_ips(ips: Iterable[Dict[str, Any]]) -> NetworkMetrics:
    total = allocated = used = 0
    for ip in ips:
        total += 1
        if ip.get("allocated") or ip.get("state") == "Allocated":
            allocated += 1
        if ip.get("virtualmachineid"):
            used += 1
    return NetworkMetrics(
        total_ips=total, allocated_ips=allocated, used_ips=used, free_ips=total - allocated
    )


def count_vms(vms: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    total = running = 0
    for vm in vms:
        total += 1
        if vm.get("state") == "Running":
            running += 1
    return total, running


def build_site_summary(
    site_id: str,
    hosts: List[Dict[str, Any]],
    vms: List[Dict[str, Any]],
    tiers: List[StorageTier],
    network: NetworkMetrics,
    project_count: int,
) -> SiteSummary:
    cpu, memory = aggregate_hosts(hosts)
    total_vms, running_vms = count_vms(vms)
    capacity = sum(t.capacity for t in tiers)
    used = sum(t.used for t in tiers)
    return SiteSummary(
        site_id=site_id,
        platform_type=PlatformType.CLOUDSTACK,
        total_tenants=project_count or 1,
        total_vms=total_vms,
        running_vms=running_vms,
        cpu=cpu,
        memory=memory,
        storage=StorageMetrics(
            capacity=capacity, limit=capacity, used=used, available=capacity - used
        ),
        storage_tiers=tiers,
        network=network,
    )


# ── Tenants ──


def map_project_to_tenant(
    project: Dict[str, Any], vms: Iterable[Dict[str, Any]], mhz_per_core: float
) -> TenantAllocation:
    """One project plus its VMs → tenant.

    Allocated = what the project has provisioned (cputotal / memorytotal /
    primarystoragetotal); used = what its running VMs consume; capacity = the
    project limit, or the allocation when the project is unlimited.
    """
    cpu_used = mem_used = 0.0
    total = running = 0
    for vm in vms:
        total += 1
        if vm.get("state") == "Running":
            running += 1
            cpu_used += _safe_float(vm.get("cpunumber")) * _safe_float(vm.get("cpuspeed"))
            mem_used += _safe_float(vm.get("memory"))

    cpu_alloc = _safe_float(project.get("cputotal")) * mhz_per_core
    cpu_limit = parse_limit(project.get("cpulimit"))
    cpu_cap = cpu_limit * mhz_per_core if cpu_limit is not None else cpu_alloc

    mem_alloc = _safe_float(project.get("memorytotal"))
    mem_limit = parse_limit(project.get("memorylimit"))
    mem_cap = mem_limit if mem_limit is not None else mem_alloc

    storage_used = _safe_float(project.get("primarystoragetotal")) * MB_PER_GB
    storage_limit = parse_limit(project.get("primarystoragelimit"))
    storage_cap = storage_limit * MB_PER_GB if storage_limit is not None else storage_used

    state = (project.get("state") or "Active").lower()
    return TenantAllocation(
        id=project["id"],
        name=project.get("name") or project.get("displaytext") or "Unknown Project",
        description=project.get("displaytext"),
        status="active" if state == "active" else state,
        cpu=ResourceMetrics(
            capacity=cpu_cap,
            allocated=cpu_alloc,
            used=cpu_used,
            available=cpu_cap - cpu_alloc,
            units="MHz",
        ),
        memory=ResourceMetrics(
            capacity=mem_cap,
            allocated=mem_alloc,
            used=mem_used,
            available=mem_cap - mem_alloc,
            units="MB",
        ),
        storage=StorageMetrics(
            capacity=storage_cap,
            limit=storage_cap,
            used=storage_used,
            available=storage_cap - storage_used,
        ),
        vm_count=total,
        running_vm_count=running,
        allocated_ips=int(_safe_float(project.get("iptotal"))),
        org_name=project.get("account") or project.get("domain"),
        org_full_name=project.get("domain"),
    )


def default_tenant(summary: SiteSummary) -> TenantAllocation:
    """Synthetic tenant mirroring the whole cloud when no projects exist."""
    return TenantAllocation(
        id=DEFAULT_TENANT_ID,
        name="Default Resources",
        status="active",
        cpu=summary.cpu,
        memory=summary.memory,
        storage=summary.storage,
        storage_tiers=summary.storage_tiers,
        vm_count=summary.total_vms,
        running_vm_count=summary.running_vms,
        allocated_ips=summary.network.allocated_ips,
    )
