"""SitePulse — Proxmox Raw → Normalized Transformer.

`/cluster/resources` is a flat list of typed entries (node, qemu, lxc,
storage). Nodes become tenants; guests and storages are attributed to the
node they report.
"""

from typing import Any, Dict, Iterable, List, Tuple

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
GUEST_TYPES = ("qemu", "lxc")


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def bytes_to_mb(value: Any) -> float:
    return round(_safe_float(value) / BYTES_PER_MB)


def split_resources(
    resources: Iterable[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Partition cluster resources into (nodes, guests, storages)."""
    nodes, guests, storages = [], [], []
    for r in resources:
        kind = r.get("type")
        if kind == "node":
            nodes.append(r)
        elif kind in GUEST_TYPES:
            guests.append(r)
        elif kind == "storage":
            storages.append(r)
    return nodes, guests, storages


def node_mhz_from_status(status: Dict[str, Any]) -> float:
    """Clock speed from /nodes/{node}/status, 0 when not reported."""
    return _safe_float((status.get("cpuinfo") or {}).get("mhz"))


def count_interface_ips(interfaces: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """(configured, active) addresses across a node's interfaces."""
    configured = active = 0
    for iface in interfaces:
        if iface.get("address"):
            configured += 1
            if iface.get("active"):
                active += 1
    return configured, active


def _storage_tier(entries: Iterable[Dict[str, Any]], name: str) -> StorageTier:
    capacity = sum(bytes_to_mb(s.get("maxdisk")) for s in entries)
    used = sum(bytes_to_mb(s.get("disk")) for s in entries)
    return StorageTier(
        name=name, capacity=capacity, limit=capacity, used=used, available=capacity - used
    )


def _is_shared(storage: Dict[str, Any]) -> bool:
    return storage.get("shared") in (1, True, "1")


# ── Tenants ──


def map_node_to_tenant(
    node: Dict[str, Any],
    guests: Iterable[Dict[str, Any]],
    storages: Iterable[Dict[str, Any]],
    mhz_per_core: float,
    allocated_ips: int = 0,
) -> TenantAllocation:
    """One cluster node with its guests and local view of storage."""
    name = node.get("node") or node.get("id") or "unknown"
    node_guests = [g for g in guests if g.get("node") == name]
    node_storages = [s for s in storages if s.get("node") == name]

    cores = _safe_float(node.get("maxcpu"))
    cpu_cap = cores * mhz_per_core
    cpu_alloc = sum(_safe_float(g.get("maxcpu")) * mhz_per_core for g in node_guests)
    mem_cap = bytes_to_mb(node.get("maxmem"))
    mem_alloc = sum(bytes_to_mb(g.get("maxmem")) for g in node_guests)

    tiers = [_storage_tier([s], s.get("storage") or "unknown") for s in node_storages]
    storage_cap = sum(t.capacity for t in tiers)
    storage_used = sum(t.used for t in tiers)

    status = node.get("status") or "online"
    return TenantAllocation(
        id=node.get("id") or f"node/{name}",
        name=name,
        status="active" if status == "online" else status,
        cpu=ResourceMetrics(
            capacity=round(cpu_cap),
            allocated=round(cpu_alloc),
            used=round(_safe_float(node.get("cpu")) * cpu_cap),
            available=round(cpu_cap - cpu_alloc),
            units="MHz",
        ),
        memory=ResourceMetrics(
            capacity=mem_cap,
            allocated=mem_alloc,
            used=bytes_to_mb(node.get("mem")),
            available=mem_cap - mem_alloc,
            units="MB",
        ),
        storage=StorageMetrics(
            capacity=storage_cap,
            limit=storage_cap,
            used=storage_used,
            available=storage_cap - storage_used,
        ),
        storage_tiers=tiers,
        vm_count=len(node_guests),
        running_vm_count=sum(1 for g in node_guests if g.get("status") == "running"),
        allocated_ips=allocated_ips,
    )


# ── Site ──


def site_storage_tiers(storages: Iterable[Dict[str, Any]]) -> List[StorageTier]:
    """One tier per storage name. Shared storage appears on every node but
    is counted once; local storages of the same name are summed."""
    by_name: Dict[str, List[Dict[str, Any]]] = {}
    for s in storages:
        name = s.get("storage") or "unknown"
        entries = by_name.setdefault(name, [])
        if _is_shared(s) and entries:
            continue
        entries.append(s)
    return [_storage_tier(entries, name) for name, entries in by_name.items()]


def build_site_summary(
    site_id: str,
    tenants: List[TenantAllocation],
    storages: List[Dict[str, Any]],
    network: Tuple[int, int],
) -> SiteSummary:
    tiers = site_storage_tiers(storages)
    capacity = sum(t.capacity for t in tiers)
    used = sum(t.used for t in tiers)

    cpu_cap = sum(t.cpu.capacity for t in tenants)
    cpu_alloc = sum(t.cpu.allocated for t in tenants)
    mem_cap = sum(t.memory.capacity for t in tenants)
    mem_alloc = sum(t.memory.allocated for t in tenants)

    total_ips, active_ips = network
    return SiteSummary(
        site_id=site_id,
        platform_type=PlatformType.PROXMOX,
        total_tenants=len(tenants),
        total_vms=sum(t.vm_count for t in tenants),
        running_vms=sum(t.running_vm_count for t in tenants),
        cpu=ResourceMetrics(
            capacity=cpu_cap,
            allocated=cpu_alloc,
            used=sum(t.cpu.used for t in tenants),
            available=cpu_cap - cpu_alloc,
            units="MHz",
        ),
        memory=ResourceMetrics(
            capacity=mem_cap,
            allocated=mem_alloc,
            used=sum(t.memory.used for t in tenants),
            available=mem_cap - mem_alloc,
            units="MB",
        ),
        storage=StorageMetrics(
            capacity=capacity, limit=capacity, used=used, available=capacity - used
        ),
        storage_tiers=tiers,
        network=NetworkMetrics(
            total_ips=total_ips,
            allocated_ips=active_ips,
            used_ips=active_ips,
            free_ips=total_ips - active_ips,
        ),
    )
