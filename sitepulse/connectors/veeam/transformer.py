"""SitePulse — Veeam ONE Raw → Normalized Transformer."""

from typing import Any, Dict, Iterable, List

from sitepulse.models.resource_models import (
    BackupMetrics,
    BackupRepository,
    BackupSiteSummary,
    PlatformType,
    SiteSummary,
    StorageMetrics,
)

MB_PER_GB = 1024
PROTECTED_STATUSES = ("protected", "success", "ok")


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def unwrap_items(payload: Any) -> List[Dict[str, Any]]:
    """Veeam ONE answers with a bare list or an `items` / `data` envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get("items") or payload.get("data") or []
    return []


def is_protected(vm: Dict[str, Any]) -> bool:
    status = str(vm.get("protectionStatus") or "").lower()
    return vm.get("isProtected") is True or status in PROTECTED_STATUSES


def protected_vm_names(vms: Iterable[Dict[str, Any]]) -> List[str]:
    """Lower-cased names of protected VMs, for case-insensitive matching."""
    return [str(vm["name"]).lower() for vm in vms if vm.get("name") and is_protected(vm)]


def backup_metrics(vms: List[Dict[str, Any]]) -> BackupMetrics:
    protected = sum(1 for vm in vms if is_protected(vm))
    total = len(vms)
    return BackupMetrics(
        protected_vm_count=protected,
        unprotected_vm_count=total - protected,
        total_vm_count=total,
        protection_percentage=round(protected / total * 100) if total else 0,
    )


def map_repository(repo: Dict[str, Any]) -> BackupRepository:
    capacity = _safe_float(repo.get("capacityGB") or repo.get("capacity"))
    used = _safe_float(repo.get("usedSpaceGB") or repo.get("usedSpace"))
    free = _safe_float(repo.get("freeGB") or repo.get("freeSpace")) or max(0.0, capacity - used)
    return BackupRepository(
        id=str(repo.get("id") or repo.get("uid") or ""),
        name=repo.get("name") or "Unknown",
        capacity_gb=capacity,
        used_space_gb=used,
        free_space_gb=free,
        usage_percentage=min(100, round(used / capacity * 100)) if capacity else 0,
    )


def build_backup_summary(
    site_id: str, metrics: BackupMetrics, repositories: List[BackupRepository]
) -> BackupSiteSummary:
    return BackupSiteSummary(
        site_id=site_id,
        backup=metrics,
        repositories=repositories,
        total_repository_capacity_gb=sum(r.capacity_gb for r in repositories),
        total_repository_used_gb=sum(r.used_space_gb for r in repositories),
        total_repository_free_gb=sum(r.free_space_gb for r in repositories),
    )


def to_site_summary(backup: BackupSiteSummary) -> SiteSummary:
    """Repository GB → storage MB. Backup has no compute, network or tenants.

    `running_vms` stays 0: protection status says nothing about power state.
    """
    capacity = backup.total_repository_capacity_gb * MB_PER_GB
    return SiteSummary(
        site_id=backup.site_id,
        platform_type=PlatformType.VEEAM,
        total_tenants=0,
        total_vms=backup.backup.total_vm_count,
        storage=StorageMetrics(
            capacity=capacity,
            limit=capacity,
            used=backup.total_repository_used_gb * MB_PER_GB,
            available=backup.total_repository_free_gb * MB_PER_GB,
        ),
    )
