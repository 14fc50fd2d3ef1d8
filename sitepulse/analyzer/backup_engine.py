"""SitePulse — Backup Coverage by Organization.

Veeam ONE knows which VMs are protected but not who owns them; Cloud
Director knows ownership. VM names are matched case-insensitively and
the result is aggregated per organization across every VDC and site.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sitepulse.connectors.base import fetch_or_default
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.core.logging import get_logger
from sitepulse.models.report_models import BackupByOrgReport, OrgBackupCoverage
from sitepulse.models.resource_models import PlatformType, TenantAllocation

logger = get_logger("analyzer.backup")

# (site_id, tenant, VM names or None when the listing failed)
VdcVms = Tuple[str, TenantAllocation, Optional[List[str]]]


def aggregate_backup_by_org(
    protected_names: Set[str], vdcs: Iterable[VdcVms]
) -> List[OrgBackupCoverage]:
    """Match VDC VM names against protected names, keyed by lower-cased org.

    A VDC whose VM listing failed contributes its tenant vm_count as
    unprotected VMs.
    """
    orgs: Dict[str, OrgBackupCoverage] = {}
    for site_id, tenant, vm_names in vdcs:
        key = (tenant.org_name or tenant.id).lower()
        org = orgs.get(key)
        if org is None:
            org = orgs[key] = OrgBackupCoverage(
                org_name=key, org_full_name=tenant.org_full_name
            )
        if site_id not in org.site_ids:
            org.site_ids.append(site_id)
        org.vdc_count += 1

        if vm_names is None:
            org.total_vms += tenant.vm_count
            continue
        org.total_vms += len(vm_names)
        org.protected_vms += sum(1 for n in vm_names if n.lower() in protected_names)

    for org in orgs.values():
        org.unprotected_vms = org.total_vms - org.protected_vms
        org.protection_percentage = (
            round(org.protected_vms / org.total_vms * 100) if org.total_vms else 0
        )
    return sorted(orgs.values(), key=lambda o: o.org_name)


async def compute_backup_by_org(registry: PlatformRegistry) -> BackupByOrgReport:
    veeam = registry.get_clients_by_type(PlatformType.VEEAM)
    if not veeam:
        return BackupByOrgReport(configured=False)

    name_lists = await asyncio.gather(
        *(
            fetch_or_default(c.get_protected_vm_names(), [], f"Veeam {c.config.site_id} VMs")
            for c in veeam
        )
    )
    protected: Set[str] = {n for r in name_lists for n in r.value}

    vdcs: List[VdcVms] = []
    for client in registry.get_clients_by_type(PlatformType.VCD):
        site_id = client.config.site_id
        tenants = await fetch_or_default(
            client.get_tenant_allocations(), [], f"VCD {site_id} tenants"
        )
        vm_lists = await asyncio.gather(
            *(
                fetch_or_default(client.get_vm_names(t.id), None, f"VDC {t.id} VMs")
                for t in tenants.value
            )
        )
        vdcs.extend((site_id, t, r.value) for t, r in zip(tenants.value, vm_lists))

    organizations = aggregate_backup_by_org(protected, vdcs)
    logger.info(
        f"Backup matching: {len(protected)} protected names, "
        f"{sum(o.total_vms for o in organizations)} VMs checked, "
        f"{len(organizations)} organizations"
    )
    return BackupByOrgReport(
        configured=True, protected_vm_names=len(protected), organizations=organizations
    )
