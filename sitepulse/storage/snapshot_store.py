"""SitePulse — Snapshot Store.

Append-only writes of poll cycles, the retention pruner, and the read
queries the API and reports need.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import SiteSummary, TenantAllocation
from sitepulse.models.snapshot_models import SitePollSnapshot, TenantPollSnapshot

logger = get_logger("storage")


class SnapshotWriteError(Exception):
    """A poll cycle could not be persisted."""


class SnapshotStore:
    """Reads and writes snapshot rows through short-lived sessions."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ── Writes ──

    def save_site_snapshot(
        self,
        summary: SiteSummary,
        tenants: List[TenantAllocation],
        polled_at: datetime,
    ) -> int:
        """Insert one site row and its tenant batch in a single transaction.

        The tenant batch is skipped when there are no tenants. Returns the
        number of tenant rows written.
        """
        platform = summary.platform_type.value
        try:
            with self._session_factory() as session:
                session.add(SitePollSnapshot.from_summary(summary, polled_at))
                if tenants:
                    session.add_all(
                        TenantPollSnapshot.from_tenant(t, summary.site_id, platform, polled_at)
                        for t in tenants
                    )
                session.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Snapshot write failed: {e}",
                extra={"site_id": summary.site_id, "platform_type": platform},
            )
            raise SnapshotWriteError(
                f"Failed to store snapshot for {platform}:{summary.site_id}: {e}"
            ) from e
        return len(tenants)

    def prune_snapshots(self, cutoff: datetime) -> Tuple[int, int]:
        """Delete site and tenant rows polled strictly before `cutoff`."""
        with self._session_factory() as session:
            conn = session.connection()
            sites = conn.execute(
                delete(SitePollSnapshot).where(SitePollSnapshot.polled_at < cutoff)
            )
            tenants = conn.execute(
                delete(TenantPollSnapshot).where(TenantPollSnapshot.polled_at < cutoff)
            )
            session.commit()
            return sites.rowcount or 0, tenants.rowcount or 0

    # ── Reads ──

    def get_last_poll_time(self) -> Optional[datetime]:
        with self._session_factory() as session:
            return session.exec(select(func.max(SitePollSnapshot.polled_at))).first()

    def get_latest_site_snapshot(self, site_id: str) -> Optional[SitePollSnapshot]:
        with self._session_factory() as session:
            return session.exec(
                select(SitePollSnapshot)
                .where(SitePollSnapshot.site_id == site_id)
                .order_by(SitePollSnapshot.polled_at.desc(), SitePollSnapshot.id.desc())
                .limit(1)
            ).first()

    def get_latest_tenant_snapshots(self, site_id: str) -> List[TenantPollSnapshot]:
        """Tenant rows of the site's most recent cycle."""
        with self._session_factory() as session:
            latest = session.exec(
                select(func.max(TenantPollSnapshot.polled_at)).where(
                    TenantPollSnapshot.site_id == site_id
                )
            ).first()
            if latest is None:
                return []
            return list(
                session.exec(
                    select(TenantPollSnapshot)
                    .where(TenantPollSnapshot.site_id == site_id)
                    .where(TenantPollSnapshot.polled_at == latest)
                    .order_by(TenantPollSnapshot.tenant_name)
                ).all()
            )

    def get_tenant_snapshots_between(
        self,
        start: datetime,
        end: datetime,
        site_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[TenantPollSnapshot]:
        """Tenant rows with start <= polled_at < end, oldest first."""
        with self._session_factory() as session:
            return get_tenant_snapshots_between(session, start, end, site_id, tenant_id)

    def get_available_months(self) -> List[Tuple[int, int]]:
        with self._session_factory() as session:
            return get_available_months(session)


# ── Session-level queries (shared with the report routes) ──


def get_tenant_snapshots_between(
    session: Session,
    start: datetime,
    end: datetime,
    site_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> List[TenantPollSnapshot]:
    query = (
        select(TenantPollSnapshot)
        .where(TenantPollSnapshot.polled_at >= start)
        .where(TenantPollSnapshot.polled_at < end)
    )
    if site_id:
        query = query.where(TenantPollSnapshot.site_id == site_id)
    if tenant_id:
        query = query.where(TenantPollSnapshot.tenant_id == tenant_id)
    return list(session.exec(query.order_by(TenantPollSnapshot.polled_at)).all())


def get_available_months(session: Session) -> List[Tuple[int, int]]:
    """Distinct (year, month) pairs that have tenant data, newest first."""
    stamps = session.exec(select(TenantPollSnapshot.polled_at).distinct()).all()
    return sorted({(ts.year, ts.month) for ts in stamps}, reverse=True)
