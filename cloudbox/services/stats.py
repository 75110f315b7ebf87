from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from cloudbox.models import FileRecord, SubscriptionRecord, SubscriptionStatus

GIB = 1024 * 1024 * 1024
FREE_PLAN = "free"
UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    id: str
    name: str
    monthly_price: int
    storage_limit: int
    file_upload_limit: int

    def to_public(self) -> dict:
        data = asdict(self)
        return {
            "id": data["id"],
            "name": data["name"],
            "monthlyPrice": data["monthly_price"],
            "storageLimit": data["storage_limit"],
            "fileUploadLimit": data["file_upload_limit"],
        }


PLAN_CATALOGUE: dict[str, PlanLimits] = {
    plan.id: plan
    for plan in (
        PlanLimits(FREE_PLAN, "Free", 0, 10 * GIB, 100 * 1024 * 1024),
        PlanLimits("basic", "Basic", 5, 50 * GIB, 2 * GIB),
        PlanLimits("pro", "Pro", 15, 1024 * GIB, 10 * GIB),
        PlanLimits("enterprise", "Enterprise", 50, 10 * 1024 * GIB, UNLIMITED),
    )
}


def effective_plan_id(record: Optional[SubscriptionRecord]) -> str:
    # Missing and canceled subscriptions read as the free tier; "free" is never stored.
    if record is None or record.status == SubscriptionStatus.CANCELED.value:
        return FREE_PLAN
    return record.plan_id if record.plan_id in PLAN_CATALOGUE else FREE_PLAN


def plan_limits(plan_id: Optional[str]) -> PlanLimits:
    return PLAN_CATALOGUE.get((plan_id or "").lower(), PLAN_CATALOGUE[FREE_PLAN])


def fetch_storage_totals(session: Session, owner_id: str) -> dict[str, int]:
    """Count files and bytes owned by ``owner_id``, trashed files included."""
    owned = FileRecord.owner_id == owner_id
    total_files = session.exec(select(func.count(FileRecord.id)).where(owned)).one()
    total_bytes = session.exec(select(func.coalesce(func.sum(FileRecord.size), 0)).where(owned)).one()

    return {
        "total_files": int(total_files or 0),
        "total_bytes": int(total_bytes or 0),
    }


def usage_summary(session: Session, owner_id: str, subscription: Optional[SubscriptionRecord]) -> dict:
    totals = fetch_storage_totals(session, owner_id)
    limits = plan_limits(effective_plan_id(subscription))
    remaining = max(limits.storage_limit - totals["total_bytes"], 0)
    return {
        "totalFiles": totals["total_files"],
        "totalBytes": totals["total_bytes"],
        "remainingBytes": remaining,
        "plan": limits.to_public(),
    }
