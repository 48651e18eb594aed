from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import InvalidPartnershipCode
from app.core.logging import get_logger
from app.core.security import as_utc, now_utc
from app.models.partnership_code import PartnershipCode, PartnershipCodeUsage
from app.models.subscription import ChurchSubscription
from app.services.audit import audit
from app.services.subscription_state import extend_current_period, lock_subscription

logger = get_logger(__name__)


def _normalize(code: str | None) -> str:
    return (code or "").strip().upper()


def create_code(
    db: Session,
    *,
    code: str,
    grace_period_days: int,
    description: str | None = None,
    max_uses: int | None = None,
    max_uses_per_church: int = 1,
    expires_at: datetime | None = None,
    actor=None,
) -> PartnershipCode:
    normalized = _normalize(code)
    if not normalized:
        raise InvalidPartnershipCode("Partnership code cannot be empty")
    if grace_period_days < 1:
        raise InvalidPartnershipCode("Grace period days must be positive")
    exists = db.execute(
        sa.select(PartnershipCode.id).where(sa.func.upper(PartnershipCode.code) == normalized)
    ).scalar_one_or_none()
    if exists is not None:
        raise InvalidPartnershipCode(f"Partnership code {normalized} already exists", code=normalized)

    row = PartnershipCode(
        code=normalized,
        description=description,
        grace_period_days=grace_period_days,
        max_uses=max_uses,
        max_uses_per_church=max_uses_per_church,
        expires_at=expires_at,
        created_by=(str(actor) if actor is not None else None),
    )
    db.add(row)
    db.flush()
    audit(db, actor, "partnership_code", row.id, "created", {"code": normalized, "grace_period_days": grace_period_days})
    return row


def list_codes(db: Session, *, include_inactive: bool = False) -> list[PartnershipCode]:
    q = sa.select(PartnershipCode).order_by(PartnershipCode.created_at.desc())
    if not include_inactive:
        q = q.where(PartnershipCode.is_active.is_(True))
    return list(db.execute(q).scalars())


def deactivate_code(db: Session, *, code_id, actor=None) -> PartnershipCode:
    row = db.get(PartnershipCode, code_id)
    if row is None:
        raise InvalidPartnershipCode(f"Partnership code {code_id} not found")
    row.is_active = False
    audit(db, actor, "partnership_code", row.id, "deactivated", {"code": row.code})
    return row


def _lock_code(db: Session, code: str) -> PartnershipCode:
    normalized = _normalize(code)
    db.flush()
    row = db.execute(
        sa.select(PartnershipCode)
        .where(sa.func.upper(PartnershipCode.code) == normalized)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise InvalidPartnershipCode("Invalid partnership code", code=normalized)
    return row


def _check_usable(db: Session, row: PartnershipCode, church_id, now: datetime):
    if not row.is_active:
        raise InvalidPartnershipCode("This partnership code is no longer active", code=row.code)
    if row.expires_at is not None and as_utc(row.expires_at) <= now:
        raise InvalidPartnershipCode("This partnership code has expired", code=row.code)
    if row.max_uses is not None and row.current_uses >= row.max_uses:
        raise InvalidPartnershipCode("This partnership code has reached its usage limit", code=row.code)
    used_by_church = db.execute(
        sa.select(sa.func.count())
        .select_from(PartnershipCodeUsage)
        .where(PartnershipCodeUsage.partnership_code_id == row.id, PartnershipCodeUsage.church_id == church_id)
    ).scalar_one()
    if used_by_church >= row.max_uses_per_church:
        raise InvalidPartnershipCode("This church has already used this partnership code", code=row.code)


def apply_code(db: Session, *, church_id, code: str, actor=None, now: datetime | None = None) -> ChurchSubscription:
    """Extend the church's paid-through date by the code's grace days.

    Status is never touched. A church re-applying a code past its per-church
    allowance is rejected rather than treated as a no-op.
    """
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    row = _lock_code(db, code)
    _check_usable(db, row, sub.church_id, now)

    extend_current_period(
        db,
        church_id=sub.church_id,
        days=row.grace_period_days,
        reason=f"Partnership code {row.code}",
        actor=actor,
    )
    row.current_uses = int(row.current_uses or 0) + 1
    db.add(
        PartnershipCodeUsage(
            partnership_code_id=row.id,
            church_id=sub.church_id,
            grace_period_days_granted=row.grace_period_days,
            used_at=now,
        )
    )
    db.flush()
    logger.info(
        "partnership_code.applied",
        church_id=str(sub.church_id),
        code=row.code,
        grace_period_days=row.grace_period_days,
    )
    return sub


def code_stats(db: Session, *, code_id) -> dict:
    row = db.get(PartnershipCode, code_id)
    if row is None:
        raise InvalidPartnershipCode(f"Partnership code {code_id} not found")
    churches, days = db.execute(
        sa.select(
            sa.func.count(sa.distinct(PartnershipCodeUsage.church_id)),
            sa.func.coalesce(sa.func.sum(PartnershipCodeUsage.grace_period_days_granted), 0),
        ).where(PartnershipCodeUsage.partnership_code_id == row.id)
    ).one()
    return {
        "code": row.code,
        "is_active": row.is_active,
        "current_uses": row.current_uses,
        "max_uses": row.max_uses,
        "remaining_uses": (row.max_uses - row.current_uses) if row.max_uses is not None else None,
        "churches": int(churches),
        "grace_days_granted": int(days),
    }
