from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import require_operation
from app.core.permissions import Operator
from app.db.session import get_db
from app.models.subscription import ChurchSubscription
from app.schemas.retention import ExtendRetentionIn, PendingDeletionOut, RetentionStatusOut
from app.services.retention import cancel_deletion, extend_retention, list_pending_deletions

router = APIRouter()


def _status_out(sub: ChurchSubscription) -> RetentionStatusOut:
    return RetentionStatusOut(
        church_id=str(sub.church_id),
        status=sub.status,
        data_retention_end_date=sub.data_retention_end_date,
        retention_extension_days=int(sub.retention_extension_days or 0),
        retention_extension_note=sub.retention_extension_note,
        deletion_canceled=sub.deletion_canceled_at is not None,
    )


@router.get("/pending", response_model=list[PendingDeletionOut])
def pending_deletions(operator: Operator = Depends(require_operation("retention.list_pending")), db: Session = Depends(get_db)):
    return [PendingDeletionOut(**asdict(row)) for row in list_pending_deletions(db)]


@router.post("/{church_id}/extend", response_model=RetentionStatusOut)
def extend(
    church_id: UUID,
    payload: ExtendRetentionIn,
    operator: Operator = Depends(require_operation("retention.extend")),
    db: Session = Depends(get_db),
):
    try:
        sub = extend_retention(
            db,
            church_id=church_id,
            extension_days=payload.extension_days,
            note=payload.note,
            actor=operator.user_id,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    db.commit()
    return _status_out(sub)


@router.delete("/{church_id}/cancel-deletion", response_model=RetentionStatusOut)
def cancel_scheduled_deletion(
    church_id: UUID,
    operator: Operator = Depends(require_operation("retention.cancel_deletion")),
    db: Session = Depends(get_db),
):
    sub = cancel_deletion(db, church_id=church_id, actor=operator.user_id)
    db.commit()
    return _status_out(sub)
