from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import require_operation
from app.core.permissions import Operator
from app.db.session import get_db
from app.modules.billing.api import subscription_out
from app.schemas.billing import SubscriptionOut
from app.schemas.platform import (
    GrantGracePeriodIn,
    GrantPromotionalCreditsIn,
    PartnershipCodeCreateIn,
    PartnershipCodeOut,
    PartnershipCodeStatsOut,
    ReactivateSubscriptionIn,
    SubscriptionStatsOut,
)
from app.services.partnership_codes import code_stats, create_code, deactivate_code, list_codes
from app.services.subscription_state import (
    grant_grace_period,
    grant_promotional_credits,
    reactivate,
    revoke_grace_period,
    revoke_promotional_credits,
    subscription_stats,
)

router = APIRouter()


@router.get("/subscriptions/stats", response_model=SubscriptionStatsOut)
def subscriptions_stats(operator: Operator = Depends(require_operation("subscription.stats")), db: Session = Depends(get_db)):
    return SubscriptionStatsOut(**subscription_stats(db))


@router.post("/subscriptions/{church_id}/reactivate", response_model=SubscriptionOut)
def reactivate_subscription(
    church_id: UUID,
    payload: ReactivateSubscriptionIn,
    operator: Operator = Depends(require_operation("subscription.reactivate")),
    db: Session = Depends(get_db),
):
    sub = reactivate(db, church_id=church_id, actor=operator.user_id, note=payload.note)
    db.commit()
    return subscription_out(sub)


@router.post("/subscriptions/{church_id}/grace-period", response_model=SubscriptionOut)
def grant_grace(
    church_id: UUID,
    payload: GrantGracePeriodIn,
    operator: Operator = Depends(require_operation("subscription.grant_grace_period")),
    db: Session = Depends(get_db),
):
    try:
        sub = grant_grace_period(
            db,
            church_id=church_id,
            days=payload.days,
            reason=payload.reason,
            extend=payload.extend,
            actor=operator.user_id,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    db.commit()
    return subscription_out(sub)


@router.delete("/subscriptions/{church_id}/grace-period", response_model=SubscriptionOut)
def revoke_grace(
    church_id: UUID,
    operator: Operator = Depends(require_operation("subscription.revoke_grace_period")),
    db: Session = Depends(get_db),
):
    sub = revoke_grace_period(db, church_id=church_id, actor=operator.user_id)
    db.commit()
    return subscription_out(sub)


@router.post("/subscriptions/{church_id}/promotional-credits", response_model=SubscriptionOut)
def grant_credits(
    church_id: UUID,
    payload: GrantPromotionalCreditsIn,
    operator: Operator = Depends(require_operation("subscription.grant_promotional_credits")),
    db: Session = Depends(get_db),
):
    sub = grant_promotional_credits(db, church_id=church_id, months=payload.months, note=payload.note, actor=operator.user_id)
    db.commit()
    return subscription_out(sub)


@router.delete("/subscriptions/{church_id}/promotional-credits", response_model=SubscriptionOut)
def revoke_credits(
    church_id: UUID,
    operator: Operator = Depends(require_operation("subscription.revoke_promotional_credits")),
    db: Session = Depends(get_db),
):
    sub = revoke_promotional_credits(db, church_id=church_id, actor=operator.user_id)
    db.commit()
    return subscription_out(sub)


@router.post("/partnership-codes", response_model=PartnershipCodeOut)
def new_partnership_code(
    payload: PartnershipCodeCreateIn,
    operator: Operator = Depends(require_operation("partnership_codes.manage")),
    db: Session = Depends(get_db),
):
    row = create_code(db, actor=operator.user_id, **payload.model_dump())
    db.commit()
    return row


@router.get("/partnership-codes", response_model=list[PartnershipCodeOut])
def partnership_codes(
    include_inactive: bool = Query(default=False),
    operator: Operator = Depends(require_operation("partnership_codes.manage")),
    db: Session = Depends(get_db),
):
    return list_codes(db, include_inactive=include_inactive)


@router.post("/partnership-codes/{code_id}/deactivate", response_model=PartnershipCodeOut)
def deactivate_partnership_code(
    code_id: UUID,
    operator: Operator = Depends(require_operation("partnership_codes.manage")),
    db: Session = Depends(get_db),
):
    row = deactivate_code(db, code_id=code_id, actor=operator.user_id)
    db.commit()
    return row


@router.get("/partnership-codes/{code_id}/stats", response_model=PartnershipCodeStatsOut)
def partnership_code_stats(
    code_id: UUID,
    operator: Operator = Depends(require_operation("partnership_codes.manage")),
    db: Session = Depends(get_db),
):
    return PartnershipCodeStatsOut(**code_stats(db, code_id=code_id))
