from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import church_scope, require_operation
from app.core.permissions import Operator
from app.core.security import today_utc
from app.db.session import get_db
from app.models.subscription import ChurchSubscription
from app.schemas.billing import (
    CancelSubscriptionIn,
    PartnershipCodeApplyIn,
    PaymentIntentOut,
    SmsCreditPurchaseIn,
    SubscriptionOut,
    SubscriptionPaymentIn,
    TierChangeIn,
    TierChangeOut,
    TierChangePreviewOut,
    TierChangeResultOut,
    TierChangeRollbackIn,
)
from app.services.billing import (
    initiate_addon_purchase,
    initiate_sms_credit_purchase,
    initiate_subscription_payment,
)
from app.services.partnership_codes import apply_code
from app.services.subscription_state import cancel, get_subscription, has_access, state_of
from app.services.tier_changes import initiate_tier_change, preview_tier_change, rollback_tier_change

router = APIRouter()


def subscription_out(sub: ChurchSubscription) -> SubscriptionOut:
    out = SubscriptionOut.model_validate(sub)
    out.has_payment_method = bool(sub.payment_authorization_code)
    out.has_access = has_access(state_of(sub), today_utc())
    return out


@router.get("/subscription", response_model=SubscriptionOut)
def my_subscription(operator: Operator = Depends(require_operation("subscription.view")), db: Session = Depends(get_db)):
    return subscription_out(get_subscription(db, church_scope(operator)))


@router.post("/subscription/payments", response_model=PaymentIntentOut)
def start_subscription_payment(
    payload: SubscriptionPaymentIn,
    operator: Operator = Depends(require_operation("subscription.pay")),
    db: Session = Depends(get_db),
):
    intent = initiate_subscription_payment(
        db,
        church_id=church_scope(operator),
        tier_code=payload.tier_code,
        billing_interval=payload.billing_interval,
        email=payload.email,
    )
    db.commit()
    return PaymentIntentOut.model_validate(intent)


@router.post("/subscription/cancel", response_model=SubscriptionOut)
def cancel_subscription(
    payload: CancelSubscriptionIn,
    operator: Operator = Depends(require_operation("subscription.cancel")),
    db: Session = Depends(get_db),
):
    sub = cancel(db, church_id=church_scope(operator), actor=operator.user_id, reason=payload.reason)
    db.commit()
    return subscription_out(sub)


@router.post("/subscription/partnership-code", response_model=SubscriptionOut)
def apply_partnership_code(
    payload: PartnershipCodeApplyIn,
    operator: Operator = Depends(require_operation("subscription.apply_partnership_code")),
    db: Session = Depends(get_db),
):
    sub = apply_code(db, church_id=church_scope(operator), code=payload.code, actor=operator.user_id)
    db.commit()
    return subscription_out(sub)


@router.post("/tier-changes/preview", response_model=TierChangePreviewOut)
def tier_change_preview(
    payload: TierChangeIn,
    operator: Operator = Depends(require_operation("tier_change.preview")),
    db: Session = Depends(get_db),
):
    try:
        quote = preview_tier_change(
            db,
            church_id=church_scope(operator),
            new_tier_code=payload.new_tier_code,
            new_interval=payload.new_interval,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return TierChangePreviewOut(
        change_type=quote.change_type,
        old_price=quote.old_price,
        new_price=quote.new_price,
        unused_credit=quote.proration.unused_credit,
        new_charge=quote.proration.new_charge,
        net_amount=quote.net_amount,
        days_remaining=quote.proration.days_remaining,
        total_days=quote.proration.total_days,
        applies_immediately=quote.applies_immediately,
        new_period_start=quote.new_period_start,
        new_next_billing_date=quote.new_next_billing_date,
    )


@router.post("/tier-changes", response_model=TierChangeResultOut)
def tier_change_initiate(
    payload: TierChangeIn,
    operator: Operator = Depends(require_operation("tier_change.initiate")),
    db: Session = Depends(get_db),
):
    try:
        history, intent = initiate_tier_change(
            db,
            church_id=church_scope(operator),
            new_tier_code=payload.new_tier_code,
            new_interval=payload.new_interval,
            actor=operator.user_id,
            reason=payload.reason,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    db.commit()
    return TierChangeResultOut(
        tier_change=TierChangeOut.model_validate(history),
        payment=(PaymentIntentOut.model_validate(intent) if intent is not None else None),
    )


@router.post("/tier-changes/{reference}/rollback", response_model=TierChangeOut)
def tier_change_rollback(
    reference: str,
    payload: TierChangeRollbackIn,
    operator: Operator = Depends(require_operation("tier_change.rollback")),
    db: Session = Depends(get_db),
):
    history = rollback_tier_change(
        db,
        church_id=church_scope(operator),
        reference=reference,
        actor=operator.user_id,
        reason=payload.reason,
    )
    db.commit()
    return TierChangeOut.model_validate(history)


@router.post("/addons/{addon_id}/purchase", response_model=PaymentIntentOut)
def purchase_addon(
    addon_id: UUID,
    operator: Operator = Depends(require_operation("addons.purchase")),
    db: Session = Depends(get_db),
):
    intent = initiate_addon_purchase(db, church_id=church_scope(operator), storage_addon_id=addon_id)
    db.commit()
    return PaymentIntentOut.model_validate(intent)


@router.post("/sms-credits/purchase", response_model=PaymentIntentOut)
def purchase_sms_credits(
    payload: SmsCreditPurchaseIn,
    operator: Operator = Depends(require_operation("sms_credits.purchase")),
    db: Session = Depends(get_db),
):
    try:
        intent = initiate_sms_credit_purchase(db, church_id=church_scope(operator), amount=payload.amount)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    db.commit()
    return PaymentIntentOut.model_validate(intent)
