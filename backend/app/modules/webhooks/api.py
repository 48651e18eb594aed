from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.webhooks import WebhookAckOut
from app.services.webhook_reconciler import handle_webhook

router = APIRouter()


@router.post("/{gateway}/events", response_model=WebhookAckOut)
async def gateway_event(gateway: str, request: Request, db: Session = Depends(get_db)):
    raw = await request.body()
    signature = request.headers.get("X-Signature") or request.headers.get("X-Paystack-Signature")
    out = handle_webhook(db, gateway=gateway, raw_payload=raw, signature=signature)
    return WebhookAckOut(**out)
