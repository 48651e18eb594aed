from typing import Literal

from pydantic import BaseModel


class WebhookAckOut(BaseModel):
    ok: bool = True
    gateway: str
    event_type: str
    reference: str | None = None
    status: Literal["processed", "duplicate", "ignored", "recorded"]
    detail: str | None = None
