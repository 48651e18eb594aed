from datetime import date, datetime, timedelta, timezone

from jose import jwt

from app.core.config import settings

ALGO = "HS256"

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def today_utc() -> date:
    return now_utc().date()

def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def create_access_token(sub: str, *, church_id: str | None = None, capabilities: list[str] | None = None) -> str:
    exp = now_utc() + timedelta(minutes=settings.JWT_ACCESS_MINUTES)
    payload = {"sub": sub, "type": "access", "exp": exp, "capabilities": sorted(capabilities or [])}
    if church_id is not None:
        payload["church_id"] = church_id
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])
