import json

from sqlalchemy.orm import Session
from app.models.audit_log import AuditLog

def audit(db: Session, actor_id, entity_type: str, entity_id, action: str, data: dict, *, church_id=None):
    row = AuditLog(
        actor_id=(str(actor_id) if actor_id is not None else None),
        church_id=church_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        # dates, Decimals and UUIDs in the trail are stored as strings
        data=json.loads(json.dumps(data or {}, default=str)),
    )
    db.add(row)
