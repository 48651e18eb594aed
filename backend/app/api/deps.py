from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from app.core.errors import PermissionDenied
from app.core.permissions import Operator, authorize, required_capability
from app.core.security import decode_token

bearer = HTTPBearer()


def get_operator(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> Operator:
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token subject")
    return Operator(
        user_id=str(user_id),
        church_id=(str(payload["church_id"]) if payload.get("church_id") else None),
        capabilities=frozenset(str(c) for c in (payload.get("capabilities") or [])),
    )


def require_operation(operation: str):
    """Dependency that admits the caller only if it holds the operation's capability."""
    required_capability(operation)

    def guard(operator: Operator = Depends(get_operator)) -> Operator:
        return authorize(operator, operation)

    return guard


def church_scope(operator: Operator) -> str:
    if not operator.church_id:
        raise PermissionDenied("This operation needs a church-scoped token", user_id=operator.user_id)
    return operator.church_id
