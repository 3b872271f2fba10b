"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from parley.realtime import RealtimeCoordinator, RealtimeError

from app.core.security import decode_access_token
from app.database import get_db
from app.models import User
from app.services.realtime import get_coordinator

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the bearer JWT."""

    if credentials is None or not credentials.credentials:
        raise _unauthorized()
    return get_user_from_token(credentials.credentials, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if sub is None:
        raise _unauthorized()

    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise _unauthorized() from None

    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized()
    return user


def get_realtime() -> RealtimeCoordinator:
    return get_coordinator()


_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "invalid_payload": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "target_unavailable": status.HTTP_409_CONFLICT,
    "transient_store_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_error(exc: RealtimeError) -> HTTPException:
    """Translate a realtime error into the matching HTTP error."""

    code = _ERROR_STATUS.get(exc.reason, status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=exc.detail)
