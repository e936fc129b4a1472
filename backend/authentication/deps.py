from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import JWTError

from db.deps import get_db
from authentication.models import User
from authentication.security import decode_token
from authentication.local_users import get_local_user, use_local_auth

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    if credentials is None:
        raise _unauthorized("Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid token")

    username = payload.get("sub")
    if not username:
        raise _unauthorized("Invalid token")

    if use_local_auth():
        user = get_local_user(username)
    else:
        user = db.query(User).filter(User.username == username).first()

    if user is None or not user.is_active:
        raise _unauthorized("User inactive")
    return user


def require_admin(user=Depends(get_current_user)):
    if user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
