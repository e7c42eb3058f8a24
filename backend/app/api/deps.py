from collections.abc import Callable, Generator, Iterable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from app.core.exceptions import AuthenticationError, PermissionDeniedError
from app.core.security import decode_token
from app.db.session import SessionLocal
from app.models.school import School
from app.models.user import User, UserRole

# Missing credentials are reported through AuthenticationError, not FastAPI's default body.
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    try:
        payload = decode_token(credentials.credentials)
    except JWTError as exc:
        raise AuthenticationError() from exc
    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError()

    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError()
    if not user.is_active:
        raise PermissionDeniedError("User account is inactive")
    return user


def require_roles(*roles: UserRole) -> Callable[[User], User]:
    allowed_roles: Iterable[UserRole] = set(roles)

    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            raise PermissionDeniedError()
        return current_user

    return role_checker


require_school_admin = require_roles(UserRole.school_admin)


def get_current_school(
    current_user: User = Depends(require_school_admin),
    db: Session = Depends(get_db),
) -> School:
    school = db.get(School, current_user.school_id) if current_user.school_id else None
    if school is None:
        raise PermissionDeniedError("No school access")
    return school
