"""API dependencies - session user resolution and authorization"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session
from typing import Any, Optional

from authserver.core.database import get_db
from authserver.core.exceptions import AuthorizationError, LoginRequiredError
from authserver.models.user import User
from authserver.services.user_service import user_service


def get_session_user_id(request: Request) -> Optional[Any]:
    """
    User id placed in the signed session cookie by the login UI

    Args:
        request: Incoming request (SessionMiddleware populates `request.session`)

    Returns:
        Raw user id or None when nobody is signed in
    """
    return request.session.get("user_id")


def get_optional_session_user(
    user_id: Optional[Any] = Depends(get_session_user_id),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """
    Get the signed-in user if any

    Returns:
        Active user or None
    """
    if user_id is None:
        return None
    return user_service.get_active_user(db, user_id)


def get_session_user(
    user: Optional[User] = Depends(get_optional_session_user)
) -> User:
    """
    Require a signed-in user

    Raises:
        LoginRequiredError: If there is no active session user
    """
    if user is None:
        raise LoginRequiredError("Sign in to continue")
    return user


def get_current_admin_user(
    current_user: User = Depends(get_session_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if current_user.role != "admin":
        raise AuthorizationError("Admin access required")
    return current_user


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
