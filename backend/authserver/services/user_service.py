"""User service - resource-owner lookup and claim derivation"""

from sqlalchemy.orm import Session
from typing import Any, Dict, Iterable, Optional
from authserver.models.user import User
from authserver.schemas.user import UserCreate
from authserver.core.exceptions import ResourceAlreadyExistsError
import logging

logger = logging.getLogger(__name__)


class UserService:
    """Read access to resource owners managed by the platform"""

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_username(db: Session, username: str) -> Optional[User]:
        return db.query(User).filter(User.username == username).first()

    @staticmethod
    def get_active_user(db: Session, user_id: Any) -> Optional[User]:
        """
        Resolve a user id coming from a session or a token `sub` claim

        Args:
            db: Database session
            user_id: Raw identifier (int or numeric string)

        Returns:
            The user if it exists and is active, None otherwise
        """
        try:
            parsed = int(user_id)
        except (TypeError, ValueError):
            return None
        user = UserService.get_user_by_id(db, parsed)
        if not user or not user.is_active:
            return None
        return user

    @staticmethod
    def create_user(db: Session, user_data: UserCreate) -> User:
        """
        Create a resource owner (seeding and development only)

        Args:
            db: Database session
            user_data: User creation data

        Returns:
            Created user
        """
        existing = db.query(User).filter(User.username == user_data.username).first()
        if existing:
            raise ResourceAlreadyExistsError(f"User '{user_data.username}'")

        user = User(
            username=user_data.username,
            name=user_data.name,
            email=user_data.email,
            email_verified=user_data.email_verified,
            company=user_data.company,
            job_title=user_data.job_title,
            role=user_data.role.value,
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user: {user.username} (role: {user.role})")
        return user

    @staticmethod
    def build_claims(user: User, scopes: Iterable[str]) -> Dict[str, Any]:
        """
        Profile claims released for a set of granted scopes

        `sub` is always present; every other claim is gated by its scope.
        """
        granted = set(scopes)
        claims: Dict[str, Any] = {"sub": str(user.id)}

        if "profile" in granted:
            claims["name"] = user.name
            claims["preferred_username"] = user.username
            claims["company"] = user.company
            claims["job_title"] = user.job_title

        if "email" in granted:
            claims["email"] = user.email
            claims["email_verified"] = bool(user.email_verified)

        if "roles" in granted:
            claims["roles"] = [user.role] if user.role else []

        return claims


user_service = UserService()
