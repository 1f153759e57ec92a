from __future__ import annotations

from typing import List, Optional

from homeops.logging import get_logger
from homeops.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from homeops.service.passwords import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH, PasswordHasher
from homeops.service.roles import Role
from homeops.storage.common import USER_MUTABLE_FIELDS, HomeOpsStore, normalize_email
from homeops.storage.errors import ConstraintViolation
from homeops.storage.models import User

logger = get_logger(__name__)


def validate_password(password: Optional[str]) -> str:
    if not password or not (MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH):
        raise ValidationError(
            f"Password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH} characters",
            detail={"fields": [{"field": "password", "message": "invalid length"}]},
        )
    return password


def validate_email(email: Optional[str]) -> str:
    normalized = normalize_email(email or "")
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain or len(normalized) > 254:
        raise ValidationError(
            "A valid email is required",
            detail={"fields": [{"field": "email", "message": "invalid email"}]},
        )
    return normalized


class IdentityService:
    """Users and their credentials."""

    def __init__(self, store: HomeOpsStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self.hasher = hasher or PasswordHasher()

    def by_id(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    def by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def require(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list(self, *, role: Optional[str] = None, limit: Optional[int] = None) -> List[User]:
        return self.store.list_users(role=role, limit=limit)

    def register(
        self,
        email: str,
        password: Optional[str],
        *,
        display_name: Optional[str] = None,
        role: str = Role.HOMEOWNER.value,
        is_active: bool = True,
        phone: Optional[str] = None,
        require_password: bool = True,
    ) -> User:
        normalized = validate_email(email)
        if role not in {r.value for r in Role}:
            raise ValidationError(f"Invalid role: {role}")
        password_hash = ""
        if password or require_password:
            password_hash = self.hasher.hash(validate_password(password))
        try:
            user = self.store.create_user(
                normalized,
                password_hash=password_hash,
                display_name=display_name,
                role=role,
                is_active=is_active,
                phone=phone,
            )
        except ConstraintViolation as exc:
            raise ConflictError("A user with that email already exists") from exc
        logger.info("user_registered", user_id=user.id, role=role, active=is_active)
        return user

    def update(self, user_id: int, **fields) -> User:
        """Partial update of profile fields; role and email are not changeable here."""
        forbidden = sorted(set(fields) - USER_MUTABLE_FIELDS)
        if forbidden:
            raise ForbiddenError(f"Fields cannot be changed here: {', '.join(forbidden)}")
        user = self.store.update_user(user_id, **fields)
        if not user:
            raise NotFoundError("User not found")
        return user

    def verify_password(self, user: User, password: Optional[str]) -> bool:
        return self.hasher.verify(user.password_hash, password or "")

    def activate_from_invitation(self, user_id: int, password: str) -> User:
        password_hash = self.hasher.hash(validate_password(password))
        with self.store.transaction():
            self.require(user_id)
            self.store.set_user_active(user_id, True, password_hash=password_hash)
        logger.info("user_activated", user_id=user_id)
        return self.require(user_id)

    def change_password(
        self, user_id: int, current: Optional[str], new: str, *, verify_current: bool = True
    ) -> None:
        user = self.require(user_id)
        if verify_current and user.password_hash and not self.verify_password(user, current):
            raise InvalidCredentials("Current password is incorrect")
        self.store.set_user_password(user_id, self.hasher.hash(validate_password(new)))
        logger.info("password_changed", user_id=user_id)

    def set_role(self, user_id: int, role: str) -> User:
        if role not in {r.value for r in Role}:
            raise ValidationError(f"Invalid role: {role}")
        user = self.store.set_user_role(user_id, role)
        if not user:
            raise NotFoundError("User not found")
        return user

    def delete(self, user_id: int) -> None:
        with self.store.transaction():
            self.require(user_id)
            if self.store.count_owned_accounts(user_id) > 0:
                raise PreconditionFailed("Cannot delete a user who owns an account")
            self.store.delete_user(user_id)
        logger.info("user_deleted", user_id=user_id)


__all__ = ["IdentityService", "validate_password", "validate_email"]
