from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    AGENT = "agent"
    HOMEOWNER = "homeowner"


class AccountRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class PropertyRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"
    AGENT = "agent"


PLATFORM_ADMINS = frozenset({Role.SUPER_ADMIN.value, Role.ADMIN.value})
SELF_SERVICE_ROLES = frozenset({Role.HOMEOWNER.value, Role.AGENT.value})
PROPERTY_WRITE_ROLES = frozenset({PropertyRole.OWNER.value, PropertyRole.EDITOR.value})


def is_platform_admin(role: str | None) -> bool:
    return role in PLATFORM_ADMINS


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request."""

    id: int
    email: str
    role: str

    @property
    def is_platform_admin(self) -> bool:
        return self.role in PLATFORM_ADMINS


__all__ = [
    "Role",
    "AccountRole",
    "PropertyRole",
    "PLATFORM_ADMINS",
    "SELF_SERVICE_ROLES",
    "PROPERTY_WRITE_ROLES",
    "Principal",
    "is_platform_admin",
]
