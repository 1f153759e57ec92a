"""Request-scoped authorization guards.

Each guard is plain data (a kind plus its parameters). ``PolicyEngine.check``
dispatches on the kind, raises ``AuthenticationError`` when no principal is
attached and ``ForbiddenError`` when one is attached but not permitted. Guards
never write; a passing guard may record the ids it resolved on the context so
handlers do not resolve them again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from homeops.logging import get_logger
from homeops.service.errors import AuthenticationError, ForbiddenError
from homeops.service.roles import (
    PROPERTY_WRITE_ROLES,
    AccountRole,
    Principal,
    PropertyRole,
    Role,
)
from homeops.service.tenants import PROPERTY_UID_RE, TenantService

logger = get_logger(__name__)

PROPERTY_MISSING_MESSAGE = "Property not found / missing"
ACCOUNT_MISSING_MESSAGE = "Account not found / missing"


class AuthState(str, Enum):
    NONE = "none"
    VALID = "valid"
    INVALID = "invalid"


class Source(str, Enum):
    PATH = "path"
    QUERY = "query"
    BODY = "body"


class GuardKind(str, Enum):
    AUTHENTICATED = "authenticated"
    ROLE = "role"
    ANY_ROLE = "any_role"
    PLATFORM_ADMIN = "platform_admin"
    SELF_BY_EMAIL = "self_by_email"
    SELF_BY_ID = "self_by_id"
    ACCOUNT_MEMBERSHIP = "account_membership"
    ACCOUNT_OWNER = "account_owner"
    PROPERTY_ACCESS = "property_access"
    PROPERTY_WRITE = "property_write"
    PROPERTY_OWNER = "property_owner"
    SHARED_ACCOUNT = "shared_account"


@dataclass(frozen=True)
class Guard:
    kind: GuardKind
    roles: Tuple[str, ...] = ()
    source: Source = Source.PATH
    key: Optional[str] = None


@dataclass
class RequestContext:
    principal: Optional[Principal] = None
    auth_state: AuthState = AuthState.NONE
    path_params: Dict[str, Any] = field(default_factory=dict)
    query_params: Dict[str, Any] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    property_id: Optional[int] = None
    account_id: Optional[int] = None
    target_user_id: Optional[int] = None

    def value(self, source: Source, key: str) -> Any:
        if source is Source.PATH:
            return self.path_params.get(key)
        if source is Source.QUERY:
            return self.query_params.get(key)
        return (self.body or {}).get(key)


# -- guard constructors ------------------------------------------------------


def require_authenticated() -> Guard:
    return Guard(GuardKind.AUTHENTICATED)


def require_role(role: Role | str) -> Guard:
    return Guard(GuardKind.ROLE, roles=(Role(role).value,))


def require_any_role(*roles: Role | str) -> Guard:
    return Guard(GuardKind.ANY_ROLE, roles=tuple(Role(r).value for r in roles))


def require_platform_admin() -> Guard:
    return Guard(GuardKind.PLATFORM_ADMIN)


def require_self_by_email(param: str = "email") -> Guard:
    return Guard(GuardKind.SELF_BY_EMAIL, key=param)


def require_self_by_id(param: str = "userId") -> Guard:
    return Guard(GuardKind.SELF_BY_ID, key=param)


def require_account_membership(source: Source = Source.PATH, key: str = "accountId") -> Guard:
    return Guard(GuardKind.ACCOUNT_MEMBERSHIP, source=source, key=key)


def require_account_owner(source: Source = Source.PATH, key: str = "accountId") -> Guard:
    return Guard(GuardKind.ACCOUNT_OWNER, source=source, key=key)


def require_property_access(source: Source = Source.PATH, key: str = "propertyId") -> Guard:
    return Guard(GuardKind.PROPERTY_ACCESS, source=source, key=key)


def require_property_write(source: Source = Source.PATH, key: str = "propertyId") -> Guard:
    return Guard(GuardKind.PROPERTY_WRITE, source=source, key=key)


def require_property_owner(param: str = "propertyId") -> Guard:
    return Guard(GuardKind.PROPERTY_OWNER, key=param)


def require_shared_account_to_view_user(param: str = "userId") -> Guard:
    return Guard(GuardKind.SHARED_ACCOUNT, key=param)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class PolicyEngine:
    def __init__(self, tenants: TenantService) -> None:
        self.tenants = tenants
        self._checks: Dict[GuardKind, Callable[[Guard, RequestContext, Principal], None]] = {
            GuardKind.AUTHENTICATED: lambda g, c, p: None,
            GuardKind.ROLE: self._check_role,
            GuardKind.ANY_ROLE: self._check_role,
            GuardKind.PLATFORM_ADMIN: self._check_platform_admin,
            GuardKind.SELF_BY_EMAIL: self._check_self_by_email,
            GuardKind.SELF_BY_ID: self._check_self_by_id,
            GuardKind.ACCOUNT_MEMBERSHIP: self._check_account_membership,
            GuardKind.ACCOUNT_OWNER: self._check_account_owner,
            GuardKind.PROPERTY_ACCESS: self._check_property_access,
            GuardKind.PROPERTY_WRITE: self._check_property_write,
            GuardKind.PROPERTY_OWNER: self._check_property_owner,
            GuardKind.SHARED_ACCOUNT: self._check_shared_account,
        }

    def check(self, guard: Guard, ctx: RequestContext) -> RequestContext:
        principal = ctx.principal
        if principal is None or not principal.email:
            raise AuthenticationError("Authentication required")
        self._checks[guard.kind](guard, ctx, principal)
        return ctx

    def check_all(self, guards: Iterable[Guard], ctx: RequestContext) -> RequestContext:
        for guard in guards:
            self.check(guard, ctx)
        return ctx

    # -- resolution ----------------------------------------------------------

    def resolve_property(self, value: Any) -> int:
        """Map a property uid or internal id to the internal id.

        Anything missing or unresolvable is Forbidden, never NotFound.
        """
        if isinstance(value, str) and PROPERTY_UID_RE.match(value.strip()):
            resolved = self.tenants.property_id_for_uid(value.strip())
        else:
            resolved = _as_int(value)
        if resolved is None:
            raise ForbiddenError(PROPERTY_MISSING_MESSAGE)
        return resolved

    def _resolve_account(self, value: Any) -> int:
        resolved = _as_int(value)
        if resolved is None:
            raise ForbiddenError(ACCOUNT_MISSING_MESSAGE)
        return resolved

    # -- checks ----------------------------------------------------------------

    def _check_role(self, guard: Guard, ctx: RequestContext, principal: Principal) -> None:
        if principal.role not in guard.roles:
            raise ForbiddenError("Insufficient role")

    def _check_platform_admin(self, guard: Guard, ctx: RequestContext, principal: Principal) -> None:
        if not principal.is_platform_admin:
            raise ForbiddenError("Platform admin access required")

    def _check_self_by_email(self, guard: Guard, ctx: RequestContext, principal: Principal) -> None:
        if principal.is_platform_admin:
            return
        target = ctx.value(Source.PATH, guard.key or "email")
        if not isinstance(target, str) or target.strip().lower() != principal.email.lower():
            raise ForbiddenError("Not allowed to act on another user")

    def _check_self_by_id(self, guard: Guard, ctx: RequestContext, principal: Principal) -> None:
        target = _as_int(ctx.value(Source.PATH, guard.key or "userId"))
        ctx.target_user_id = target
        if principal.is_platform_admin:
            return
        if target is None or target != principal.id:
            raise ForbiddenError("Not allowed to act on another user")

    def _check_account_membership(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        account_id = self._resolve_account(ctx.value(guard.source, guard.key or "accountId"))
        if not principal.is_platform_admin and not self.tenants.is_user_in_account(
            principal.id, account_id
        ):
            raise ForbiddenError("Not a member of this account")
        ctx.account_id = account_id

    def _check_account_owner(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        """Owners manage an account's membership; plain members may only read it."""
        self._check_account_membership(guard, ctx, principal)
        if principal.is_platform_admin:
            return
        if self.tenants.account_role(principal.id, ctx.account_id) != AccountRole.OWNER.value:
            raise ForbiddenError("Account owner access required")

    def _check_property_access(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        property_id = self.resolve_property(ctx.value(guard.source, guard.key or "propertyId"))
        if not principal.is_platform_admin and not self.tenants.is_user_on_property(
            principal.id, property_id
        ):
            logger.info("property_access_denied", user_id=principal.id)
            raise ForbiddenError(PROPERTY_MISSING_MESSAGE)
        ctx.property_id = property_id

    def _check_property_write(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        """Write access to property sub-resources.

        Property owners and editors may write; so may platform agents who are
        on the property. The property-level ``agent`` role alone is read-only.
        """
        self._check_property_access(guard, ctx, principal)
        if principal.is_platform_admin:
            return
        if self.tenants.property_role(principal.id, ctx.property_id) in PROPERTY_WRITE_ROLES:
            return
        if principal.role == Role.AGENT.value:
            return
        raise ForbiddenError("Write access to this property is required")

    def _check_property_owner(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        property_id = self.resolve_property(ctx.value(Source.PATH, guard.key or "propertyId"))
        if principal.role != Role.SUPER_ADMIN.value:
            if self.tenants.property_role(principal.id, property_id) != PropertyRole.OWNER.value:
                raise ForbiddenError(PROPERTY_MISSING_MESSAGE)
        ctx.property_id = property_id

    def _check_shared_account(
        self, guard: Guard, ctx: RequestContext, principal: Principal
    ) -> None:
        target = _as_int(ctx.value(Source.PATH, guard.key or "userId"))
        if target is None:
            raise ForbiddenError("User not found / missing")
        ctx.target_user_id = target
        if principal.is_platform_admin or target == principal.id:
            return
        if not self.tenants.users_share_account(principal.id, target):
            raise ForbiddenError("User not found / missing")


__all__ = [
    "AuthState",
    "Guard",
    "GuardKind",
    "PolicyEngine",
    "RequestContext",
    "Source",
    "require_account_membership",
    "require_account_owner",
    "require_any_role",
    "require_authenticated",
    "require_platform_admin",
    "require_property_access",
    "require_property_owner",
    "require_property_write",
    "require_role",
    "require_self_by_email",
    "require_self_by_id",
    "require_shared_account_to_view_user",
]
