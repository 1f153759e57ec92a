"""Accounts, properties, memberships and plan limits."""

from __future__ import annotations

import calendar
import os
import re
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from homeops.logging import get_logger
from homeops.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from homeops.service.roles import AccountRole, PropertyRole, Role
from homeops.storage.common import HomeOpsStore
from homeops.storage.errors import ConstraintViolation
from homeops.storage.models import (
    Account,
    AccountMember,
    AccountSubscription,
    Property,
    PropertyMember,
    SubscriptionProduct,
    System,
    TierLimits,
)

logger = get_logger(__name__)

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
PROPERTY_UID_RE = re.compile(r"^[0-9A-Z]{26}$", re.IGNORECASE)
MAX_SLUG_SUFFIX = 1000

DEFAULT_PRODUCTS = (
    ("free", Role.HOMEOWNER.value, Decimal("0.00"), TierLimits(3, 50, 5, 10)),
    ("basic", Role.HOMEOWNER.value, Decimal("9.00"), TierLimits(5, 100, 10, 15)),
    ("professional", Role.AGENT.value, Decimal("29.00"), TierLimits(50, 1000, 50, 100)),
    ("enterprise", Role.AGENT.value, Decimal("99.00"), TierLimits(500, 10000, 500, 1000)),
)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "", (name or "").lower())
    return slug or "account"


def generate_property_uid(timestamp_ms: Optional[int] = None) -> str:
    """26-char Crockford base32 id: 48-bit millisecond time then 80 random bits."""
    ts = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    value = (ts << 80) | int.from_bytes(os.urandom(10), "big")
    chars = []
    for _ in range(26):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def generate_passport_id(state: Optional[str], zip_code: Optional[str]) -> str:
    state_part = (state or "").strip().upper()[:2]
    zip_part = re.sub(r"\D", "", zip_code or "")[:5]
    unique_part = str(10000 + secrets.randbelow(90000))
    return "-".join(part for part in (state_part, zip_part, unique_part) if part)


def add_one_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class TenantService:
    def __init__(self, store: HomeOpsStore) -> None:
        self.store = store

    # -- lookups -----------------------------------------------------------

    def is_user_in_account(self, user_id: int, account_id: int) -> bool:
        return self.store.is_user_in_account(user_id, account_id)

    def is_user_on_property(self, user_id: int, property_id: int) -> bool:
        return self.store.is_user_on_property(user_id, property_id)

    def account_role(self, user_id: int, account_id: int) -> Optional[str]:
        member = self.store.get_account_member(account_id, user_id)
        return member.role if member else None

    def property_role(self, user_id: int, property_id: int) -> Optional[str]:
        member = self.store.get_property_member(property_id, user_id)
        return member.role if member else None

    def properties_for_user(self, user_id: int) -> List[Property]:
        """Properties the user holds a property membership on."""
        return [
            p
            for p in self.store.list_properties_for_user(user_id)
            if self.store.is_user_on_property(user_id, p.id)
        ]

    def property_id_for_uid(self, uid: str) -> Optional[int]:
        if not uid or not PROPERTY_UID_RE.match(uid):
            return None
        prop = self.store.get_property_by_uid(uid.upper())
        return prop.id if prop else None

    def accounts_for_user(self, user_id: int) -> List[Account]:
        return self.store.list_accounts_for_user(user_id)

    def users_share_account(self, user_a: int, user_b: int) -> bool:
        return self.store.users_share_account(user_a, user_b)

    def get_account(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def get_property(self, property_id: int) -> Property:
        prop = self.store.get_property(property_id)
        if not prop:
            raise NotFoundError("Property not found")
        return prop

    # -- accounts ----------------------------------------------------------

    def generate_account_url(self, name: str) -> str:
        base = slugify(name)
        if not self.store.get_account_by_url(base):
            return base
        for suffix in range(1, MAX_SLUG_SUFFIX + 1):
            candidate = f"{base}{suffix}"
            if not self.store.get_account_by_url(candidate):
                return candidate
        raise ConflictError("Unable to allocate a unique account url")

    def create_account(self, name: str, owner_user_id: int) -> Account:
        """Create an account and link ``owner_user_id`` as its owner atomically."""
        if not name or not name.strip():
            raise ValidationError("Account name is required")
        if not self.store.get_user(owner_user_id):
            raise NotFoundError("Owner user not found")
        with self.store.transaction():
            account = self.store.create_account(
                name.strip(), self.generate_account_url(name), owner_user_id
            )
            self.store.add_account_member(account.id, owner_user_id, AccountRole.OWNER.value)
        logger.info("account_created", account_id=account.id, owner_user_id=owner_user_id)
        return account

    def add_account_member(
        self, account_id: int, user_id: int, role: str = AccountRole.MEMBER.value
    ) -> AccountMember:
        if role not in {r.value for r in AccountRole}:
            raise ValidationError(f"Invalid account role: {role}")
        self.get_account(account_id)
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found")
        with self.store.transaction():
            if not self.store.list_account_members(account_id):
                role = AccountRole.OWNER.value
            try:
                return self.store.add_account_member(account_id, user_id, role)
            except ConstraintViolation as exc:
                raise ConflictError("User already belongs to this account") from exc

    def _owner_count(self, account_id: int) -> int:
        return sum(
            1
            for m in self.store.list_account_members(account_id)
            if m.role == AccountRole.OWNER.value
        )

    def remove_account_member(self, account_id: int, user_id: int) -> None:
        with self.store.transaction():
            member = self.store.get_account_member(account_id, user_id)
            if not member:
                raise NotFoundError("User is not a member of this account")
            if member.role == AccountRole.OWNER.value and self._owner_count(account_id) <= 1:
                raise PreconditionFailed("Cannot remove the last owner of an account")
            self.store.remove_account_member(account_id, user_id)
        logger.info("account_member_removed", account_id=account_id, user_id=user_id)

    def set_account_member_role(self, account_id: int, user_id: int, role: str) -> AccountMember:
        if role not in {r.value for r in AccountRole}:
            raise ValidationError(f"Invalid account role: {role}")
        with self.store.transaction():
            member = self.store.get_account_member(account_id, user_id)
            if not member:
                raise NotFoundError("User is not a member of this account")
            if (
                member.role == AccountRole.OWNER.value
                and role != AccountRole.OWNER.value
                and self._owner_count(account_id) <= 1
            ):
                raise PreconditionFailed("An account must keep at least one owner")
            return self.store.set_account_member_role(account_id, user_id, role)

    def delete_account(self, account_id: int) -> None:
        if not self.store.delete_account(account_id):
            raise NotFoundError("Account not found")
        logger.info("account_deleted", account_id=account_id)

    # -- properties --------------------------------------------------------

    def create_property(
        self,
        account_id: int,
        creator_user_id: int,
        *,
        address: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        zip: Optional[str] = None,
        enforce_limits: bool = True,
    ) -> Property:
        self.get_account(account_id)
        if enforce_limits:
            limits = self.limits_for_account(account_id)
            current = self.store.count_properties(account_id)
            if current >= limits.max_properties:
                raise ForbiddenError(
                    f"Property limit reached ({current}/{limits.max_properties})"
                )
        passport_id = None
        if state is not None and zip is not None:
            passport_id = generate_passport_id(state, zip)
            while self.store.passport_id_exists(passport_id):
                passport_id = generate_passport_id(state, zip)
        with self.store.transaction():
            prop = self.store.create_property(
                account_id,
                generate_property_uid(),
                passport_id=passport_id,
                address=address,
                city=city,
                state=state,
                zip=zip,
            )
            self.store.add_property_member(prop.id, creator_user_id, PropertyRole.OWNER.value)
        logger.info("property_created", property_id=prop.id, account_id=account_id)
        return prop

    def delete_property(self, property_id: int) -> None:
        if not self.store.delete_property(property_id):
            raise NotFoundError("Property not found")
        logger.info("property_deleted", property_id=property_id)

    def add_property_member(self, property_id: int, user_id: int, role: str) -> PropertyMember:
        if role not in {r.value for r in PropertyRole}:
            raise ValidationError(f"Invalid property role: {role}")
        return self.store.add_property_member(property_id, user_id, role)

    def visible_accounts(self, user_id: int, *, platform_admin: bool = False) -> List[Account]:
        if platform_admin:
            return self.store.list_accounts()
        return self.accounts_for_user(user_id)

    def visible_properties(self, user_id: int, *, platform_admin: bool = False) -> List[Property]:
        if platform_admin:
            return self.store.list_properties()
        return self.properties_for_user(user_id)

    def account_members(self, account_id: int) -> List[AccountMember]:
        self.get_account(account_id)
        return self.store.list_account_members(account_id)

    def property_members(self, property_id: int) -> List[PropertyMember]:
        self.get_property(property_id)
        return self.store.list_property_members(property_id)

    # -- systems -----------------------------------------------------------

    def list_systems(self, property_id: int) -> List[System]:
        return self.store.list_systems(property_id)

    def create_system(
        self,
        property_id: int,
        system_type: str,
        *,
        name: Optional[str] = None,
        installed_year: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> System:
        if not system_type or not system_type.strip():
            raise ValidationError("systemType is required")
        self.get_property(property_id)
        system = self.store.create_system(
            property_id,
            system_type.strip(),
            name=name,
            installed_year=installed_year,
            notes=notes,
            created_by=created_by,
        )
        logger.info("system_created", property_id=property_id, system_id=system.id)
        return system

    # -- plans -------------------------------------------------------------

    def limits_for_account(self, account_id: int) -> TierLimits:
        best: Optional[SubscriptionProduct] = None
        for subscription in self.store.list_subscriptions(account_id):
            if subscription.status != "active":
                continue
            product = self.store.get_product(subscription.product_id)
            if product and (best is None or product.price > best.price):
                best = product
        if best:
            return best.limits
        free = self.store.get_product_by_name("free")
        if free and free.is_active:
            return free.limits
        return TierLimits()

    def check_property_invitation_limits(self, property_id: int, role: str) -> None:
        """Refuse a property invitation that would exceed the plan's seat limits."""
        prop = self.get_property(property_id)
        limits = self.limits_for_account(prop.account_id)
        if role == PropertyRole.VIEWER.value:
            viewers = self.store.count_property_members(property_id, role=PropertyRole.VIEWER.value)
            if viewers >= limits.max_viewers:
                raise ForbiddenError(f"Viewer limit reached ({viewers}/{limits.max_viewers})")
        members = self.store.count_property_members(property_id)
        if members >= limits.max_team_members:
            raise ForbiddenError(
                f"Team member limit reached ({members}/{limits.max_team_members})"
            )

    def seed_default_products(self) -> List[SubscriptionProduct]:
        existing = self.store.list_products()
        if existing:
            return existing
        created = []
        for name, target_role, price, limits in DEFAULT_PRODUCTS:
            try:
                created.append(
                    self.store.create_product(
                        name, target_role=target_role, price=price, limits=limits
                    )
                )
            except ConstraintViolation:
                # Another process seeded concurrently
                continue
        logger.info("default_products_seeded", products=[p.name for p in created])
        return created

    def create_default_subscription(
        self, account_id: int, user_role: str
    ) -> Optional[AccountSubscription]:
        product_name = "professional" if user_role == Role.AGENT.value else "basic"
        product = self.store.get_product_by_name(product_name)
        if product is None and product_name != "basic":
            product = self.store.get_product_by_name("basic")
        if product is None:
            logger.warning("default_product_missing", account_id=account_id, product=product_name)
            return None
        start = datetime.now(timezone.utc)
        return self.store.create_subscription(
            account_id,
            product.id,
            status="active",
            current_period_start=start,
            current_period_end=add_one_month(start),
        )

    def seed_default_subscription(self, account_id: int, user_role: str) -> None:
        """Best-effort subscription seeding; failures are logged and rolled back alone."""
        try:
            with self.store.transaction():
                self.create_default_subscription(account_id, user_role)
        except Exception as exc:
            logger.warning(
                "default_subscription_failed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )


__all__ = [
    "TenantService",
    "PROPERTY_UID_RE",
    "generate_property_uid",
    "generate_passport_id",
    "slugify",
    "DEFAULT_PRODUCTS",
]
