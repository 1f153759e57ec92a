"""Store contract shared by the in-memory and Postgres backends."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Sequence

from homeops.storage.models import (
    Account,
    AccountMember,
    AccountSubscription,
    BackupCode,
    Contact,
    Invitation,
    MfaEnrollment,
    Property,
    PropertyMember,
    RefreshToken,
    SubscriptionProduct,
    System,
    TierLimits,
    UsageEvent,
    User,
    UserInvitation,
)

# Columns callers may change through update_user; role/email/password have dedicated paths
USER_MUTABLE_FIELDS = frozenset({"display_name", "phone", "image", "contact_id"})


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class HomeOpsStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: str = "",
        display_name: Optional[str] = None,
        role: str = "homeowner",
        is_active: bool = True,
        phone: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        active_only: bool = False,
        user_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
    ) -> List[User]: ...

    def update_user(self, user_id: int, **fields) -> Optional[User]: ...

    def set_user_password(self, user_id: int, password_hash: str) -> None: ...

    def set_user_active(
        self, user_id: int, is_active: bool, *, password_hash: Optional[str] = None
    ) -> None: ...

    def set_user_role(self, user_id: int, role: str) -> Optional[User]: ...

    def set_user_mfa(
        self,
        user_id: int,
        *,
        enabled: bool,
        secret: Optional[str],
        key_id: Optional[str] = None,
    ) -> None: ...

    def delete_user(self, user_id: int) -> bool: ...

    def link_oauth_identity(
        self, provider: str, subject: str, user_id: int, email: Optional[str] = None
    ) -> None: ...

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]: ...

    # refresh tokens
    def store_refresh_token(
        self, token_hash: str, user_id: int, expires_at: datetime
    ) -> RefreshToken: ...

    def find_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_hash: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: int) -> int: ...

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    # mfa
    def upsert_mfa_enrollment(
        self,
        user_id: int,
        secret_ciphertext: str,
        expires_at: datetime,
        key_id: Optional[str] = None,
    ) -> MfaEnrollment: ...

    def get_mfa_enrollment(self, user_id: int) -> Optional[MfaEnrollment]: ...

    def delete_mfa_enrollment(self, user_id: int) -> None: ...

    def sweep_expired_mfa_enrollments(self, now: Optional[datetime] = None) -> int: ...

    def replace_backup_codes(self, user_id: int, code_hashes: Sequence[str]) -> None: ...

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool: ...

    def count_unused_backup_codes(self, user_id: int) -> int: ...

    def list_backup_codes(self, user_id: int) -> List[BackupCode]: ...

    def delete_backup_codes(self, user_id: int) -> None: ...

    # accounts
    def create_account(
        self, name: str, url: str, owner_user_id: Optional[int] = None
    ) -> Account: ...

    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_url(self, url: str) -> Optional[Account]: ...

    def list_accounts(self) -> List[Account]: ...

    def list_accounts_for_user(self, user_id: int) -> List[Account]: ...

    def delete_account(self, account_id: int) -> bool: ...

    def add_account_member(
        self, account_id: int, user_id: int, role: str
    ) -> AccountMember: ...

    def get_account_member(
        self, account_id: int, user_id: int
    ) -> Optional[AccountMember]: ...

    def list_account_members(self, account_id: int) -> List[AccountMember]: ...

    def remove_account_member(self, account_id: int, user_id: int) -> bool: ...

    def set_account_member_role(
        self, account_id: int, user_id: int, role: str
    ) -> Optional[AccountMember]: ...

    def is_user_in_account(self, user_id: int, account_id: int) -> bool: ...

    def users_share_account(self, user_a: int, user_b: int) -> bool: ...

    def count_owned_accounts(self, user_id: int) -> int: ...

    # properties
    def create_property(
        self,
        account_id: int,
        property_uid: str,
        *,
        passport_id: Optional[str] = None,
        address: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        zip: Optional[str] = None,
    ) -> Property: ...

    def get_property(self, property_id: int) -> Optional[Property]: ...

    def get_property_by_uid(self, property_uid: str) -> Optional[Property]: ...

    def list_properties(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Property]: ...

    def list_properties_for_user(self, user_id: int) -> List[Property]: ...

    def count_properties(self, account_id: int) -> int: ...

    def passport_id_exists(self, passport_id: str) -> bool: ...

    def delete_property(self, property_id: int) -> bool: ...

    def add_property_member(
        self, property_id: int, user_id: int, role: str
    ) -> PropertyMember: ...

    def get_property_member(
        self, property_id: int, user_id: int
    ) -> Optional[PropertyMember]: ...

    def list_property_members(self, property_id: int) -> List[PropertyMember]: ...

    def remove_property_member(self, property_id: int, user_id: int) -> bool: ...

    def count_property_members(
        self, property_id: int, *, role: Optional[str] = None
    ) -> int: ...

    def is_user_on_property(self, user_id: int, property_id: int) -> bool: ...

    def create_system(
        self,
        property_id: int,
        system_type: str,
        *,
        name: Optional[str] = None,
        installed_year: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> System: ...

    def list_systems(self, property_id: int) -> List[System]: ...

    # contacts
    def create_contact(
        self,
        account_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact: ...

    def get_contacts(self, contact_ids: Iterable[int]) -> List[Contact]: ...

    def list_contacts(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Contact]: ...

    def find_contact_by_email(self, account_id: int, email: str) -> Optional[Contact]: ...

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]: ...

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]: ...

    def list_invitations(
        self,
        *,
        inviter_user_id: Optional[int] = None,
        account_id: Optional[int] = None,
        property_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Invitation]: ...

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        from_status: str,
        to_status: str,
        accepted_by_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Invitation]: ...

    def expire_pending_invitations(self, now: Optional[datetime] = None) -> int: ...

    def create_user_invitation(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> UserInvitation: ...

    def find_valid_user_invitation(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[UserInvitation]: ...

    def mark_user_invitation_used(self, invitation_id: int) -> bool: ...

    # billing
    def create_product(
        self,
        name: str,
        *,
        target_role: str = "homeowner",
        price: Decimal = Decimal("0"),
        billing_interval: str = "month",
        limits: Optional[TierLimits] = None,
        is_active: bool = True,
    ) -> SubscriptionProduct: ...

    def list_products(self, *, active_only: bool = False) -> List[SubscriptionProduct]: ...

    def get_product_by_name(self, name: str) -> Optional[SubscriptionProduct]: ...

    def get_product(self, product_id: int) -> Optional[SubscriptionProduct]: ...

    def create_subscription(
        self,
        account_id: int,
        product_id: int,
        *,
        status: str = "active",
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> AccountSubscription: ...

    def list_subscriptions(self, account_id: int) -> List[AccountSubscription]: ...

    # usage
    def log_usage_event(
        self,
        account_id: int,
        *,
        user_id: Optional[int],
        category: str,
        model: Optional[str],
        prompt_tokens: int,
        completion_tokens: int,
        total_cost: Decimal,
        created_at: Optional[datetime] = None,
    ) -> UsageEvent: ...

    def sum_usage_since(self, account_id: int, since: datetime) -> Decimal: ...

    def list_usage_events(
        self, account_id: int, *, limit: int = 50, offset: int = 0
    ) -> List[UsageEvent]: ...

    def transaction(self) -> AbstractContextManager: ...


__all__ = ["HomeOpsStore", "USER_MUTABLE_FIELDS", "normalize_email"]
