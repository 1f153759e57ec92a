from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    password_hash: str = ""
    display_name: Optional[str] = None
    role: str = "homeowner"
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_key_id: Optional[str] = None
    image: Optional[str] = None
    phone: Optional[str] = None
    contact_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthIdentity:
    provider: str
    subject: str
    user_id: int
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: int
    name: str
    url: str
    owner_user_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountMember:
    account_id: int
    user_id: int
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Property:
    id: int
    property_uid: str
    account_id: int
    passport_id: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PropertyMember:
    property_id: int
    user_id: int
    role: str = "viewer"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class System:
    id: int
    property_id: int
    system_type: str
    name: Optional[str] = None
    installed_year: Optional[int] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Contact:
    id: int
    account_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token_hash: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaEnrollment:
    user_id: int
    secret_ciphertext: str
    expires_at: datetime
    key_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BackupCode:
    user_id: int
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    type: str
    inviter_user_id: int
    invitee_email: str
    account_id: Optional[int]
    intended_role: str
    token_hash: str
    expires_at: datetime
    property_id: Optional[int] = None
    status: str = "pending"
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.status == "pending" and self.expires_at > (now or utcnow())


@dataclass
class UserInvitation:
    """Single-use activation token for an admin-provisioned user."""

    id: int
    user_id: int
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageEvent:
    id: int
    account_id: int
    user_id: Optional[int]
    category: str
    model: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TierLimits:
    max_properties: int = 3
    max_contacts: int = 50
    max_viewers: int = 5
    max_team_members: int = 10

    @classmethod
    def from_dict(cls, raw: Optional[Dict]) -> "TierLimits":
        raw = raw or {}
        default = cls()
        return cls(
            max_properties=int(raw.get("max_properties", default.max_properties)),
            max_contacts=int(raw.get("max_contacts", default.max_contacts)),
            max_viewers=int(raw.get("max_viewers", default.max_viewers)),
            max_team_members=int(raw.get("max_team_members", default.max_team_members)),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "max_properties": self.max_properties,
            "max_contacts": self.max_contacts,
            "max_viewers": self.max_viewers,
            "max_team_members": self.max_team_members,
        }


@dataclass
class SubscriptionProduct:
    id: int
    name: str
    target_role: str = "homeowner"
    price: Decimal = Decimal("0")
    billing_interval: str = "month"
    limits: TierLimits = field(default_factory=TierLimits)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountSubscription:
    id: int
    account_id: int
    product_id: int
    status: str = "active"
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
