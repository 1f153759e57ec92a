from __future__ import annotations

import unicodedata
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_STRING_LENGTH = 4096
MAX_ID_LIST = 1000


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip surrounding whitespace."""
    return unicodedata.normalize("NFKC", value).strip()


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# -- auth ---------------------------------------------------------------------


class RegisterRequest(ApiModel):
    name: Optional[str] = Field(default=None, max_length=255)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    role: str = "homeowner"
    phone: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_unicode(value).lower()

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value) if value else value


class LoginRequest(ApiModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)


class MfaVerifyRequest(ApiModel):
    code: str = Field(..., max_length=64)
    mfa_ticket: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class RefreshRequest(ApiModel):
    refresh_token: str = Field(..., max_length=512)


class LogoutRequest(ApiModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ConfirmRequest(ApiModel):
    token: str = Field(..., max_length=512)
    password: str = Field(..., max_length=1024)
    name: Optional[str] = Field(default=None, max_length=255)


class OAuthExchangeRequest(ApiModel):
    code: str = Field(..., max_length=512)


# -- MFA ----------------------------------------------------------------------


class MfaConfirmRequest(ApiModel):
    code: Optional[str] = Field(default=None, max_length=16)
    token: Optional[str] = Field(default=None, max_length=16)

    @property
    def value(self) -> Optional[str]:
        return self.code or self.token


class MfaDisableRequest(ApiModel):
    code_or_backup_code: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, max_length=1024)


class MfaCodeRequest(ApiModel):
    code: str = Field(..., max_length=16)


# -- invitations --------------------------------------------------------------


class AccountInvitationRequest(ApiModel):
    invitee_email: str = Field(..., max_length=254)
    account_id: int
    role: Optional[str] = None


class PropertyInvitationRequest(ApiModel):
    invitee_email: str = Field(..., max_length=254)
    property_id: Union[int, str]
    role: Optional[str] = None
    account_id: Optional[int] = None


class AcceptInvitationRequest(ApiModel):
    token: str = Field(..., max_length=512)
    password: Optional[str] = Field(default=None, max_length=1024)
    name: Optional[str] = Field(default=None, max_length=255)


# -- users and tenants --------------------------------------------------------


class CreateUserRequest(ApiModel):
    email: str = Field(..., max_length=254)
    name: Optional[str] = Field(default=None, max_length=255)
    role: str = "homeowner"
    phone: Optional[str] = Field(default=None, max_length=64)


class UpdateUserRequest(ApiModel):
    """Partial profile update; unknown keys are rejected by the service."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    display_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=64)
    image: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class ChangePasswordRequest(ApiModel):
    current_password: Optional[str] = Field(default=None, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class SetRoleRequest(ApiModel):
    role: str


class CreateAccountRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=255)
    owner_user_id: int


class AddAccountUserRequest(ApiModel):
    user_id: int
    role: str = "member"


class CreatePropertyRequest(ApiModel):
    account_id: int
    address: Optional[str] = Field(default=None, max_length=512)
    city: Optional[str] = Field(default=None, max_length=255)
    state: Optional[str] = Field(default=None, max_length=64)
    zip: Optional[str] = Field(default=None, max_length=32)


class CreateSystemRequest(ApiModel):
    system_type: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(default=None, max_length=255)
    installed_year: Optional[int] = Field(default=None, ge=1800, le=2200)
    notes: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


# -- AI and resources ---------------------------------------------------------


class PropertyDetailsRequest(ApiModel):
    property_id: Optional[Union[int, str]] = None
    address: Optional[str] = Field(default=None, max_length=512)
    city: Optional[str] = Field(default=None, max_length=255)
    state: Optional[str] = Field(default=None, max_length=64)
    zip: Optional[str] = Field(default=None, max_length=32)
    model: Optional[str] = Field(default=None, max_length=128)


class RecipientsRequest(ApiModel):
    mode: str
    ids: List[Any] = Field(default_factory=list, max_length=MAX_ID_LIST)


# -- responses ----------------------------------------------------------------


class UserOut(ApiModel):
    id: int
    email: str
    display_name: Optional[str] = None
    role: str
    is_active: bool
    mfa_enabled: bool
    image: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AccountOut(ApiModel):
    id: int
    name: str
    url: str
    owner_user_id: Optional[int] = None
    created_at: datetime


class AccountMemberOut(ApiModel):
    account_id: int
    user_id: int
    role: str
    created_at: datetime


class PropertyOut(ApiModel):
    id: int
    property_uid: str
    account_id: int
    passport_id: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    created_at: datetime


class PropertyMemberOut(ApiModel):
    property_id: int
    user_id: int
    role: str


class SystemOut(ApiModel):
    id: int
    property_id: int
    system_type: str
    name: Optional[str] = None
    installed_year: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class InvitationOut(ApiModel):
    id: str
    type: str
    inviter_user_id: int
    invitee_email: str
    account_id: Optional[int] = None
    property_id: Optional[int] = None
    intended_role: str
    status: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[int] = None
    created_at: datetime


class ContactOut(ApiModel):
    id: int
    account_id: int
    name: Optional[str] = None
    email: Optional[str] = None


class UsageEventOut(ApiModel):
    id: int
    account_id: int
    user_id: Optional[int] = None
    category: str
    model: Optional[str] = None
    prompt_tokens: int
    completion_tokens: int
    total_cost: float
    created_at: datetime

    @field_validator("total_cost", mode="before")
    @classmethod
    def _cost(cls, value: Any) -> float:
        return float(value) if isinstance(value, Decimal) else value


def dump(model: type[ApiModel], obj: Any) -> dict:
    return model.model_validate(obj).to_wire()


def dump_all(model: type[ApiModel], objs) -> List[dict]:
    return [dump(model, o) for o in objs]
