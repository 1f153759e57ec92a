from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set

from homeops.logging import get_logger
from homeops.service.errors import ValidationError
from homeops.service.roles import Principal, Role
from homeops.service.tenants import TenantService
from homeops.storage.common import HomeOpsStore, normalize_email
from homeops.storage.models import Contact, User

logger = get_logger(__name__)


class RecipientMode(str, Enum):
    ALL_CONTACTS = "all_contacts"
    SPECIFIC_CONTACTS = "specific_contacts"
    ALL_HOMEOWNERS = "all_homeowners"
    ALL_USERS = "all_users"
    ALL_AGENTS = "all_agents"
    SPECIFIC_USERS = "specific_users"


@dataclass
class RecipientSet:
    contacts: List[Contact] = field(default_factory=list)
    users: List[User] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.emails)


def _clean_ids(ids: Optional[Iterable]) -> List[int]:
    cleaned = []
    for value in ids or ():
        try:
            cleaned.append(int(value))
        except (TypeError, ValueError):
            continue
    return cleaned


class RecipientResolver:
    """Expand a broadcast mode into the recipients the caller may reach."""

    def __init__(self, store: HomeOpsStore, tenants: TenantService) -> None:
        self.store = store
        self.tenants = tenants

    def _parse_mode(self, mode: str) -> RecipientMode:
        try:
            return RecipientMode(mode)
        except ValueError:
            raise ValidationError(
                f"Unknown recipient mode: {mode}",
                detail={"fields": [{"field": "mode", "message": "invalid"}]},
            ) from None

    def _admin_selection(self, mode: RecipientMode, ids: List[int]):
        contacts: List[Contact] = []
        users: List[User] = []
        if mode is RecipientMode.ALL_CONTACTS:
            contacts = self.store.list_contacts()
        elif mode is RecipientMode.SPECIFIC_CONTACTS:
            contacts = self.store.get_contacts(ids)
        elif mode is RecipientMode.ALL_HOMEOWNERS:
            users = self.store.list_users(role=Role.HOMEOWNER.value, active_only=True)
        elif mode is RecipientMode.ALL_USERS:
            users = self.store.list_users(active_only=True)
        elif mode is RecipientMode.ALL_AGENTS:
            users = self.store.list_users(role=Role.AGENT.value, active_only=True)
        elif mode is RecipientMode.SPECIFIC_USERS:
            users = self.store.list_users(active_only=True, user_ids=ids) if ids else []
        return contacts, users

    def _agent_selection(self, principal: Principal, mode: RecipientMode, ids: List[int]):
        account_ids = [a.id for a in self.tenants.accounts_for_user(principal.id)]
        contacts: List[Contact] = []
        users: List[User] = []
        if not account_ids:
            return contacts, users
        if mode is RecipientMode.ALL_CONTACTS:
            contacts = self.store.list_contacts(account_ids=account_ids)
        elif mode is RecipientMode.SPECIFIC_CONTACTS:
            allowed = set(account_ids)
            contacts = [c for c in self.store.get_contacts(ids) if c.account_id in allowed]
        elif mode is RecipientMode.ALL_HOMEOWNERS:
            member_ids: Set[int] = set()
            for account_id in account_ids:
                member_ids.update(m.user_id for m in self.store.list_account_members(account_id))
            if member_ids:
                users = self.store.list_users(
                    role=Role.HOMEOWNER.value, active_only=True, user_ids=member_ids
                )
        return contacts, users

    def resolve(self, principal: Principal, mode: str, ids: Optional[Iterable] = None) -> RecipientSet:
        parsed = self._parse_mode(mode)
        cleaned = _clean_ids(ids)
        if principal.is_platform_admin:
            contacts, users = self._admin_selection(parsed, cleaned)
        elif principal.role == Role.AGENT.value:
            contacts, users = self._agent_selection(principal, parsed, cleaned)
        else:
            contacts, users = [], []

        result = RecipientSet()
        seen: Set[str] = set()
        for contact in contacts:
            if contact.email and normalize_email(contact.email) not in seen:
                seen.add(normalize_email(contact.email))
                result.contacts.append(contact)
                result.emails.append(normalize_email(contact.email))
        for user in users:
            email = normalize_email(user.email)
            if email not in seen:
                seen.add(email)
                result.users.append(user)
                result.emails.append(email)
        logger.info(
            "recipients_resolved",
            user_id=principal.id,
            mode=parsed.value,
            count=result.count,
        )
        return result

    def estimate(self, principal: Principal, mode: str, ids: Optional[Iterable] = None) -> int:
        return self.resolve(principal, mode, ids).count


__all__ = ["RecipientResolver", "RecipientMode", "RecipientSet"]
