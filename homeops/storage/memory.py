from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from homeops.logging import get_logger
from homeops.storage.common import USER_MUTABLE_FIELDS, normalize_email
from homeops.storage.errors import ConstraintViolation
from homeops.storage.models import (
    Account,
    AccountMember,
    AccountSubscription,
    BackupCode,
    Contact,
    Invitation,
    MfaEnrollment,
    OAuthIdentity,
    Property,
    PropertyMember,
    RefreshToken,
    SubscriptionProduct,
    System,
    TierLimits,
    UsageEvent,
    User,
    UserInvitation,
    utcnow,
)

# Attributes captured by transaction() snapshots
_TABLES = (
    "users",
    "oauth_identities",
    "refresh_tokens",
    "mfa_enrollments",
    "backup_codes",
    "accounts",
    "account_members",
    "properties",
    "property_members",
    "systems",
    "contacts",
    "invitations",
    "user_invitations",
    "products",
    "subscriptions",
    "usage_events",
    "_seq",
)


class MemoryStore:
    """In-process store used for tests and local development.

    All tables are plain dicts guarded by one re-entrant lock. ``transaction()``
    snapshots every table on entry and restores the snapshot when an exception
    escapes, which gives nested blocks savepoint semantics.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self.users: Dict[int, User] = {}
        self.oauth_identities: Dict[Tuple[str, str], OAuthIdentity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.mfa_enrollments: Dict[int, MfaEnrollment] = {}
        self.backup_codes: Dict[Tuple[int, str], BackupCode] = {}
        self.accounts: Dict[int, Account] = {}
        self.account_members: Dict[Tuple[int, int], AccountMember] = {}
        self.properties: Dict[int, Property] = {}
        self.property_members: Dict[Tuple[int, int], PropertyMember] = {}
        self.systems: Dict[int, System] = {}
        self.contacts: Dict[int, Contact] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.user_invitations: Dict[int, UserInvitation] = {}
        self.products: Dict[int, SubscriptionProduct] = {}
        self.subscriptions: Dict[int, AccountSubscription] = {}
        self.usage_events: Dict[int, UsageEvent] = {}
        self._seq: Dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            value = self._seq.get(table, 0) + 1
            self._seq[table] = value
            return value

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        password_hash: str = "",
        display_name: Optional[str] = None,
        role: str = "homeowner",
        is_active: bool = True,
        phone: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_id("users"),
                email=normalized,
                password_hash=password_hash or "",
                display_name=display_name,
                role=role,
                is_active=is_active,
                phone=phone,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        active_only: bool = False,
        user_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
    ) -> List[User]:
        wanted = set(user_ids) if user_ids is not None else None
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if (role is None or u.role == role)
                and (not active_only or u.is_active)
                and (wanted is None or u.id in wanted)
            ]
        results.sort(key=lambda u: u.id)
        return results[:limit] if limit else results

    def update_user(self, user_id: int, **fields) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                if key in USER_MUTABLE_FIELDS:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            return user

    def set_user_password(self, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def set_user_active(
        self, user_id: int, is_active: bool, *, password_hash: Optional[str] = None
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.is_active = is_active
            if password_hash is not None:
                user.password_hash = password_hash
            user.updated_at = utcnow()

    def set_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return user

    def set_user_mfa(
        self,
        user_id: int,
        *,
        enabled: bool,
        secret: Optional[str],
        key_id: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.mfa_enabled = enabled
            user.mfa_secret = secret
            user.mfa_key_id = key_id
            user.updated_at = utcnow()

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.mfa_enrollments.pop(user_id, None)
            self.oauth_identities = {
                k: v for k, v in self.oauth_identities.items() if v.user_id != user_id
            }
            self.refresh_tokens = {
                k: v for k, v in self.refresh_tokens.items() if v.user_id != user_id
            }
            self.backup_codes = {k: v for k, v in self.backup_codes.items() if k[0] != user_id}
            self.account_members = {
                k: v for k, v in self.account_members.items() if k[1] != user_id
            }
            self.property_members = {
                k: v for k, v in self.property_members.items() if k[1] != user_id
            }
            self.user_invitations = {
                k: v for k, v in self.user_invitations.items() if v.user_id != user_id
            }
            for account in self.accounts.values():
                if account.owner_user_id == user_id:
                    account.owner_user_id = None
            for event in self.usage_events.values():
                if event.user_id == user_id:
                    event.user_id = None
            return True

    def link_oauth_identity(
        self, provider: str, subject: str, user_id: int, email: Optional[str] = None
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for oauth", {"user_id": user_id})
            key = (provider, subject)
            existing = self.oauth_identities.get(key)
            if existing and existing.user_id != user_id:
                raise ConstraintViolation("oauth identity already linked", {"provider": provider})
            self.oauth_identities[key] = OAuthIdentity(
                provider=provider, subject=subject, user_id=user_id, email=email
            )

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]:
        with self._data_lock:
            identity = self.oauth_identities.get((provider, subject))
            return self.users.get(identity.user_id) if identity else None

    # -- refresh tokens ----------------------------------------------------

    def store_refresh_token(
        self, token_hash: str, user_id: int, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"field": "token_hash"})
            record = RefreshToken(token_hash=token_hash, user_id=user_id, expires_at=expires_at)
            self.refresh_tokens[token_hash] = record
            return record

    def find_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.expires_at <= now:
                return None
            return record

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_hash, None) is not None

    def delete_user_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            doomed = [h for h, r in self.refresh_tokens.items() if r.user_id == user_id]
            for token_hash in doomed:
                self.refresh_tokens.pop(token_hash, None)
            return len(doomed)

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            doomed = [h for h, r in self.refresh_tokens.items() if r.expires_at <= now]
            for token_hash in doomed:
                self.refresh_tokens.pop(token_hash, None)
            return len(doomed)

    # -- mfa ---------------------------------------------------------------

    def upsert_mfa_enrollment(
        self,
        user_id: int,
        secret_ciphertext: str,
        expires_at: datetime,
        key_id: Optional[str] = None,
    ) -> MfaEnrollment:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            enrollment = MfaEnrollment(
                user_id=user_id,
                secret_ciphertext=secret_ciphertext,
                expires_at=expires_at,
                key_id=key_id,
            )
            self.mfa_enrollments[user_id] = enrollment
            return enrollment

    def get_mfa_enrollment(self, user_id: int) -> Optional[MfaEnrollment]:
        with self._data_lock:
            return self.mfa_enrollments.get(user_id)

    def delete_mfa_enrollment(self, user_id: int) -> None:
        with self._data_lock:
            self.mfa_enrollments.pop(user_id, None)

    def sweep_expired_mfa_enrollments(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            doomed = [uid for uid, e in self.mfa_enrollments.items() if e.expires_at <= now]
            for user_id in doomed:
                self.mfa_enrollments.pop(user_id, None)
            return len(doomed)

    def replace_backup_codes(self, user_id: int, code_hashes: Sequence[str]) -> None:
        with self._data_lock:
            if len(set(code_hashes)) != len(code_hashes):
                raise ConstraintViolation("duplicate backup code", {"user_id": user_id})
            self.backup_codes = {k: v for k, v in self.backup_codes.items() if k[0] != user_id}
            for code_hash in code_hashes:
                self.backup_codes[(user_id, code_hash)] = BackupCode(
                    user_id=user_id, code_hash=code_hash
                )

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self._data_lock:
            record = self.backup_codes.get((user_id, code_hash))
            if not record or record.used_at is not None:
                return False
            record.used_at = utcnow()
            return True

    def count_unused_backup_codes(self, user_id: int) -> int:
        with self._data_lock:
            return sum(
                1
                for (owner, _), code in self.backup_codes.items()
                if owner == user_id and code.used_at is None
            )

    def list_backup_codes(self, user_id: int) -> List[BackupCode]:
        with self._data_lock:
            return [c for (owner, _), c in self.backup_codes.items() if owner == user_id]

    def delete_backup_codes(self, user_id: int) -> None:
        with self._data_lock:
            self.backup_codes = {k: v for k, v in self.backup_codes.items() if k[0] != user_id}

    # -- accounts ----------------------------------------------------------

    def create_account(
        self, name: str, url: str, owner_user_id: Optional[int] = None
    ) -> Account:
        with self._data_lock:
            if any(a.url == url for a in self.accounts.values()):
                raise ConstraintViolation("account url already exists", {"field": "url"})
            if owner_user_id is not None and owner_user_id not in self.users:
                raise ConstraintViolation("owner does not exist", {"user_id": owner_user_id})
            account = Account(
                id=self._next_id("accounts"), name=name, url=url, owner_user_id=owner_user_id
            )
            self.accounts[account.id] = account
            return account

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_url(self, url: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.url == url), None)

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return sorted(self.accounts.values(), key=lambda a: a.id)

    def list_accounts_for_user(self, user_id: int) -> List[Account]:
        with self._data_lock:
            ids = {aid for (aid, uid) in self.account_members if uid == user_id}
            return sorted(
                (self.accounts[aid] for aid in ids if aid in self.accounts),
                key=lambda a: a.id,
            )

    def delete_account(self, account_id: int) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.account_members = {
                k: v for k, v in self.account_members.items() if k[0] != account_id
            }
            for prop_id in [p.id for p in self.properties.values() if p.account_id == account_id]:
                self._delete_property_locked(prop_id)
            self.contacts = {k: v for k, v in self.contacts.items() if v.account_id != account_id}
            self.subscriptions = {
                k: v for k, v in self.subscriptions.items() if v.account_id != account_id
            }
            self.invitations = {
                k: v for k, v in self.invitations.items() if v.account_id != account_id
            }
            self.usage_events = {
                k: v for k, v in self.usage_events.items() if v.account_id != account_id
            }
            for user in self.users.values():
                if user.contact_id is not None and user.contact_id not in self.contacts:
                    user.contact_id = None
            return True

    def add_account_member(self, account_id: int, user_id: int, role: str) -> AccountMember:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            key = (account_id, user_id)
            if key in self.account_members:
                raise ConstraintViolation(
                    "user already in account", {"account_id": account_id, "user_id": user_id}
                )
            member = AccountMember(account_id=account_id, user_id=user_id, role=role)
            self.account_members[key] = member
            return member

    def get_account_member(self, account_id: int, user_id: int) -> Optional[AccountMember]:
        with self._data_lock:
            return self.account_members.get((account_id, user_id))

    def list_account_members(self, account_id: int) -> List[AccountMember]:
        with self._data_lock:
            members = [m for (aid, _), m in self.account_members.items() if aid == account_id]
        return sorted(members, key=lambda m: (m.created_at, m.user_id))

    def remove_account_member(self, account_id: int, user_id: int) -> bool:
        with self._data_lock:
            return self.account_members.pop((account_id, user_id), None) is not None

    def set_account_member_role(
        self, account_id: int, user_id: int, role: str
    ) -> Optional[AccountMember]:
        with self._data_lock:
            member = self.account_members.get((account_id, user_id))
            if member:
                member.role = role
            return member

    def is_user_in_account(self, user_id: int, account_id: int) -> bool:
        with self._data_lock:
            return (account_id, user_id) in self.account_members

    def users_share_account(self, user_a: int, user_b: int) -> bool:
        with self._data_lock:
            accounts_a = {aid for (aid, uid) in self.account_members if uid == user_a}
            return any(
                uid == user_b and aid in accounts_a for (aid, uid) in self.account_members
            )

    def count_owned_accounts(self, user_id: int) -> int:
        with self._data_lock:
            owned = {
                aid
                for (aid, uid), m in self.account_members.items()
                if uid == user_id and m.role == "owner"
            }
            owned.update(a.id for a in self.accounts.values() if a.owner_user_id == user_id)
            return len(owned)

    # -- properties --------------------------------------------------------

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
    ) -> Property:
        uid = property_uid.upper()
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if any(p.property_uid == uid for p in self.properties.values()):
                raise ConstraintViolation("property uid exists", {"field": "property_uid"})
            prop = Property(
                id=self._next_id("properties"),
                property_uid=uid,
                account_id=account_id,
                passport_id=passport_id,
                address=address,
                city=city,
                state=state,
                zip=zip,
            )
            self.properties[prop.id] = prop
            return prop

    def get_property(self, property_id: int) -> Optional[Property]:
        with self._data_lock:
            return self.properties.get(property_id)

    def get_property_by_uid(self, property_uid: str) -> Optional[Property]:
        uid = (property_uid or "").upper()
        with self._data_lock:
            return next((p for p in self.properties.values() if p.property_uid == uid), None)

    def list_properties(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Property]:
        wanted = set(account_ids) if account_ids is not None else None
        with self._data_lock:
            results = [
                p for p in self.properties.values() if wanted is None or p.account_id in wanted
            ]
        return sorted(results, key=lambda p: p.id)

    def list_properties_for_user(self, user_id: int) -> List[Property]:
        with self._data_lock:
            prop_ids = {pid for (pid, uid) in self.property_members if uid == user_id}
            account_ids = {aid for (aid, uid) in self.account_members if uid == user_id}
            results = [
                p
                for p in self.properties.values()
                if p.id in prop_ids or p.account_id in account_ids
            ]
        return sorted(results, key=lambda p: p.id)

    def count_properties(self, account_id: int) -> int:
        with self._data_lock:
            return sum(1 for p in self.properties.values() if p.account_id == account_id)

    def passport_id_exists(self, passport_id: str) -> bool:
        with self._data_lock:
            return any(p.passport_id == passport_id for p in self.properties.values())

    def _delete_property_locked(self, property_id: int) -> None:
        self.properties.pop(property_id, None)
        self.property_members = {
            k: v for k, v in self.property_members.items() if k[0] != property_id
        }
        self.systems = {k: v for k, v in self.systems.items() if v.property_id != property_id}
        self.invitations = {
            k: v for k, v in self.invitations.items() if v.property_id != property_id
        }

    def delete_property(self, property_id: int) -> bool:
        with self._data_lock:
            if property_id not in self.properties:
                return False
            self._delete_property_locked(property_id)
            return True

    def add_property_member(self, property_id: int, user_id: int, role: str) -> PropertyMember:
        with self._data_lock:
            if property_id not in self.properties:
                raise ConstraintViolation("property does not exist", {"property_id": property_id})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            key = (property_id, user_id)
            member = self.property_members.get(key)
            if member:
                member.role = role
                member.updated_at = utcnow()
                return member
            member = PropertyMember(property_id=property_id, user_id=user_id, role=role)
            self.property_members[key] = member
            return member

    def get_property_member(self, property_id: int, user_id: int) -> Optional[PropertyMember]:
        with self._data_lock:
            return self.property_members.get((property_id, user_id))

    def list_property_members(self, property_id: int) -> List[PropertyMember]:
        with self._data_lock:
            members = [m for (pid, _), m in self.property_members.items() if pid == property_id]
        return sorted(members, key=lambda m: (m.created_at, m.user_id))

    def remove_property_member(self, property_id: int, user_id: int) -> bool:
        with self._data_lock:
            return self.property_members.pop((property_id, user_id), None) is not None

    def count_property_members(self, property_id: int, *, role: Optional[str] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for (pid, _), m in self.property_members.items()
                if pid == property_id and (role is None or m.role == role)
            )

    def is_user_on_property(self, user_id: int, property_id: int) -> bool:
        with self._data_lock:
            return (property_id, user_id) in self.property_members

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
        with self._data_lock:
            if property_id not in self.properties:
                raise ConstraintViolation("property does not exist", {"property_id": property_id})
            system = System(
                id=self._next_id("systems"),
                property_id=property_id,
                system_type=system_type,
                name=name,
                installed_year=installed_year,
                notes=notes,
                created_by=created_by,
            )
            self.systems[system.id] = system
            return system

    def list_systems(self, property_id: int) -> List[System]:
        with self._data_lock:
            results = [s for s in self.systems.values() if s.property_id == property_id]
        return sorted(results, key=lambda s: s.id)

    # -- contacts ----------------------------------------------------------

    def create_contact(
        self,
        account_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            contact = Contact(
                id=self._next_id("contacts"),
                account_id=account_id,
                name=name,
                email=normalize_email(email) if email else None,
                phone=phone,
            )
            self.contacts[contact.id] = contact
            return contact

    def get_contacts(self, contact_ids: Iterable[int]) -> List[Contact]:
        wanted = set(contact_ids)
        with self._data_lock:
            results = [c for c in self.contacts.values() if c.id in wanted]
        return sorted(results, key=lambda c: c.id)

    def list_contacts(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Contact]:
        wanted = set(account_ids) if account_ids is not None else None
        with self._data_lock:
            results = [
                c for c in self.contacts.values() if wanted is None or c.account_id in wanted
            ]
        return sorted(results, key=lambda c: c.id)

    def find_contact_by_email(self, account_id: int, email: str) -> Optional[Contact]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (
                    c
                    for c in self.contacts.values()
                    if c.account_id == account_id and c.email == normalized
                ),
                None,
            )

    # -- invitations -------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> Invitation:
        with self._data_lock:
            if any(i.token_hash == invitation.token_hash for i in self.invitations.values()):
                raise ConstraintViolation("invitation token exists", {"field": "token_hash"})
            if not invitation.id:
                invitation.id = str(uuid.uuid4())
            invitation.invitee_email = normalize_email(invitation.invitee_email)
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            return self.invitations.get(invitation_id)

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._data_lock:
            return next(
                (i for i in self.invitations.values() if i.token_hash == token_hash), None
            )

    def list_invitations(
        self,
        *,
        inviter_user_id: Optional[int] = None,
        account_id: Optional[int] = None,
        property_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Invitation]:
        with self._data_lock:
            results = [
                i
                for i in self.invitations.values()
                if (inviter_user_id is None or i.inviter_user_id == inviter_user_id)
                and (account_id is None or i.account_id == account_id)
                and (property_id is None or i.property_id == property_id)
                and (status is None or i.status == status)
            ]
        return sorted(results, key=lambda i: i.created_at, reverse=True)

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        from_status: str,
        to_status: str,
        accepted_by_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation or invitation.status != from_status:
                return None
            invitation.status = to_status
            if to_status == "accepted":
                invitation.accepted_at = now or utcnow()
                invitation.accepted_by_user_id = accepted_by_user_id
            return invitation

    def expire_pending_invitations(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        count = 0
        with self._data_lock:
            for invitation in self.invitations.values():
                if invitation.status == "pending" and invitation.expires_at <= now:
                    invitation.status = "expired"
                    count += 1
        return count

    def create_user_invitation(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> UserInvitation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = UserInvitation(
                id=self._next_id("user_invitations"),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.user_invitations[record.id] = record
            return record

    def find_valid_user_invitation(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[UserInvitation]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    r
                    for r in self.user_invitations.values()
                    if r.token_hash == token_hash and r.used_at is None and r.expires_at > now
                ),
                None,
            )

    def mark_user_invitation_used(self, invitation_id: int) -> bool:
        with self._data_lock:
            record = self.user_invitations.get(invitation_id)
            if not record or record.used_at is not None:
                return False
            record.used_at = utcnow()
            return True

    # -- billing -----------------------------------------------------------

    def create_product(
        self,
        name: str,
        *,
        target_role: str = "homeowner",
        price: Decimal = Decimal("0"),
        billing_interval: str = "month",
        limits: Optional[TierLimits] = None,
        is_active: bool = True,
    ) -> SubscriptionProduct:
        with self._data_lock:
            if any(p.name == name for p in self.products.values()):
                raise ConstraintViolation("product name already exists", {"field": "name"})
            product = SubscriptionProduct(
                id=self._next_id("products"),
                name=name,
                target_role=target_role,
                price=Decimal(price),
                billing_interval=billing_interval,
                limits=limits or TierLimits(),
                is_active=is_active,
            )
            self.products[product.id] = product
            return product

    def list_products(self, *, active_only: bool = False) -> List[SubscriptionProduct]:
        with self._data_lock:
            results = [p for p in self.products.values() if not active_only or p.is_active]
        return sorted(results, key=lambda p: p.id)

    def get_product_by_name(self, name: str) -> Optional[SubscriptionProduct]:
        with self._data_lock:
            return next((p for p in self.products.values() if p.name == name), None)

    def get_product(self, product_id: int) -> Optional[SubscriptionProduct]:
        with self._data_lock:
            return self.products.get(product_id)

    def create_subscription(
        self,
        account_id: int,
        product_id: int,
        *,
        status: str = "active",
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> AccountSubscription:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if product_id not in self.products:
                raise ConstraintViolation("product does not exist", {"product_id": product_id})
            subscription = AccountSubscription(
                id=self._next_id("subscriptions"),
                account_id=account_id,
                product_id=product_id,
                status=status,
                current_period_start=current_period_start,
                current_period_end=current_period_end,
            )
            self.subscriptions[subscription.id] = subscription
            return subscription

    def list_subscriptions(self, account_id: int) -> List[AccountSubscription]:
        with self._data_lock:
            results = [s for s in self.subscriptions.values() if s.account_id == account_id]
        return sorted(results, key=lambda s: s.id)

    # -- usage -------------------------------------------------------------

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
    ) -> UsageEvent:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            event = UsageEvent(
                id=self._next_id("usage_events"),
                account_id=account_id,
                user_id=user_id,
                category=category,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_cost=Decimal(total_cost),
                created_at=created_at or utcnow(),
            )
            self.usage_events[event.id] = event
            return event

    def sum_usage_since(self, account_id: int, since: datetime) -> Decimal:
        with self._data_lock:
            return sum(
                (
                    e.total_cost
                    for e in self.usage_events.values()
                    if e.account_id == account_id and e.created_at >= since
                ),
                Decimal("0"),
            )

    def list_usage_events(
        self, account_id: int, *, limit: int = 50, offset: int = 0
    ) -> List[UsageEvent]:
        with self._data_lock:
            results = [e for e in self.usage_events.values() if e.account_id == account_id]
        results.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return results[offset : offset + limit]
