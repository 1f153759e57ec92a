"""Account and property invitations with an all-or-nothing accept script."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from homeops.config import Settings
from homeops.logging import get_logger
from homeops.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInvitation,
    NotFoundError,
    ValidationError,
)
from homeops.service.identity import IdentityService, validate_email
from homeops.service.roles import (
    PROPERTY_WRITE_ROLES,
    AccountRole,
    Principal,
    PropertyRole,
    Role,
)
from homeops.service.tenants import TenantService
from homeops.service.tokens import InvitationTokens
from homeops.storage.common import HomeOpsStore, normalize_email
from homeops.storage.models import Invitation, User, utcnow

logger = get_logger(__name__)

INVITATION_TYPES = ("account", "property")


@dataclass
class AcceptResult:
    user: User
    invitation: Invitation
    created_user: bool = False


class InvitationService:
    def __init__(
        self,
        store: HomeOpsStore,
        settings: Settings,
        identity: IdentityService,
        tenants: TenantService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.identity = identity
        self.tenants = tenants

    def _new_invitation(
        self,
        *,
        type: str,
        inviter: Principal,
        invitee_email: str,
        account_id: Optional[int],
        property_id: Optional[int],
        intended_role: str,
    ) -> Tuple[Invitation, str]:
        raw, token_hash = InvitationTokens.generate()
        invitation = self.store.create_invitation(
            Invitation(
                id=str(uuid.uuid4()),
                type=type,
                inviter_user_id=inviter.id,
                invitee_email=invitee_email,
                account_id=account_id,
                property_id=property_id,
                intended_role=intended_role,
                token_hash=token_hash,
                expires_at=utcnow() + timedelta(hours=self.settings.invitation_ttl_hours),
            )
        )
        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            type=type,
            account_id=account_id,
            property_id=property_id,
            inviter_user_id=inviter.id,
        )
        return invitation, raw

    def create_account_invitation(
        self,
        inviter: Principal,
        invitee_email: str,
        account_id: int,
        role: Optional[str] = None,
    ) -> Tuple[Invitation, str]:
        """Invite someone into an account. The raw token is returned only here."""
        role = role or AccountRole.MEMBER.value
        if role not in {r.value for r in AccountRole}:
            raise ValidationError(f"Invalid account role: {role}")
        email = validate_email(invitee_email)
        self.tenants.get_account(account_id)
        if (
            role == AccountRole.OWNER.value
            and not inviter.is_platform_admin
            and self.tenants.account_role(inviter.id, account_id) != AccountRole.OWNER.value
        ):
            raise ForbiddenError("Only account owners can invite owners")
        existing = self.store.get_user_by_email(email)
        if existing and self.store.is_user_in_account(existing.id, account_id):
            raise ConflictError("User already belongs to this account")
        return self._new_invitation(
            type="account",
            inviter=inviter,
            invitee_email=email,
            account_id=account_id,
            property_id=None,
            intended_role=role,
        )

    def create_property_invitation(
        self,
        inviter: Principal,
        invitee_email: str,
        property_id: int,
        role: Optional[str] = None,
        account_id: Optional[int] = None,
    ) -> Tuple[Invitation, str]:
        role = role or PropertyRole.EDITOR.value
        if role not in {r.value for r in PropertyRole}:
            raise ValidationError(f"Invalid property role: {role}")
        email = validate_email(invitee_email)
        prop = self.tenants.get_property(property_id)
        if account_id is not None and account_id != prop.account_id:
            raise ValidationError("Property does not belong to that account")

        if not inviter.is_platform_admin:
            member = self.store.get_property_member(prop.id, inviter.id)
            if not member or member.role not in PROPERTY_WRITE_ROLES:
                raise ForbiddenError("Only property owners and editors can invite")
            if role == PropertyRole.OWNER.value and member.role != PropertyRole.OWNER.value:
                raise ForbiddenError("Only property owners can invite owners")
            self.tenants.check_property_invitation_limits(prop.id, role)

        return self._new_invitation(
            type="property",
            inviter=inviter,
            invitee_email=email,
            account_id=prop.account_id,
            property_id=prop.id,
            intended_role=role,
        )

    def validate_token(self, raw_token: str) -> Invitation:
        if not raw_token:
            raise InvalidInvitation("Invalid or expired invitation")
        invitation = self.store.get_invitation_by_token_hash(InvitationTokens.hash(raw_token))
        if not invitation or not invitation.is_valid(utcnow()):
            raise InvalidInvitation("Invalid or expired invitation")
        return invitation

    def accept(
        self,
        raw_token: str,
        *,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AcceptResult:
        """Accept an invitation.

        Every write happens inside one transaction; if any step raises, the
        user, memberships, contacts and the invitation status are left as they
        were. The default subscription for a brand new account is the one
        best-effort step: its failure is logged and does not abort the accept.
        """
        with self.store.transaction():
            invitation = self.validate_token(raw_token)
            user = self.store.get_user_by_email(invitation.invitee_email)
            created = False

            if user is None:
                if not password or not display_name:
                    raise ValidationError(
                        "Name and password are required for new users",
                        detail={
                            "fields": [
                                {"field": f, "message": "required"}
                                for f, v in (("password", password), ("name", display_name))
                                if not v
                            ]
                        },
                    )
                user = self.identity.register(
                    invitation.invitee_email,
                    password,
                    display_name=display_name,
                    role=Role.HOMEOWNER.value,
                    is_active=True,
                )
                created = True
                account = self.tenants.create_account(display_name, user.id)
                self.tenants.seed_default_subscription(account.id, user.role)
                contact = self.store.create_contact(
                    account.id, name=display_name, email=invitation.invitee_email
                )
                user = self.identity.update(user.id, contact_id=contact.id)
            elif not user.is_active and password:
                user = self.identity.activate_from_invitation(user.id, password)

            accepted = self.store.transition_invitation(
                invitation.id,
                from_status="pending",
                to_status="accepted",
                accepted_by_user_id=user.id,
                now=utcnow(),
            )
            if accepted is None:
                raise InvalidInvitation("Invalid or expired invitation")

            if accepted.type == "property" and accepted.property_id:
                self.tenants.add_property_member(
                    accepted.property_id,
                    user.id,
                    accepted.intended_role or PropertyRole.EDITOR.value,
                )

            if accepted.account_id:
                if not self.store.is_user_in_account(user.id, accepted.account_id):
                    # A property role never carries over into account ownership
                    account_role = (
                        accepted.intended_role
                        if accepted.type == "account"
                        and accepted.intended_role in {r.value for r in AccountRole}
                        else AccountRole.MEMBER.value
                    )
                    self.tenants.add_account_member(accepted.account_id, user.id, account_role)
                if not self.store.find_contact_by_email(
                    accepted.account_id, invitation.invitee_email
                ):
                    self.store.create_contact(
                        accepted.account_id,
                        name=user.display_name or invitation.invitee_email,
                        email=invitation.invitee_email,
                    )

        logger.info(
            "invitation_accepted",
            invitation_id=accepted.id,
            user_id=user.id,
            created_user=created,
        )
        return AcceptResult(user=user, invitation=accepted, created_user=created)

    # -- state transitions --------------------------------------------------

    def _require(self, invitation_id: str) -> Invitation:
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            raise NotFoundError("Invitation not found")
        return invitation

    def _transition(self, invitation: Invitation, to_status: str) -> Invitation:
        updated = self.store.transition_invitation(
            invitation.id, from_status="pending", to_status=to_status
        )
        if updated is None:
            raise ConflictError(f"Invitation is already {invitation.status}")
        logger.info("invitation_" + to_status, invitation_id=invitation.id)
        return updated

    def decline(self, invitation_id: str, actor: Principal) -> Invitation:
        invitation = self._require(invitation_id)
        allowed = (
            actor.is_platform_admin
            or actor.id == invitation.inviter_user_id
            or normalize_email(actor.email) == invitation.invitee_email
        )
        if not allowed:
            raise ForbiddenError("Not allowed to decline this invitation")
        return self._transition(invitation, "declined")

    def revoke(self, invitation_id: str, actor: Principal) -> Invitation:
        invitation = self._require(invitation_id)
        allowed = (
            actor.is_platform_admin
            or actor.id == invitation.inviter_user_id
            or (
                invitation.account_id is not None
                and self.store.is_user_in_account(actor.id, invitation.account_id)
            )
        )
        if not allowed:
            raise ForbiddenError("Not allowed to revoke this invitation")
        return self._transition(invitation, "revoked")

    def expire_pending(self) -> int:
        count = self.store.expire_pending_invitations(utcnow())
        if count:
            logger.info("invitations_expired", count=count)
        return count

    # -- listings -----------------------------------------------------------

    def list_sent(self, inviter_user_id: int) -> List[Invitation]:
        return self.store.list_invitations(inviter_user_id=inviter_user_id)

    def list_for_account(self, account_id: int, status: Optional[str] = None) -> List[Invitation]:
        return self.store.list_invitations(account_id=account_id, status=status)

    def list_for_property(self, property_id: int, status: Optional[str] = None) -> List[Invitation]:
        return self.store.list_invitations(property_id=property_id, status=status)


__all__ = ["InvitationService", "AcceptResult", "INVITATION_TYPES"]
