from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request
from fastapi.responses import RedirectResponse

from homeops.api.schemas import (
    AcceptInvitationRequest,
    AccountInvitationRequest,
    AccountMemberOut,
    AccountOut,
    AddAccountUserRequest,
    ChangePasswordRequest,
    ConfirmRequest,
    ContactOut,
    CreateAccountRequest,
    CreatePropertyRequest,
    CreateSystemRequest,
    CreateUserRequest,
    InvitationOut,
    LoginRequest,
    LogoutRequest,
    MfaCodeRequest,
    MfaConfirmRequest,
    MfaDisableRequest,
    MfaVerifyRequest,
    OAuthExchangeRequest,
    PropertyDetailsRequest,
    PropertyInvitationRequest,
    PropertyMemberOut,
    PropertyOut,
    RecipientsRequest,
    RefreshRequest,
    RegisterRequest,
    SetRoleRequest,
    SystemOut,
    UpdateUserRequest,
    UsageEventOut,
    UserOut,
    dump,
    dump_all,
)
from homeops.logging import get_logger
from homeops.service.errors import AuthenticationError, ForbiddenError, ServiceError
from homeops.service.llm import parse_json_content, property_details_messages
from homeops.service.policy import (
    AuthState,
    Guard,
    RequestContext,
    Source,
    require_account_membership,
    require_account_owner,
    require_any_role,
    require_authenticated,
    require_platform_admin,
    require_property_access,
    require_property_owner,
    require_property_write,
    require_role,
    require_self_by_id,
    require_shared_account_to_view_user,
)
from homeops.service.roles import PLATFORM_ADMINS, Principal, Role
from homeops.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

PROFILE_FIELDS = frozenset({"display_name", "phone", "image"})


# -- request authentication ------------------------------------------------------


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def attach_principal(request: Request) -> None:
    """Decode the bearer token onto ``request.state``; never raises on a bad token."""
    token = _bearer_token(request.headers.get("Authorization"))
    principal: Optional[Principal] = None
    state = AuthState.NONE
    if token:
        principal = get_runtime().auth.validate_access_token(token)
        state = AuthState.VALID if principal else AuthState.INVALID
    request.state.principal = principal
    request.state.auth_state = state


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def guarded(*guards: Guard) -> Callable:
    """Dependency factory: build the request context and run ``guards`` in order."""
    needs_body = any(g.source is Source.BODY for g in guards)

    async def dependency(request: Request) -> RequestContext:
        if not hasattr(request.state, "auth_state"):
            attach_principal(request)
        ctx = RequestContext(
            principal=request.state.principal,
            auth_state=request.state.auth_state,
            path_params=dict(request.path_params),
            query_params=dict(request.query_params),
            body=await _json_body(request) if needs_body else None,
        )
        return get_runtime().policy.check_all(guards, ctx)

    return dependency


authenticated = guarded(require_authenticated())
platform_admin = guarded(require_platform_admin())


def _user_payload(user) -> dict:
    return dump(UserOut, user)


# -- auth ------------------------------------------------------------------------


@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Self-service sign-up.

    Creates an active user, a default account they own and its starter
    subscription, then returns a token pair.
    """
    runtime = get_runtime()
    tokens = runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        phone=body.phone,
    )
    return {**tokens.as_response(), "user": _user_payload(tokens.user)}


@router.post("/auth/token", tags=["auth"])
async def login(body: LoginRequest):
    """Password login. Returns tokens, or an MFA ticket when MFA is enabled."""
    runtime = get_runtime()
    return runtime.auth.login(body.email, body.password).as_response()


@router.post("/auth/mfa/verify", tags=["auth"])
async def mfa_verify(
    body: MfaVerifyRequest,
    authorization: Optional[str] = Header(None),
):
    """Second factor for a ticketed login.

    The ticket comes from ``mfaTicket`` in the body or the Authorization
    bearer. The code is a 6-digit TOTP or a backup code.
    """
    ticket = body.mfa_ticket or _bearer_token(authorization)
    if not ticket:
        raise AuthenticationError("MFA ticket required", error_code="INVALID_MFA_TICKET")
    runtime = get_runtime()
    tokens = await runtime.auth.verify_mfa_login(ticket, body.code)
    return tokens.as_response()


@router.post("/auth/refresh", tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    return runtime.auth.refresh(body.refresh_token).as_response()


@router.post("/auth/logout", tags=["auth"])
async def logout(request: Request, body: Optional[LogoutRequest] = None):
    """Revoke the presented refresh token. Revoking an unknown token is not an error."""
    runtime = get_runtime()
    if body and body.refresh_token:
        runtime.auth.logout(body.refresh_token)
    elif getattr(request.state, "principal", None) is None:
        raise AuthenticationError("Authentication required")
    return {"ok": True}


@router.post("/auth/logout-all", tags=["auth"])
async def logout_all(ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    revoked = runtime.auth.logout_all(ctx.principal.id)
    return {"ok": True, "revoked": revoked}


@router.post("/auth/confirm", tags=["auth"])
async def confirm_user(body: ConfirmRequest):
    """Activate an admin-provisioned user with their one-time token."""
    runtime = get_runtime()
    user = runtime.auth.confirm_user_invitation(body.token, body.password, body.name)
    return {"success": True, "user": _user_payload(user)}


@router.get("/auth/google/begin", tags=["auth"])
async def google_begin(
    intent: str = Query("signin", max_length=16),
    redirect: bool = Query(False),
):
    runtime = get_runtime()
    start = await runtime.auth.oauth_begin(intent)
    if redirect:
        return RedirectResponse(start["url"], status_code=302)
    return {"url": start["url"]}


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    """Provider redirect target.

    Always answers with a redirect to the web app: ``/oauth/complete`` with a
    short-lived hand-off code on success, ``/signin`` with an error code
    otherwise.
    """
    runtime = get_runtime()
    origin = runtime.settings.app_web_origin.rstrip("/")
    if error:
        logger.warning("oauth_provider_error", provider_error=error)
        return RedirectResponse(f"{origin}/signin?error=oauth_denied", status_code=302)
    try:
        handoff = await runtime.auth.oauth_callback(code or "", state or "")
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", error_code=exc.error_code, message=exc.message)
        return RedirectResponse(
            f"{origin}/signin?error={exc.error_code.lower()}", status_code=302
        )
    return RedirectResponse(f"{origin}/oauth/complete?code={handoff}", status_code=302)


@router.post("/auth/google/exchange", tags=["auth"])
async def google_exchange(body: OAuthExchangeRequest):
    runtime = get_runtime()
    result = await runtime.auth.exchange_handoff(body.code)
    return result.as_response()


# -- MFA -------------------------------------------------------------------------


@router.post("/mfa/setup", tags=["mfa"])
async def mfa_setup(ctx: RequestContext = Depends(authenticated)):
    """Start TOTP enrollment; the secret is held encrypted until confirmed."""
    runtime = get_runtime()
    setup = runtime.auth.begin_mfa_enrollment(ctx.principal.id)
    return {
        "otpauthUrl": setup.otpauth_uri,
        "manualCode": setup.manual_code,
        "qrCodeDataUrl": setup.qr_data_url,
        "expiresAt": setup.expires_at.isoformat() if setup.expires_at else None,
    }


@router.post("/mfa/confirm", tags=["mfa"])
async def mfa_confirm(body: MfaConfirmRequest, ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    codes = runtime.auth.complete_mfa_enrollment(ctx.principal.id, body.value or "")
    return {"backupCodes": codes}


@router.post("/mfa/disable", tags=["mfa"])
async def mfa_disable(body: MfaDisableRequest, ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    runtime.auth.disable_mfa(
        ctx.principal.id, code=body.code_or_backup_code, password=body.password
    )
    return {"success": True}


@router.post("/mfa/backup/regenerate", tags=["mfa"])
async def mfa_regenerate(body: MfaCodeRequest, ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    return {"backupCodes": runtime.auth.regenerate_backup_codes(ctx.principal.id, body.code)}


@router.get("/mfa/status", tags=["mfa"])
async def mfa_status(ctx: RequestContext = Depends(authenticated)):
    return get_runtime().auth.mfa_status(ctx.principal.id)


# -- invitations -----------------------------------------------------------------


@router.post("/invitations/account", status_code=201, tags=["invitations"])
async def invite_to_account(
    body: AccountInvitationRequest,
    ctx: RequestContext = Depends(guarded(require_account_membership(Source.BODY, "accountId"))),
):
    """Invite by email into an account. ``rawToken`` is returned only here."""
    runtime = get_runtime()
    invitation, raw = runtime.invitations.create_account_invitation(
        ctx.principal, body.invitee_email, ctx.account_id, body.role
    )
    return {"invitation": dump(InvitationOut, invitation), "rawToken": raw}


@router.post("/invitations/property", status_code=201, tags=["invitations"])
async def invite_to_property(
    body: PropertyInvitationRequest,
    ctx: RequestContext = Depends(guarded(require_property_access(Source.BODY, "propertyId"))),
):
    """Invite by email onto a property. ``propertyId`` may be the id or the uid."""
    runtime = get_runtime()
    invitation, raw = runtime.invitations.create_property_invitation(
        ctx.principal,
        body.invitee_email,
        ctx.property_id,
        body.role,
        account_id=body.account_id,
    )
    return {"invitation": dump(InvitationOut, invitation), "rawToken": raw}


@router.post("/invitations/accept", tags=["invitations"])
async def accept_invitation(body: AcceptInvitationRequest):
    runtime = get_runtime()
    result = runtime.invitations.accept(
        body.token, password=body.password, display_name=body.name
    )
    return {
        "user": _user_payload(result.user),
        "invitation": dump(InvitationOut, result.invitation),
        "createdUser": result.created_user,
    }


@router.post("/invitations/{invitationId}/decline", tags=["invitations"])
async def decline_invitation(
    invitation_id: str = Path(..., alias="invitationId", max_length=64),
    ctx: RequestContext = Depends(authenticated),
):
    runtime = get_runtime()
    invitation = runtime.invitations.decline(invitation_id, ctx.principal)
    return {"invitation": dump(InvitationOut, invitation)}


@router.post("/invitations/{invitationId}/revoke", tags=["invitations"])
async def revoke_invitation(
    invitation_id: str = Path(..., alias="invitationId", max_length=64),
    ctx: RequestContext = Depends(authenticated),
):
    runtime = get_runtime()
    invitation = runtime.invitations.revoke(invitation_id, ctx.principal)
    return {"invitation": dump(InvitationOut, invitation)}


@router.get("/invitations/sent", tags=["invitations"])
async def sent_invitations(ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    return {"invitations": dump_all(InvitationOut, runtime.invitations.list_sent(ctx.principal.id))}


@router.get("/invitations/account/{accountId}", tags=["invitations"])
async def account_invitations(
    status: Optional[str] = Query(None, max_length=16),
    ctx: RequestContext = Depends(guarded(require_account_membership())),
):
    runtime = get_runtime()
    invitations = runtime.invitations.list_for_account(ctx.account_id, status)
    return {"invitations": dump_all(InvitationOut, invitations)}


@router.get("/invitations/property/{propertyId}", tags=["invitations"])
async def property_invitations(
    status: Optional[str] = Query(None, max_length=16),
    ctx: RequestContext = Depends(guarded(require_property_access())),
):
    runtime = get_runtime()
    invitations = runtime.invitations.list_for_property(ctx.property_id, status)
    return {"invitations": dump_all(InvitationOut, invitations)}


# -- users -----------------------------------------------------------------------


@router.post("/users", status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, ctx: RequestContext = Depends(platform_admin)):
    """Provision an inactive user with a single-use activation token."""
    if body.role in PLATFORM_ADMINS and ctx.principal.role != Role.SUPER_ADMIN.value:
        raise ForbiddenError("Only a super admin can create platform admins")
    runtime = get_runtime()
    user, raw, expires_at = runtime.auth.create_provisioned_user(
        body.email, display_name=body.name, role=body.role, phone=body.phone
    )
    return {
        "user": _user_payload(user),
        "activationToken": raw,
        "expiresAt": expires_at.isoformat(),
    }


@router.get("/users", tags=["users"])
async def list_users(
    role: Optional[str] = Query(None, max_length=32),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ctx: RequestContext = Depends(platform_admin),
):
    runtime = get_runtime()
    return {"users": dump_all(UserOut, runtime.identity.list(role=role, limit=limit))}


@router.get("/users/{userId}", tags=["users"])
async def get_user(ctx: RequestContext = Depends(guarded(require_shared_account_to_view_user()))):
    runtime = get_runtime()
    return {"user": _user_payload(runtime.identity.require(ctx.target_user_id))}


@router.patch("/users/{userId}", tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    ctx: RequestContext = Depends(guarded(require_self_by_id())),
):
    fields = body.model_dump(exclude_unset=True)
    forbidden = sorted(set(fields) - PROFILE_FIELDS)
    if forbidden:
        raise ForbiddenError(f"Fields cannot be changed here: {', '.join(forbidden)}")
    runtime = get_runtime()
    if ctx.target_user_id is None:
        raise ForbiddenError("Not allowed to act on another user")
    user = runtime.identity.update(ctx.target_user_id, **fields)
    return {"user": _user_payload(user)}


@router.post("/users/{userId}/password", tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    ctx: RequestContext = Depends(guarded(require_self_by_id())),
):
    """Change a password. Admins resetting someone else's skip the current-password check."""
    if ctx.target_user_id is None:
        raise ForbiddenError("Not allowed to act on another user")
    acting_on_other = ctx.target_user_id != ctx.principal.id
    runtime = get_runtime()
    runtime.identity.change_password(
        ctx.target_user_id,
        body.current_password,
        body.new_password,
        verify_current=not acting_on_other,
    )
    return {"success": True}


@router.post("/users/{userId}/role", tags=["users"])
async def set_user_role(
    body: SetRoleRequest,
    user_id: int = Path(..., alias="userId"),
    ctx: RequestContext = Depends(platform_admin),
):
    runtime = get_runtime()
    if ctx.principal.role != Role.SUPER_ADMIN.value:
        if body.role in PLATFORM_ADMINS:
            raise ForbiddenError("Only a super admin can grant platform admin roles")
        if runtime.identity.require(user_id).role == Role.SUPER_ADMIN.value:
            raise ForbiddenError("Only a super admin can change a super admin's role")
    return {"user": _user_payload(runtime.identity.set_role(user_id, body.role))}


@router.delete("/users/{userId}", tags=["users"])
async def delete_user(
    user_id: int = Path(..., alias="userId"),
    ctx: RequestContext = Depends(guarded(require_role(Role.SUPER_ADMIN))),
):
    get_runtime().identity.delete(user_id)
    return {"success": True}


# -- accounts --------------------------------------------------------------------


@router.post("/accounts", status_code=201, tags=["accounts"])
async def create_account(body: CreateAccountRequest, ctx: RequestContext = Depends(platform_admin)):
    runtime = get_runtime()
    owner = runtime.identity.require(body.owner_user_id)
    account = runtime.tenants.create_account(body.name, owner.id)
    runtime.tenants.seed_default_subscription(account.id, owner.role)
    return {"account": dump(AccountOut, account)}


@router.get("/accounts", tags=["accounts"])
async def list_accounts(ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    accounts = runtime.tenants.visible_accounts(
        ctx.principal.id, platform_admin=ctx.principal.is_platform_admin
    )
    return {"accounts": dump_all(AccountOut, accounts)}


@router.get("/accounts/{accountId}", tags=["accounts"])
async def get_account(ctx: RequestContext = Depends(guarded(require_account_membership()))):
    runtime = get_runtime()
    return {"account": dump(AccountOut, runtime.tenants.get_account(ctx.account_id))}


@router.get("/accounts/{accountId}/users", tags=["accounts"])
async def list_account_users(ctx: RequestContext = Depends(guarded(require_account_membership()))):
    runtime = get_runtime()
    members = []
    for member in runtime.tenants.account_members(ctx.account_id):
        entry = dump(AccountMemberOut, member)
        user = runtime.identity.by_id(member.user_id)
        entry["user"] = _user_payload(user) if user else None
        members.append(entry)
    return {"members": members}


@router.post("/accounts/{accountId}/users", status_code=201, tags=["accounts"])
async def add_account_user(
    body: AddAccountUserRequest,
    ctx: RequestContext = Depends(guarded(require_account_owner())),
):
    """Add a member. The first member of an empty account always becomes owner."""
    runtime = get_runtime()
    member = runtime.tenants.add_account_member(ctx.account_id, body.user_id, body.role)
    return {"member": dump(AccountMemberOut, member)}


@router.delete("/accounts/{accountId}/users/{userId}", tags=["accounts"])
async def remove_account_user(
    user_id: int = Path(..., alias="userId"),
    ctx: RequestContext = Depends(guarded(require_account_owner())),
):
    get_runtime().tenants.remove_account_member(ctx.account_id, user_id)
    return {"success": True}


@router.delete("/accounts/{accountId}", tags=["accounts"])
async def delete_account(
    account_id: int = Path(..., alias="accountId"),
    ctx: RequestContext = Depends(guarded(require_role(Role.SUPER_ADMIN))),
):
    get_runtime().tenants.delete_account(account_id)
    return {"success": True}


# -- properties and systems ------------------------------------------------------


@router.post("/properties", status_code=201, tags=["properties"])
async def create_property(
    body: CreatePropertyRequest,
    ctx: RequestContext = Depends(guarded(require_account_membership(Source.BODY, "accountId"))),
):
    runtime = get_runtime()
    prop = runtime.tenants.create_property(
        ctx.account_id,
        ctx.principal.id,
        address=body.address,
        city=body.city,
        state=body.state,
        zip=body.zip,
        enforce_limits=not ctx.principal.is_platform_admin,
    )
    return {"property": dump(PropertyOut, prop)}


@router.get("/properties", tags=["properties"])
async def list_properties(ctx: RequestContext = Depends(authenticated)):
    runtime = get_runtime()
    properties = runtime.tenants.visible_properties(
        ctx.principal.id, platform_admin=ctx.principal.is_platform_admin
    )
    return {"properties": dump_all(PropertyOut, properties)}


@router.get("/properties/{propertyId}", tags=["properties"])
async def get_property(ctx: RequestContext = Depends(guarded(require_property_access()))):
    """Fetch a property by internal id or 26-character uid."""
    runtime = get_runtime()
    return {"property": dump(PropertyOut, runtime.tenants.get_property(ctx.property_id))}


@router.delete("/properties/{propertyId}", tags=["properties"])
async def delete_property(ctx: RequestContext = Depends(guarded(require_property_owner()))):
    get_runtime().tenants.delete_property(ctx.property_id)
    return {"success": True}


@router.get("/properties/{propertyId}/users", tags=["properties"])
async def list_property_users(ctx: RequestContext = Depends(guarded(require_property_access()))):
    runtime = get_runtime()
    members = runtime.tenants.property_members(ctx.property_id)
    return {"members": dump_all(PropertyMemberOut, members)}


@router.get("/systems/{propertyId}", tags=["properties"])
async def list_systems(ctx: RequestContext = Depends(guarded(require_property_access()))):
    runtime = get_runtime()
    return {"systems": dump_all(SystemOut, runtime.tenants.list_systems(ctx.property_id))}


@router.post("/systems/{propertyId}", status_code=201, tags=["properties"])
async def create_system(
    body: CreateSystemRequest,
    ctx: RequestContext = Depends(guarded(require_property_write())),
):
    runtime = get_runtime()
    system = runtime.tenants.create_system(
        ctx.property_id,
        body.system_type,
        name=body.name,
        installed_year=body.installed_year,
        notes=body.notes,
        created_by=ctx.principal.id,
    )
    return {"system": dump(SystemOut, system)}


# -- AI --------------------------------------------------------------------------


@router.get("/predict/usage", tags=["predict"])
async def predict_usage(
    x_account_id: Optional[int] = Header(None, alias="X-Account-Id"),
    ctx: RequestContext = Depends(authenticated),
):
    runtime = get_runtime()
    account_id = runtime.usage.billing_account_for(ctx.principal, x_account_id)
    return {**runtime.usage.check_budget(account_id).as_response(), "accountId": account_id}


@router.get("/predict/usage/history", tags=["predict"])
async def predict_usage_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    x_account_id: Optional[int] = Header(None, alias="X-Account-Id"),
    ctx: RequestContext = Depends(authenticated),
):
    runtime = get_runtime()
    account_id = runtime.usage.billing_account_for(ctx.principal, x_account_id)
    events = runtime.usage.history(account_id, limit=limit, offset=offset)
    return {"accountId": account_id, "events": dump_all(UsageEventOut, events)}


@router.post("/predict/property-details", tags=["predict"])
async def predict_property_details(
    body: PropertyDetailsRequest,
    x_account_id: Optional[int] = Header(None, alias="X-Account-Id"),
    ctx: RequestContext = Depends(authenticated),
):
    """Ask the LLM for property facts, charged to the caller's billing account.

    Refused with 429 once the month's spend is past the cap. When
    ``propertyId`` is given the caller must have access to it and its stored
    address fills in anything the body leaves out.
    """
    runtime = get_runtime()
    details = body.model_dump(include={"address", "city", "state", "zip"}, exclude_none=True)
    if body.property_id is not None:
        scoped = runtime.policy.check(
            require_property_access(Source.BODY, "propertyId"),
            RequestContext(
                principal=ctx.principal,
                auth_state=ctx.auth_state,
                body={"propertyId": body.property_id},
            ),
        )
        prop = runtime.tenants.get_property(scoped.property_id)
        stored = {"address": prop.address, "city": prop.city, "state": prop.state, "zip": prop.zip}
        details = {**{k: v for k, v in stored.items() if v}, **details}

    account_id = runtime.usage.billing_account_for(ctx.principal, x_account_id)
    runtime.usage.ensure_budget(account_id)
    completion = await runtime.llm.complete(
        property_details_messages(details), model=body.model, json_mode=True
    )
    event = runtime.usage.log_event(
        account_id,
        user_id=ctx.principal.id,
        category="property_details",
        model=completion.model,
        prompt_tokens=completion.prompt_tokens,
        completion_tokens=completion.completion_tokens,
    )
    return {
        "result": parse_json_content(completion.content),
        "usage": {
            "model": completion.model,
            "promptTokens": completion.prompt_tokens,
            "completionTokens": completion.completion_tokens,
            "totalCost": float(event.total_cost),
            **runtime.usage.check_budget(account_id).as_response(),
        },
    }


# -- resources -------------------------------------------------------------------

recipient_roles = guarded(require_any_role(Role.AGENT, Role.ADMIN, Role.SUPER_ADMIN))


@router.post("/resources/recipients/resolve", tags=["resources"])
async def resolve_recipients(
    body: RecipientsRequest, ctx: RequestContext = Depends(recipient_roles)
):
    runtime = get_runtime()
    recipients = runtime.recipients.resolve(ctx.principal, body.mode, body.ids)
    return {
        "contacts": dump_all(ContactOut, recipients.contacts),
        "users": dump_all(UserOut, recipients.users),
        "emails": recipients.emails,
        "count": recipients.count,
    }


@router.post("/resources/recipients/estimate", tags=["resources"])
async def estimate_recipients(
    body: RecipientsRequest, ctx: RequestContext = Depends(recipient_roles)
):
    runtime = get_runtime()
    return {"count": runtime.recipients.estimate(ctx.principal, body.mode, body.ids)}
