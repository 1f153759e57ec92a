from __future__ import annotations

import re
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from homeops.config import Settings
from homeops.logging import get_logger
from homeops.service import backup_codes, totp
from homeops.service.crypto import MfaCipher
from homeops.service.errors import (
    AlreadyEnrolled,
    AuthenticationError,
    BadUpstream,
    EnrollmentExpired,
    InvalidCode,
    InvalidCredentials,
    InvalidInvitation,
    InvalidMfaTicket,
    InvalidRefresh,
    ValidationError,
)
from homeops.service.identity import IdentityService
from homeops.service.oauth import GoogleOAuthClient
from homeops.service.roles import SELF_SERVICE_ROLES, Principal, Role
from homeops.service.tenants import TenantService
from homeops.service.tokens import (
    InvitationTokens,
    IssuedRefreshToken,
    TokenStore,
    decode_jwt,
    encode_jwt,
)
from homeops.storage.common import HomeOpsStore
from homeops.storage.models import User, utcnow
from homeops.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_LOGIN_MESSAGE = "Invalid email or password"
OAUTH_PROVIDER = "google"
OAUTH_INTENTS = ("signin", "signup")
OAUTH_STATE_TTL = timedelta(minutes=10)
OAUTH_HANDOFF_TTL_SECONDS = 60
TOTP_CODE_RE = re.compile(r"^\d{6}$")


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    user: User

    def as_response(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": "bearer",
            "expiresIn": self.expires_in,
        }


@dataclass
class LoginResult:
    """Outcome of a first-factor login: either tokens or an MFA ticket."""

    tokens: Optional[AuthTokens] = None
    mfa_ticket: Optional[str] = None

    @property
    def mfa_required(self) -> bool:
        return self.mfa_ticket is not None

    def as_response(self) -> dict[str, Any]:
        if self.tokens is not None:
            return self.tokens.as_response()
        return {"mfaRequired": True, "mfaTicket": self.mfa_ticket}


@dataclass
class MfaSetup:
    otpauth_uri: str
    manual_code: str
    qr_data_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class _TicketState:
    expires_at: datetime
    attempts: int = 0
    burned: bool = False


@dataclass
class _Handoff:
    payload: dict
    expires_at: datetime = field(default_factory=utcnow)


class AuthService:
    """Credentials, bearer tokens, MFA and Google sign-in.

    Redis holds OAuth state, hand-off codes and MFA ticket counters when it is
    configured; otherwise the same state lives in process-local dictionaries.
    """

    def __init__(
        self,
        store: HomeOpsStore,
        cache: Optional[RedisCache],
        settings: Settings,
        identity: IdentityService,
        tenants: TenantService,
        cipher: MfaCipher,
        *,
        oauth_client: Optional[GoogleOAuthClient] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.identity = identity
        self.tenants = tenants
        self.cipher = cipher
        self.hasher = identity.hasher
        self.oauth = oauth_client or GoogleOAuthClient(
            settings.google_client_id, settings.google_client_secret
        )
        self.tokens = TokenStore(store, timedelta(days=settings.refresh_token_ttl_days))
        self._dummy_hash: Optional[str] = None

        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, Tuple[str, datetime]] = {}
        self._oauth_handoffs: dict[str, _Handoff] = {}
        self._oauth_code_registry: dict[str, dict] = {}
        self._mfa_tickets: dict[str, _TicketState] = {}

    # -- signed tokens -----------------------------------------------------

    @property
    def _secret(self) -> str:
        return self.settings.jwt_secret or ""

    def _sign(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = utcnow()
        payload = dict(claims)
        payload.update(
            {
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
            }
        )
        return encode_jwt(payload, self._secret)

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        return decode_jwt(
            token,
            self._secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            accept_legacy=self.settings.accept_legacy_tokens,
        )

    def issue_tokens(self, user: User) -> AuthTokens:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        access = self._sign(
            {"id": user.id, "email": user.email, "role": user.role, "type": "access"}, ttl
        )
        refresh: IssuedRefreshToken = self.tokens.issue(user.id)
        logger.info("tokens_issued", user_id=user.id)
        return AuthTokens(
            access_token=access,
            refresh_token=refresh.raw,
            expires_in=int(ttl.total_seconds()),
            refresh_expires_at=refresh.expires_at,
            user=user,
        )

    def validate_access_token(self, token: Optional[str]) -> Optional[Principal]:
        """Decode a bearer token into a principal, or None when it is unusable."""
        if not token:
            return None
        claims = self._decode(token)
        if not claims or claims.get("type", "access") != "access":
            return None
        try:
            user_id = int(claims["id"])
        except (KeyError, TypeError, ValueError):
            return None
        email = claims.get("email")
        role = claims.get("role")
        if not email or role not in {r.value for r in Role}:
            return None
        return Principal(id=user_id, email=email, role=role)

    # -- password login ----------------------------------------------------

    def _equalize_timing(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        self.hasher.verify(self._dummy_hash, password)

    def authenticate(self, email: str, password: str) -> User:
        user = self.identity.by_email(email or "")
        if not user or not user.password_hash:
            self._equalize_timing(password or "")
            logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentials(INVALID_LOGIN_MESSAGE)
        if not self.identity.verify_password(user, password):
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentials(INVALID_LOGIN_MESSAGE)
        if not user.is_active:
            logger.info("login_failed", user_id=user.id, reason="inactive")
            raise InvalidCredentials(INVALID_LOGIN_MESSAGE)
        if self.hasher.needs_rehash(user.password_hash):
            self.store.set_user_password(user.id, self.hasher.hash(password))
        return user

    def _complete_first_factor(self, user: User) -> LoginResult:
        if user.mfa_enabled:
            return LoginResult(mfa_ticket=self.issue_mfa_ticket(user))
        return LoginResult(tokens=self.issue_tokens(user))

    def login(self, email: str, password: str) -> LoginResult:
        return self._complete_first_factor(self.authenticate(email, password))

    def refresh(self, raw_refresh_token: str) -> AuthTokens:
        """Exchange a refresh token for a new pair; the presented token is retired."""
        found = self.tokens.find(raw_refresh_token)
        if not found:
            raise InvalidRefresh("Invalid or expired refresh token")
        user_id, _ = found
        if not self.tokens.delete(raw_refresh_token):
            # Lost a race with a concurrent refresh or logout
            raise InvalidRefresh("Invalid or expired refresh token")
        user = self.identity.by_id(user_id)
        if not user or not user.is_active:
            raise InvalidRefresh("Invalid or expired refresh token")
        return self.issue_tokens(user)

    def logout(self, raw_refresh_token: Optional[str]) -> bool:
        removed = self.tokens.delete(raw_refresh_token or "")
        logger.info("logout", revoked=removed)
        return removed

    def logout_all(self, user_id: int) -> int:
        count = self.tokens.delete_all_for_user(user_id)
        logger.info("logout_all", user_id=user_id, revoked=count)
        return count

    # -- registration and provisioning ---------------------------------------

    def register(
        self,
        *,
        name: Optional[str],
        email: str,
        password: str,
        role: str = Role.HOMEOWNER.value,
        phone: Optional[str] = None,
    ) -> AuthTokens:
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(
                "Role must be homeowner or agent",
                detail={"fields": [{"field": "role", "message": "not allowed"}]},
            )
        with self.store.transaction():
            user = self.identity.register(
                email, password, display_name=name, role=role, phone=phone
            )
            account = self.tenants.create_account(_account_name_for(user), user.id)
            self.tenants.seed_default_subscription(account.id, role)
        return self.issue_tokens(user)

    def create_provisioned_user(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        role: str = Role.HOMEOWNER.value,
        phone: Optional[str] = None,
    ) -> Tuple[User, str, datetime]:
        """Create an inactive user plus a one-time activation token."""
        raw, token_hash = InvitationTokens.generate()
        expires_at = utcnow() + timedelta(days=self.settings.activation_ttl_days)
        with self.store.transaction():
            user = self.identity.register(
                email,
                None,
                display_name=display_name,
                role=role,
                is_active=False,
                phone=phone,
                require_password=False,
            )
            self.store.create_user_invitation(user.id, token_hash, expires_at)
        logger.info("user_provisioned", user_id=user.id, role=role)
        return user, raw, expires_at

    def confirm_user_invitation(
        self, raw_token: str, password: str, name: Optional[str] = None
    ) -> User:
        with self.store.transaction():
            invitation = self.store.find_valid_user_invitation(InvitationTokens.hash(raw_token))
            if not invitation:
                raise InvalidInvitation("Invalid or expired activation token")
            user = self.identity.activate_from_invitation(invitation.user_id, password)
            if name and not user.display_name:
                user = self.identity.update(user.id, display_name=name)
            self.tenants.create_account(name or _account_name_for(user), user.id)
            if not self.store.mark_user_invitation_used(invitation.id):
                raise InvalidInvitation("Invalid or expired activation token")
        logger.info("user_invitation_confirmed", user_id=user.id)
        return user

    # -- MFA ticket --------------------------------------------------------

    def issue_mfa_ticket(self, user: User) -> str:
        ttl = timedelta(minutes=self.settings.mfa_ticket_ttl_minutes)
        jti = uuid.uuid4().hex
        ticket = self._sign({"type": "mfa", "id": user.id, "email": user.email, "jti": jti}, ttl)
        if self.cache is None:
            with self._state_lock:
                self._mfa_tickets[jti] = _TicketState(expires_at=utcnow() + ttl)
        logger.info("mfa_ticket_issued", user_id=user.id)
        return ticket

    def _ticket_ttl_seconds(self, claims: dict[str, Any]) -> int:
        return max(1, int(claims.get("exp", 0)) - int(utcnow().timestamp()))

    async def _ticket_burned(self, jti: str) -> bool:
        if self.cache is not None:
            return await self.cache.is_mfa_ticket_burned(jti)
        with self._state_lock:
            state = self._mfa_tickets.get(jti)
            return state is None or state.burned

    async def _burn_ticket(self, jti: str, ttl_seconds: int) -> bool:
        if self.cache is not None:
            return await self.cache.burn_mfa_ticket(jti, ttl_seconds)
        with self._state_lock:
            state = self._mfa_tickets.get(jti)
            if state is None or state.burned:
                return False
            state.burned = True
            return True

    async def _record_ticket_failure(self, jti: str, ttl_seconds: int) -> bool:
        max_attempts = self.settings.mfa_ticket_max_attempts
        if self.cache is not None:
            burned, _ = await self.cache.record_mfa_ticket_failure(jti, max_attempts, ttl_seconds)
            return burned
        with self._state_lock:
            state = self._mfa_tickets.get(jti)
            if state is None:
                return True
            state.attempts += 1
            if state.attempts >= max_attempts:
                state.burned = True
            return state.burned

    async def verify_mfa_login(self, ticket: str, code: str) -> AuthTokens:
        """Second login step: trade a ticket plus a TOTP or backup code for tokens."""
        claims = self._decode(ticket or "")
        if not claims or claims.get("type") != "mfa" or not claims.get("jti"):
            raise InvalidMfaTicket("Invalid or expired MFA ticket")
        jti = claims["jti"]
        if await self._ticket_burned(jti):
            raise InvalidMfaTicket("Invalid or expired MFA ticket")
        try:
            user = self.identity.by_id(int(claims["id"]))
        except (KeyError, TypeError, ValueError):
            user = None
        if not user or not user.is_active or not user.mfa_enabled:
            raise InvalidMfaTicket("Invalid or expired MFA ticket")

        ttl_seconds = self._ticket_ttl_seconds(claims)
        if not self._verify_second_factor(user, code):
            if await self._record_ticket_failure(jti, ttl_seconds):
                logger.warning("mfa_ticket_burned", user_id=user.id)
                raise InvalidMfaTicket("Too many invalid codes; sign in again")
            raise InvalidCode("Invalid verification code")
        if not await self._burn_ticket(jti, ttl_seconds):
            raise InvalidMfaTicket("Invalid or expired MFA ticket")
        logger.info("mfa_login_verified", user_id=user.id)
        return self.issue_tokens(user)

    # -- MFA enrollment ------------------------------------------------------

    def _user_totp_secret(self, user: User) -> Optional[str]:
        if not user.mfa_secret:
            return None
        if user.mfa_key_id and user.mfa_key_id != self.cipher.key_id:
            logger.warning("mfa_key_id_mismatch", user_id=user.id, stored=user.mfa_key_id)
        return self.cipher.decrypt(user.mfa_secret)

    def _verify_totp(self, user: User, code: Optional[str]) -> bool:
        secret = self._user_totp_secret(user)
        return bool(secret and code and totp.verify(secret, code.strip()))

    def _verify_second_factor(self, user: User, code: Optional[str]) -> bool:
        """A 6-digit value is checked as TOTP, anything else as a backup code."""
        candidate = (code or "").strip()
        if not candidate:
            return False
        if TOTP_CODE_RE.match(candidate):
            return self._verify_totp(user, candidate)
        if not backup_codes.looks_like_backup_code(candidate):
            return False
        consumed = self.store.consume_backup_code(user.id, backup_codes.hash_code(candidate))
        if consumed:
            logger.info("backup_code_consumed", user_id=user.id)
        return consumed

    def begin_mfa_enrollment(self, user_id: int) -> MfaSetup:
        user = self.identity.require(user_id)
        if user.mfa_enabled:
            raise AlreadyEnrolled("MFA is already enabled")
        secret = totp.generate_secret()
        expires_at = utcnow() + timedelta(minutes=self.settings.mfa_enrollment_ttl_minutes)
        self.store.upsert_mfa_enrollment(
            user.id, self.cipher.encrypt(secret), expires_at, key_id=self.cipher.key_id
        )
        uri = totp.otpauth_uri(self.settings.app_name, user.email, secret)
        logger.info("mfa_enrollment_started", user_id=user.id)
        return MfaSetup(
            otpauth_uri=uri,
            manual_code=secret,
            qr_data_url=totp.qr_data_url(uri),
            expires_at=expires_at,
        )

    def complete_mfa_enrollment(self, user_id: int, code: str) -> List[str]:
        user = self.identity.require(user_id)
        if user.mfa_enabled:
            raise AlreadyEnrolled("MFA is already enabled")
        enrollment = self.store.get_mfa_enrollment(user.id)
        if not enrollment:
            raise EnrollmentExpired("No pending MFA enrollment; start setup again")
        if enrollment.expires_at <= utcnow():
            self.store.delete_mfa_enrollment(user.id)
            raise EnrollmentExpired("MFA enrollment expired; start setup again")
        secret = self.cipher.decrypt(enrollment.secret_ciphertext)
        if not code or not totp.verify(secret, code.strip()):
            raise InvalidCode("Invalid verification code")

        codes = backup_codes.generate()
        with self.store.transaction():
            self.store.delete_mfa_enrollment(user.id)
            self.store.set_user_mfa(
                user.id,
                enabled=True,
                secret=enrollment.secret_ciphertext,
                key_id=enrollment.key_id or self.cipher.key_id,
            )
            self.store.replace_backup_codes(user.id, [backup_codes.hash_code(c) for c in codes])
        logger.info("mfa_enabled", user_id=user.id)
        return codes

    def disable_mfa(
        self, user_id: int, *, code: Optional[str] = None, password: Optional[str] = None
    ) -> None:
        user = self.identity.require(user_id)
        if not user.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if code:
            if not self._verify_second_factor(user, code):
                raise InvalidCode("Invalid verification code")
        elif password:
            if not self.identity.verify_password(user, password):
                raise InvalidCredentials("Password is incorrect")
        else:
            raise ValidationError(
                "A verification code, backup code, or password is required",
                detail={"fields": [{"field": "codeOrBackupCode", "message": "required"}]},
            )
        with self.store.transaction():
            self.store.set_user_mfa(user.id, enabled=False, secret=None, key_id=None)
            self.store.delete_backup_codes(user.id)
            self.store.delete_mfa_enrollment(user.id)
        logger.info("mfa_disabled", user_id=user.id)

    def regenerate_backup_codes(self, user_id: int, code: str) -> List[str]:
        user = self.identity.require(user_id)
        if not user.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if not self._verify_totp(user, code):
            raise InvalidCode("Invalid verification code")
        codes = backup_codes.generate()
        self.store.replace_backup_codes(user.id, [backup_codes.hash_code(c) for c in codes])
        logger.info("backup_codes_regenerated", user_id=user.id)
        return codes

    def mfa_status(self, user_id: int) -> dict[str, Any]:
        user = self.identity.require(user_id)
        remaining = self.store.count_unused_backup_codes(user.id) if user.mfa_enabled else 0
        return {"mfaEnabled": user.mfa_enabled, "backupCodesRemaining": remaining}

    # -- Google OAuth --------------------------------------------------------

    def _redirect_uri_for(self, intent: str) -> Optional[str]:
        if intent == "signup":
            return self.settings.google_redirect_uri_signup or self.settings.google_redirect_uri_signin
        return self.settings.google_redirect_uri_signin

    async def oauth_begin(self, intent: str = "signin") -> dict[str, str]:
        if intent not in OAUTH_INTENTS:
            raise ValidationError("intent must be signin or signup")
        redirect_uri = self._redirect_uri_for(intent)
        if not self.oauth.configured or not redirect_uri:
            logger.error("oauth_not_configured", provider=OAUTH_PROVIDER)
            raise BadUpstream("Google sign-in is not configured", status_code=503)
        state = secrets.token_urlsafe(32)
        expires_at = utcnow() + OAUTH_STATE_TTL
        if self.cache is not None:
            await self.cache.set_oauth_state(state, intent, expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = (intent, expires_at)
        return {"url": self.oauth.authorization_url(redirect_uri, state), "state": state}

    async def _pop_oauth_state(self, state: str) -> Optional[str]:
        if not state:
            return None
        if self.cache is not None:
            stored = await self.cache.pop_oauth_state(state)
        else:
            with self._state_lock:
                stored = self._oauth_states.pop(state, None)
        if not stored:
            return None
        intent, expires_at = stored
        if expires_at <= utcnow():
            return None
        return intent

    def register_oauth_code(self, code: str, claims: dict) -> None:
        """Pre-register verified id-token claims for an authorization code."""
        with self._state_lock:
            self._oauth_code_registry[code] = claims

    async def _exchange_oauth_code(self, code: str, redirect_uri: Optional[str]) -> dict:
        with self._state_lock:
            registered = self._oauth_code_registry.pop(code, None)
        if registered is not None:
            return registered
        if not redirect_uri:
            raise BadUpstream("Google sign-in is not configured", status_code=503)
        return await self.oauth.exchange_code(code, redirect_uri)

    def _resolve_oauth_user(self, claims: dict, intent: str) -> User:
        subject = str(claims.get("sub") or "")
        email = claims.get("email")
        if not subject or not email:
            raise AuthenticationError("Google account is missing an email", error_code="OAUTH_INVALID")

        user = self.store.get_user_by_oauth(OAUTH_PROVIDER, subject)
        if user is None:
            user = self.identity.by_email(email)
            if user is not None:
                if claims.get("email_verified") is False:
                    raise AuthenticationError(
                        "Google email is not verified", error_code="OAUTH_EMAIL_UNVERIFIED"
                    )
                self.store.link_oauth_identity(OAUTH_PROVIDER, subject, user.id, email=email)
                logger.info("oauth_identity_linked", user_id=user.id, provider=OAUTH_PROVIDER)
        if user is None:
            if intent != "signup":
                raise AuthenticationError(
                    "No account exists for this Google user", error_code="OAUTH_ACCOUNT_NOT_FOUND"
                )
            with self.store.transaction():
                user = self.identity.register(
                    email, None, display_name=claims.get("name"), require_password=False
                )
                self.store.link_oauth_identity(OAUTH_PROVIDER, subject, user.id, email=email)
                account = self.tenants.create_account(_account_name_for(user), user.id)
                self.tenants.seed_default_subscription(account.id, user.role)
            logger.info("oauth_user_created", user_id=user.id, provider=OAUTH_PROVIDER)
        if not user.is_active:
            raise AuthenticationError("Account is not active", error_code="ACCOUNT_INACTIVE")
        return user

    async def oauth_callback(self, code: str, state: str) -> str:
        """Finish the provider round-trip and return a one-time hand-off code."""
        intent = await self._pop_oauth_state(state)
        if intent is None:
            raise AuthenticationError("Invalid or expired OAuth state", error_code="OAUTH_STATE_INVALID")
        if not code:
            raise AuthenticationError("Missing authorization code", error_code="OAUTH_CODE_MISSING")
        claims = await self._exchange_oauth_code(code, self._redirect_uri_for(intent))
        user = self._resolve_oauth_user(claims, intent)

        handoff = secrets.token_urlsafe(32)
        payload = {"user_id": user.id}
        if self.cache is not None:
            await self.cache.set_oauth_handoff(handoff, payload, OAUTH_HANDOFF_TTL_SECONDS)
        else:
            with self._state_lock:
                self._oauth_handoffs[handoff] = _Handoff(
                    payload=payload,
                    expires_at=utcnow() + timedelta(seconds=OAUTH_HANDOFF_TTL_SECONDS),
                )
        logger.info("oauth_callback_complete", user_id=user.id, intent=intent)
        return handoff

    async def exchange_handoff(self, code: str) -> LoginResult:
        payload: Optional[dict] = None
        if code:
            if self.cache is not None:
                payload = await self.cache.pop_oauth_handoff(code)
            else:
                with self._state_lock:
                    handoff = self._oauth_handoffs.pop(code, None)
                if handoff and handoff.expires_at > utcnow():
                    payload = handoff.payload
        if not payload:
            raise AuthenticationError("Invalid or expired sign-in code", error_code="OAUTH_CODE_INVALID")
        user = self.identity.by_id(int(payload.get("user_id", 0)))
        if not user or not user.is_active:
            raise AuthenticationError("Invalid or expired sign-in code", error_code="OAUTH_CODE_INVALID")
        return self._complete_first_factor(user)

    # -- housekeeping --------------------------------------------------------

    def sweep_expired(self) -> dict[str, int]:
        now = utcnow()
        with self._state_lock:
            for jti in [k for k, v in self._mfa_tickets.items() if v.expires_at <= now]:
                self._mfa_tickets.pop(jti, None)
            for state in [k for k, v in self._oauth_states.items() if v[1] <= now]:
                self._oauth_states.pop(state, None)
            for code in [k for k, v in self._oauth_handoffs.items() if v.expires_at <= now]:
                self._oauth_handoffs.pop(code, None)
        return {
            "refresh_tokens": self.tokens.sweep_expired(),
            "mfa_enrollments": self.store.sweep_expired_mfa_enrollments(now),
        }


def _account_name_for(user: User) -> str:
    return user.display_name or user.email.split("@", 1)[0]


__all__ = ["AuthService", "AuthTokens", "LoginResult", "MfaSetup"]
