"""Google OpenID Connect: authorization URL, code exchange, id-token checks."""

from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import jwt

from homeops.logging import get_logger, sanitize_error_message
from homeops.service.errors import AuthenticationError, BadUpstream

logger = get_logger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
SCOPE = "openid email profile"
JWKS_CACHE_SECONDS = 3600
CLOCK_SKEW_LEEWAY_SECONDS = 60


class GoogleOAuthClient:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._jwks_client = jwt.PyJWKClient(
            JWKS_URL, cache_keys=True, lifespan=JWKS_CACHE_SECONDS, timeout=int(timeout)
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """Trade an authorization code for verified id-token claims."""
        if not self.configured:
            raise BadUpstream("Google sign-in is not configured", status_code=503)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await client.post(
                    TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                token_result = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("google_token_exchange_failed", status=exc.response.status_code)
            if exc.response.status_code in (400, 401):
                raise AuthenticationError("Google authorization code was rejected") from exc
            raise BadUpstream("Google token exchange failed") from exc
        except httpx.TransportError as exc:
            logger.warning("google_token_exchange_unreachable", error=sanitize_error_message(str(exc)))
            raise BadUpstream("Google is unavailable", status_code=503) from exc
        except ValueError as exc:
            raise BadUpstream("Google returned an unreadable token response") from exc

        id_token = token_result.get("id_token") if isinstance(token_result, dict) else None
        if not id_token:
            raise BadUpstream("Google token response had no id_token")
        return await self.verify_id_token(id_token)

    async def verify_id_token(self, id_token: str) -> dict[str, Any]:
        """Check the RS256 signature against Google's published keys, then the claims."""
        try:
            signing_key = await asyncio.to_thread(
                self._jwks_client.get_signing_key_from_jwt, id_token
            )
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                leeway=CLOCK_SKEW_LEEWAY_SECONDS,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except jwt.PyJWKClientConnectionError as exc:
            logger.warning("google_jwks_fetch_failed", error=sanitize_error_message(str(exc)))
            raise BadUpstream("Unable to fetch Google signing keys", status_code=503) from exc
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Google id token has expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise AuthenticationError("Google id token audience mismatch") from exc
        except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
            logger.info("google_id_token_rejected", error_type=type(exc).__name__)
            raise AuthenticationError("Google id token is invalid") from exc
        return self.check_claims(claims)

    def check_claims(self, claims: Any) -> dict[str, Any]:
        if not isinstance(claims, dict):
            raise AuthenticationError("Malformed Google id token")
        if claims.get("iss") not in ISSUERS:
            raise AuthenticationError("Google id token issuer mismatch")
        if not claims.get("sub") or not claims.get("email"):
            raise AuthenticationError("Google id token is missing subject or email")
        return claims


__all__ = ["GoogleOAuthClient", "ISSUERS"]
