from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from homeops.config import get_settings, reset_settings_cache
from homeops.logging import get_logger
from homeops.service.auth import AuthService
from homeops.service.crypto import MfaCipher
from homeops.service.identity import IdentityService
from homeops.service.invitations import InvitationService
from homeops.service.llm import LLMClient
from homeops.service.passwords import PasswordHasher
from homeops.service.policy import PolicyEngine
from homeops.service.recipients import RecipientResolver
from homeops.service.tenants import TenantService
from homeops.service.usage import UsageMeter
from homeops.storage.memory import MemoryStore
from homeops.storage.postgres import PostgresStore
from homeops.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so no event loop gets bound at import
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for OAuth state and MFA ticket tracking; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; OAuth state and MFA "
                    "ticket counters are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.cipher = MfaCipher.from_settings(
            self.settings.mfa_encryption_key,
            self.settings.mfa_encryption_key_id,
            production=self.settings.is_production,
        )
        self.hasher = PasswordHasher()
        self.identity = IdentityService(self.store, self.hasher)
        self.tenants = TenantService(self.store)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            self.identity,
            self.tenants,
            self.cipher,
        )
        self.invitations = InvitationService(
            self.store, self.settings, self.identity, self.tenants
        )
        self.policy = PolicyEngine(self.tenants)
        self.usage = UsageMeter(self.store, self.settings, self.tenants)
        self.recipients = RecipientResolver(self.store, self.tenants)
        self.llm = LLMClient(
            api_key=self.settings.llm_api_key,
            base_url=self.settings.llm_base_url,
            model=self.settings.llm_model,
            timeout=self.settings.llm_timeout_seconds,
        )

        self.bootstrap()
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            google_oauth_configured=self.auth.oauth.configured,
            llm_configured=self.llm.is_configured,
            object_store_bucket=self.settings.s3_bucket,
            object_store_region=self.settings.s3_region,
            mfa_key_id=self.cipher.key_id,
        )

    def bootstrap(self) -> None:
        """One-time startup writes. Nothing is seeded lazily on a request."""
        self.tenants.seed_default_products()

    def sweep(self) -> dict[str, int]:
        counts = {"invitations": self.invitations.expire_pending()}
        counts.update(self.auth.sweep_expired())
        if any(counts.values()):
            logger.info("sweep_completed", **counts)
        return counts

    async def health(self) -> dict[str, str]:
        status = {"store": "ok" if self.store.ping() else "error"}
        if self.cache is None:
            status["cache"] = "disabled"
        else:
            try:
                status["cache"] = "ok" if await self.cache.ping() else "error"
            except Exception as exc:
                logger.warning("cache_ping_failed", error=str(exc))
                status["cache"] = "error"
        return status


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        asyncio.run(cache.close())
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
