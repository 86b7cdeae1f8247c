from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from w9mail.config import get_settings, reset_settings_cache
from w9mail.logging import get_logger
from w9mail.service.auth import AuthService
from w9mail.service.captcha import TurnstileVerifier
from w9mail.service.email import EmailService
from w9mail.service.lifecycle import AccountLifecycle
from w9mail.service.mailboxes import MailboxService
from w9mail.service.passwords import CredentialHasher
from w9mail.service.principal import PrincipalResolver
from w9mail.service.senders import SenderResolver
from w9mail.service.tokens import TokenCodec
from w9mail.storage.memory import MemoryStore
from w9mail.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(state_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = CredentialHasher()
        self.codec = TokenCodec(self.settings.jwt_secret, ttl_hours=self.settings.session_ttl_hours)
        self.principals = PrincipalResolver.default(self.store, self.codec)
        self.senders = SenderResolver(self.store)
        self.captcha = TurnstileVerifier(
            self.settings.turnstile_secret,
            self.settings.turnstile_verify_url,
            timeout=self.settings.captcha_timeout_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_use_tls=self.settings.smtp_use_tls,
            timeout=self.settings.smtp_timeout_seconds,
        )
        if not self.email.is_configured:
            logger.warning("email_dev_mode_enabled", message="SMTP_HOST unset; mail is logged only")

        self.auth = AuthService(self.store, self.hasher, self.codec, self.captcha, self.settings)
        self.lifecycle = AccountLifecycle(
            self.store, self.hasher, self.senders, self.email, self.captcha, self.settings
        )
        self.mailboxes = MailboxService(self.store, self.senders, self.email)
        logger.info("runtime_init_completed", captcha_enabled=self.captcha.is_configured)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
