from __future__ import annotations

import asyncio
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from w9mail.config import Settings
from w9mail.logging import get_logger, redact_email
from w9mail.service.captcha import TurnstileVerifier
from w9mail.service.email import EmailService
from w9mail.service.errors import (
    AuthenticationError,
    BadRequestError,
    HashingError,
    ServerError,
    ServiceError,
)
from w9mail.service.notifications import password_reset_email, signup_verification_email
from w9mail.service.passwords import CredentialHasher
from w9mail.service.principal import Principal
from w9mail.service.senders import SenderResolver, SenderSummary
from w9mail.storage.errors import ConstraintViolation
from w9mail.storage.models import Role, utcnow

logger = get_logger(__name__)

SIGNUP_EMAIL_TAKEN = "Email already registered"
SIGNUP_UNAVAILABLE = (
    "Registration is temporarily unavailable. Ask an admin to set a default sender."
)
SIGNUP_PENDING = "Check your inbox for a verification link."
VERIFY_INVALID = "Invalid or expired verification link."
VERIFY_EXPIRED = "Verification link expired. Please register again."
VERIFY_ALREADY_ACTIVE = "This email is already activated. Try signing in."
VERIFY_OK = "Account verified. You can sign in now."
RESET_REQUESTED = "If the email exists, a reset link was sent."
RESET_UNAVAILABLE = "Password reset is unavailable. Contact an admin."
RESET_INVALID = "Invalid or expired reset link."
RESET_EXPIRED = "Reset link expired. Request a new one."
RESET_OK = "Password updated. You can sign in now."
PASSWORD_CHANGED = "Password updated"


@dataclass(frozen=True)
class Outcome:
    """Business result rendered as a 200 ``{status, message}`` body."""

    status: str
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class _PendingMail:
    """A token written to the store whose link still has to be mailed."""

    email: str
    token: str
    sender: SenderSummary
    user_id: Optional[str] = None


class AccountLifecycle:
    """Signup verification, password reset and password change.

    Pending signup and reset tokens live for ``pending_token_ttl_minutes``.
    Expired rows are removed when their token is next presented.
    """

    def __init__(
        self,
        store: Any,
        hasher: CredentialHasher,
        senders: SenderResolver,
        mailer: EmailService,
        captcha: TurnstileVerifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.senders = senders
        self.mailer = mailer
        self.captcha = captcha
        self.settings = settings
        self.pending_ttl = timedelta(minutes=settings.pending_token_ttl_minutes)

    def _now(self) -> datetime:
        return utcnow()

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}{path}?token={token}"

    def _check_password_length(self, password: Optional[str]) -> None:
        if not password or len(password) < self.settings.min_password_length:
            raise BadRequestError(
                f"password must be at least {self.settings.min_password_length} characters"
            )

    # -- signup ----------------------------------------------------------------

    async def request_signup(
        self, email: str, password: str, turnstile_token: Optional[str] = None
    ) -> Outcome:
        await self.captcha.require(turnstile_token)
        prepared = await asyncio.to_thread(self._prepare_signup, email, password)
        if isinstance(prepared, Outcome):
            return prepared

        subject, body = signup_verification_email(
            prepared.email,
            self._link("/signup/verify", prepared.token),
            product_name=self.settings.app_name,
            ttl_minutes=self.settings.pending_token_ttl_minutes,
        )
        if not await self.mailer.send(
            prepared.sender.credentials, [prepared.email], subject, body, html=True
        ):
            raise ServerError("failed to send verification email")
        logger.info("signup_pending", email=redact_email(prepared.email))
        return Outcome("pending", SIGNUP_PENDING)

    def _prepare_signup(self, email: str, password: str) -> Outcome | _PendingMail:
        email = normalize_email(email)
        if not email:
            raise BadRequestError("email is required")
        self._check_password_length(password)

        if self.store.get_user_by_email(email):
            return Outcome("error", SIGNUP_EMAIL_TAKEN)

        try:
            sender = self.senders.get_default()
        except ServerError as exc:
            # The resolution reason is an admin diagnostic; anonymous callers get a bare 500
            logger.error("signup_default_sender_unusable", error=exc.message)
            raise ServerError("registration failed") from exc
        if not sender:
            logger.warning("signup_no_default_sender", email=redact_email(email))
            return Outcome("error", SIGNUP_UNAVAILABLE)

        token = secrets.token_urlsafe(32)
        self.store.replace_pending_signup(
            email, self.hasher.hash(password), token, self._now() + self.pending_ttl
        )
        return _PendingMail(email=email, token=token, sender=sender)

    async def verify_signup(self, token: str) -> Outcome:
        return await asyncio.to_thread(self._verify_signup, token)

    def _verify_signup(self, token: str) -> Outcome:
        pending = self.store.get_pending_signup(token) if token else None
        if not pending:
            return Outcome("error", VERIFY_INVALID)
        if pending.is_expired(self._now()):
            self.store.delete_pending_signup(pending.id)
            return Outcome("error", VERIFY_EXPIRED)

        try:
            user = self.store.create_user(
                pending.email,
                pending.password_hash,
                role=Role.USER,
                must_change_password=False,
            )
        except ConstraintViolation:
            logger.info("signup_verify_duplicate", email=redact_email(pending.email))
            return Outcome("error", VERIFY_ALREADY_ACTIVE)

        self.store.delete_pending_signup(pending.id)
        logger.info("signup_verified", user_id=user.id)
        return Outcome("verified", VERIFY_OK)

    # -- password reset ----------------------------------------------------------

    async def request_reset(self, email: str, turnstile_token: Optional[str] = None) -> Outcome:
        """Issue a reset link when the address belongs to a user.

        The reply never depends on whether the address is registered.
        """

        await self.captcha.require(turnstile_token)
        prepared = await asyncio.to_thread(self._prepare_reset, email)
        if isinstance(prepared, Outcome):
            return prepared

        subject, body = password_reset_email(
            prepared.email,
            self._link("/reset-password", prepared.token),
            product_name=self.settings.app_name,
            ttl_minutes=self.settings.pending_token_ttl_minutes,
        )
        if not await self.mailer.send(
            prepared.sender.credentials, [prepared.email], subject, body, html=True
        ):
            # Delivery failures stay out of the reply so it cannot reveal the user exists
            logger.error("reset_email_send_failed", user_id=prepared.user_id)
        else:
            logger.info("reset_requested", user_id=prepared.user_id)
        return Outcome("ok", RESET_REQUESTED)

    def _prepare_reset(self, email: str) -> Outcome | _PendingMail:
        email = normalize_email(email)
        if not email:
            raise BadRequestError("email is required")

        try:
            sender = self.senders.get_default()
        except ServiceError as exc:
            logger.warning("reset_default_sender_unusable", error=exc.message)
            sender = None
        if not sender:
            return Outcome("error", RESET_UNAVAILABLE)

        user = self.store.get_user_by_email(email)
        if not user:
            return Outcome("ok", RESET_REQUESTED)

        token = secrets.token_urlsafe(32)
        self.store.replace_reset_token(user.id, token, self._now() + self.pending_ttl)
        return _PendingMail(email=email, token=token, sender=sender, user_id=user.id)

    async def confirm_reset(
        self, token: str, new_password: str, turnstile_token: Optional[str] = None
    ) -> Outcome:
        await self.captcha.require(turnstile_token)
        return await asyncio.to_thread(self._confirm_reset, token, new_password)

    def _confirm_reset(self, token: str, new_password: str) -> Outcome:
        self._check_password_length(new_password)

        record = self.store.get_reset_token(token) if token else None
        if not record:
            return Outcome("error", RESET_INVALID)
        if record.is_expired(self._now()):
            self.store.delete_reset_token(record.token)
            return Outcome("error", RESET_EXPIRED)

        updated = self.store.update_user(
            record.user_id,
            password_hash=self.hasher.hash(new_password),
            must_change_password=False,
        )
        self.store.delete_reset_tokens_for_user(record.user_id)
        if not updated:
            return Outcome("error", RESET_INVALID)
        logger.info("reset_confirmed", user_id=record.user_id)
        return Outcome("success", RESET_OK)

    # -- password change ---------------------------------------------------------

    async def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> Outcome:
        return await asyncio.to_thread(
            self._change_password, principal, current_password, new_password
        )

    def _change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> Outcome:
        self._check_password_length(new_password)
        user = self.store.get_user(principal.id)
        if not user:
            raise AuthenticationError("invalid credentials")
        try:
            matches = self.hasher.verify(user.password_hash, current_password or "")
        except HashingError:
            matches = False
        if not matches:
            raise AuthenticationError("current password is incorrect")
        self.store.update_user(
            user.id,
            password_hash=self.hasher.hash(new_password),
            must_change_password=False,
        )
        logger.info("password_changed", user_id=user.id)
        return Outcome("success", PASSWORD_CHANGED)
