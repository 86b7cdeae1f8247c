from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, List, Optional

from w9mail.config import Settings
from w9mail.logging import get_logger, redact_email
from w9mail.service.captcha import TurnstileVerifier
from w9mail.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    HashingError,
    NotFoundError,
)
from w9mail.service.lifecycle import normalize_email
from w9mail.service.passwords import CredentialHasher
from w9mail.service.policy import ensure_not_self
from w9mail.service.principal import Principal
from w9mail.service.tokens import TokenCodec
from w9mail.storage.errors import ConstraintViolation
from w9mail.storage.models import ApiToken, Role, User

logger = get_logger(__name__)

API_TOKEN_CREATED = (
    "API token created. Save this token now - you won't be able to see it again!"
)


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User


@dataclass(frozen=True)
class IssuedApiToken:
    record: ApiToken
    plaintext: str


class AuthService:
    """Login, user administration and API token management."""

    def __init__(
        self,
        store: Any,
        hasher: CredentialHasher,
        codec: TokenCodec,
        captcha: TurnstileVerifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.captcha = captcha
        self.settings = settings
        self.logger = logger

    def _check_password_length(self, password: Optional[str]) -> None:
        if not password or len(password) < self.settings.min_password_length:
            raise BadRequestError(
                f"password must be at least {self.settings.min_password_length} characters"
            )

    async def login(
        self, email: str, password: str, turnstile_token: Optional[str] = None
    ) -> LoginResult:
        await self.captcha.require(turnstile_token)
        return await asyncio.to_thread(self._login, email, password)

    def _login(self, email: str, password: str) -> LoginResult:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            self.logger.info("login_unknown_email", email=redact_email(email))
            raise AuthenticationError("invalid credentials")
        try:
            matches = self.hasher.verify(user.password_hash, password or "")
        except HashingError:
            self.logger.warning("login_hash_unusable", user_id=user.id)
            matches = False
        if not matches:
            self.logger.info("login_bad_password", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        token = self.codec.issue_session_token(user.id, user.email, user.role)
        self.logger.info("login_success", user_id=user.id, role=user.role.value)
        return LoginResult(token=token, user=user)

    def ensure_default_admin(self) -> Optional[User]:
        """Create the bootstrap admin from settings when it does not exist yet."""

        email = normalize_email(self.settings.default_admin_email or "")
        password = self.settings.default_admin_password
        if not email or not password:
            return None
        if self.store.get_user_by_email(email):
            return None
        try:
            user = self.store.create_user(
                email,
                self.hasher.hash(password),
                role=Role.ADMIN,
                must_change_password=True,
            )
        except ConstraintViolation:
            return None
        self.logger.info("default_admin_created", user_id=user.id)
        return user

    # -- user administration ---------------------------------------------------

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def create_user(self, email: str, password: str, role: Optional[Role] = None) -> User:
        email = normalize_email(email)
        if not email:
            raise BadRequestError("email is required")
        self._check_password_length(password)
        try:
            user = self.store.create_user(
                email, self.hasher.hash(password), role=role or Role.USER
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail={"field": exc.field}) from exc
        self.logger.info("user_created", user_id=user.id, role=user.role.value)
        return user

    def update_user(
        self,
        user_id: str,
        *,
        password: Optional[str] = None,
        role: Optional[Role] = None,
        must_change_password: Optional[bool] = None,
    ) -> User:
        if password is None and role is None and must_change_password is None:
            raise BadRequestError("no fields to update")
        if password is not None:
            self._check_password_length(password)
            if must_change_password is None:
                must_change_password = False
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        updated = self.store.update_user(
            user_id,
            role=role,
            must_change_password=must_change_password,
            password_hash=self.hasher.hash(password) if password is not None else None,
        )
        if not updated:
            raise NotFoundError("user not found")
        self.logger.info("user_updated", user_id=user_id)
        return updated

    def delete_user(self, principal: Principal, user_id: str) -> None:
        ensure_not_self(principal, user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found")
        self.logger.info("user_deleted", user_id=user_id, by=principal.id)

    # -- api tokens ------------------------------------------------------------

    def create_api_token(self, principal: Principal, name: Optional[str] = None) -> IssuedApiToken:
        name = (name or "").strip() or None
        plaintext = self.codec.issue_api_token()
        record = self.store.create_api_token(principal.id, self.codec.digest(plaintext), name)
        self.logger.info("api_token_created", user_id=principal.id, token_id=record.id)
        return IssuedApiToken(record=record, plaintext=plaintext)

    def list_api_tokens(self, principal: Principal) -> List[ApiToken]:
        return self.store.list_api_tokens(principal.id)

    def delete_api_token(self, principal: Principal, token_id: str) -> None:
        if not self.store.delete_api_token(token_id, principal.id):
            raise NotFoundError("api token not found")
        self.logger.info("api_token_deleted", user_id=principal.id, token_id=token_id)
