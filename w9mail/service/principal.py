from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from w9mail.logging import get_logger
from w9mail.service.errors import AuthenticationError
from w9mail.service.tokens import TokenCodec
from w9mail.storage.models import Role, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    role: Role
    must_change_password: bool

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            must_change_password=user.must_change_password,
        )


class AuthStrategy(Protocol):
    name: str

    def try_authenticate(self, bearer: str) -> Optional[Principal]: ...


class ApiTokenStrategy:
    """Look the bearer up as an opaque API token by its digest."""

    name = "api_token"

    def __init__(self, store: Any, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    def try_authenticate(self, bearer: str) -> Optional[Principal]:
        found = self.store.get_api_token_owner(self.codec.digest(bearer))
        if not found:
            return None
        token, user = found
        try:
            self.store.touch_api_token(token.id, utcnow())
        except Exception as exc:
            logger.warning("api_token_touch_failed", token_id=token.id, error=str(exc))
        return Principal.from_user(user)


class SessionTokenStrategy:
    """Verify the bearer as a session token and reload its subject.

    Only the subject id is trusted; email, role and the password flag come
    from the current user row.
    """

    name = "session"

    def __init__(self, store: Any, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    def try_authenticate(self, bearer: str) -> Optional[Principal]:
        claims = self.codec.verify_session_token(bearer)
        if not claims:
            return None
        user = self.store.get_user(claims.sub)
        if not user:
            logger.info("session_subject_missing", user_id=claims.sub)
            return None
        return Principal.from_user(user)


class PrincipalResolver:
    """Run authentication strategies in order; the first match wins."""

    def __init__(self, strategies: Sequence[AuthStrategy]) -> None:
        self.strategies = list(strategies)

    @classmethod
    def default(cls, store: Any, codec: TokenCodec) -> "PrincipalResolver":
        return cls([ApiTokenStrategy(store, codec), SessionTokenStrategy(store, codec)])

    def resolve(self, bearer: Optional[str]) -> Optional[Principal]:
        if not bearer:
            return None
        for strategy in self.strategies:
            principal = strategy.try_authenticate(bearer)
            if principal:
                return principal
        return None

    def authenticate(self, authorization: Optional[str]) -> Principal:
        """Resolve an ``Authorization`` header value or raise 401."""

        principal = self.resolve(extract_bearer(authorization))
        if not principal:
            raise AuthenticationError("invalid or expired credentials")
        return principal


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None
