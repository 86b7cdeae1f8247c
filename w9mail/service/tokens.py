from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from w9mail.logging import get_logger
from w9mail.storage.models import Role

logger = get_logger(__name__)

API_TOKEN_LENGTH = 64
_API_TOKEN_ALPHABET = string.ascii_letters + string.digits


@dataclass
class SessionClaims:
    sub: str
    email: str
    role: Optional[Role]
    exp: int


class TokenCodec:
    """HS256 session tokens plus opaque API token generation."""

    def __init__(self, secret: str, ttl_hours: int = 12) -> None:
        self.secret = secret
        self.ttl = timedelta(hours=ttl_hours)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self.secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_session_token(self, user_id: str, email: str, role: Role) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload: dict[str, Any] = {
            "sub": user_id,
            "email": email,
            "role": role.value,
            "exp": int((self._now() + self.ttl).timestamp()),
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_session_token(self, token: str) -> Optional[SessionClaims]:
        """Return the claims of a valid, unexpired token, else None."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        # base64url segments are ASCII; compare_digest rejects non-ASCII str
        if not token.isascii():
            logger.warning("jwt_non_ascii_segment")
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        sub = payload.get("sub")
        try:
            exp = int(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if not sub or exp <= int(self._now().timestamp()):
            return None
        return SessionClaims(
            sub=str(sub),
            email=str(payload.get("email", "")),
            role=Role.parse(payload.get("role")),
            exp=exp,
        )

    @staticmethod
    def issue_api_token() -> str:
        return "".join(secrets.choice(_API_TOKEN_ALPHABET) for _ in range(API_TOKEN_LENGTH))

    @staticmethod
    def digest(plaintext: str) -> str:
        return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()
