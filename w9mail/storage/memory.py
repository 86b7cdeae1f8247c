from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from w9mail.logging import get_logger
from w9mail.storage.errors import ConstraintViolation
from w9mail.storage.models import (
    Account,
    Alias,
    ApiToken,
    DefaultSender,
    PasswordResetToken,
    PendingSignup,
    Role,
    SenderKind,
    User,
)

_UNSET: Any = object()


class MemoryStore:
    """In-process store for tests and single-node development.

    Every method holds ``_data_lock`` so compound operations (replace a pending
    token, cascade a delete) are atomic with respect to other threads. When
    ``state_path`` is given the full state is snapshotted to JSON after each
    write and reloaded on start.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.api_tokens: Dict[str, ApiToken] = {}
        self.pending_signups: Dict[str, PendingSignup] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.accounts: Dict[str, Account] = {}
        self.aliases: Dict[str, Alias] = {}
        self.default_sender: Optional[DefaultSender] = None
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        must_change_password: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                role=role,
                must_change_password=must_change_password,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)

    def update_user(
        self,
        user_id: str,
        *,
        role: Optional[Role] = None,
        must_change_password: Optional[bool] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role is not None:
                user.role = role
            if must_change_password is not None:
                user.must_change_password = must_change_password
            if password_hash is not None:
                user.password_hash = password_hash
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token_id, token in list(self.api_tokens.items()):
                if token.user_id == user_id:
                    self.api_tokens.pop(token_id, None)
            for token, row in list(self.reset_tokens.items()):
                if row.user_id == user_id:
                    self.reset_tokens.pop(token, None)
            self._persist_state()
            return True

    # -- api tokens ----------------------------------------------------------

    def create_api_token(
        self, user_id: str, token_hash: str, name: Optional[str] = None
    ) -> ApiToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for api token", {"user_id": user_id})
            token = ApiToken(
                id=str(uuid.uuid4()), user_id=user_id, token_hash=token_hash, name=name
            )
            self.api_tokens[token.id] = token
            self._persist_state()
            return token

    def get_api_token_owner(self, token_hash: str) -> Optional[Tuple[ApiToken, User]]:
        """Return the token joined to its owning user, or None if either is gone."""
        with self._data_lock:
            for token in self.api_tokens.values():
                if token.token_hash == token_hash:
                    user = self.users.get(token.user_id)
                    return (token, user) if user else None
            return None

    def touch_api_token(self, token_id: str, used_at: datetime) -> None:
        with self._data_lock:
            token = self.api_tokens.get(token_id)
            if token:
                token.last_used_at = used_at
                self._persist_state()

    def list_api_tokens(self, user_id: str) -> List[ApiToken]:
        with self._data_lock:
            owned = [t for t in self.api_tokens.values() if t.user_id == user_id]
            return sorted(owned, key=lambda t: t.created_at, reverse=True)

    def delete_api_token(self, token_id: str, user_id: str) -> bool:
        with self._data_lock:
            token = self.api_tokens.get(token_id)
            if not token or token.user_id != user_id:
                return False
            self.api_tokens.pop(token_id, None)
            self._persist_state()
            return True

    # -- pending signups -----------------------------------------------------

    def replace_pending_signup(
        self, email: str, password_hash: str, token: str, expires_at: datetime
    ) -> PendingSignup:
        with self._data_lock:
            for pending_id, row in list(self.pending_signups.items()):
                if row.email == email:
                    self.pending_signups.pop(pending_id, None)
            pending = PendingSignup(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                verification_token=token,
                expires_at=expires_at,
            )
            self.pending_signups[pending.id] = pending
            self._persist_state()
            return pending

    def get_pending_signup(self, token: str) -> Optional[PendingSignup]:
        with self._data_lock:
            return next(
                (p for p in self.pending_signups.values() if p.verification_token == token),
                None,
            )

    def delete_pending_signup(self, pending_id: str) -> None:
        with self._data_lock:
            if self.pending_signups.pop(pending_id, None) is not None:
                self._persist_state()

    # -- password reset tokens -----------------------------------------------

    def replace_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            for existing, row in list(self.reset_tokens.items()):
                if row.user_id == user_id:
                    self.reset_tokens.pop(existing, None)
            row = PasswordResetToken(
                id=str(uuid.uuid4()), user_id=user_id, token=token, expires_at=expires_at
            )
            self.reset_tokens[token] = row
            self._persist_state()
            return row

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return self.reset_tokens.get(token)

    def delete_reset_token(self, token: str) -> None:
        with self._data_lock:
            if self.reset_tokens.pop(token, None) is not None:
                self._persist_state()

    def delete_reset_tokens_for_user(self, user_id: str) -> None:
        with self._data_lock:
            for token, row in list(self.reset_tokens.items()):
                if row.user_id == user_id:
                    self.reset_tokens.pop(token, None)
            self._persist_state()

    # -- accounts ------------------------------------------------------------

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return sorted(self.accounts.values(), key=lambda a: a.email)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def create_account(
        self, email: str, display_name: str, password: str, is_active: bool = True
    ) -> Account:
        with self._data_lock:
            if any(a.email == email for a in self.accounts.values()):
                raise ConstraintViolation("account email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                display_name=display_name,
                password=password,
                is_active=is_active,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def update_account(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if is_active is not None:
                account.is_active = is_active
            if password is not None:
                account.password = password
            self._persist_state()
            return account

    def delete_account(self, account_id: str) -> Optional[List[str]]:
        """Delete an account and its aliases.

        Returns the ids of the removed aliases, or None when the account does
        not exist.
        """
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return None
            removed = [a.id for a in self.aliases.values() if a.account_id == account_id]
            for alias_id in removed:
                self.aliases.pop(alias_id, None)
            self._persist_state()
            return removed

    # -- aliases -------------------------------------------------------------

    def list_aliases(self) -> List[Alias]:
        with self._data_lock:
            return sorted(self.aliases.values(), key=lambda a: a.alias_email)

    def get_alias(self, alias_id: str) -> Optional[Alias]:
        with self._data_lock:
            return self.aliases.get(alias_id)

    def get_alias_by_email(self, alias_email: str) -> Optional[Alias]:
        with self._data_lock:
            return next(
                (a for a in self.aliases.values() if a.alias_email == alias_email), None
            )

    def create_alias(
        self,
        alias_email: str,
        account_id: str,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Alias:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"field": "account_id"})
            if any(a.alias_email == alias_email for a in self.aliases.values()):
                raise ConstraintViolation("alias email already exists", {"field": "alias_email"})
            alias = Alias(
                id=str(uuid.uuid4()),
                alias_email=alias_email,
                account_id=account_id,
                display_name=display_name,
                is_active=is_active,
            )
            self.aliases[alias.id] = alias
            self._persist_state()
            return alias

    def update_alias(
        self,
        alias_id: str,
        *,
        account_id: Optional[str] = None,
        display_name: Any = _UNSET,
        is_active: Optional[bool] = None,
    ) -> Optional[Alias]:
        with self._data_lock:
            alias = self.aliases.get(alias_id)
            if not alias:
                return None
            if account_id is not None:
                if account_id not in self.accounts:
                    raise ConstraintViolation("account not found", {"field": "account_id"})
                alias.account_id = account_id
            if display_name is not _UNSET:
                alias.display_name = display_name
            if is_active is not None:
                alias.is_active = is_active
            self._persist_state()
            return alias

    def delete_alias(self, alias_id: str) -> bool:
        with self._data_lock:
            if self.aliases.pop(alias_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- default sender ------------------------------------------------------

    def get_default_sender(self) -> Optional[DefaultSender]:
        with self._data_lock:
            return self.default_sender

    def upsert_default_sender(self, sender_type: SenderKind, sender_id: str) -> None:
        with self._data_lock:
            self.default_sender = DefaultSender(sender_type=sender_type, sender_id=sender_id)
            self._persist_state()

    def delete_default_sender_if_matches(
        self, sender_type: SenderKind, sender_id: str
    ) -> bool:
        with self._data_lock:
            current = self.default_sender
            if (
                current
                and current.sender_type == sender_type
                and current.sender_id == sender_id
            ):
                self.default_sender = None
                self._persist_state()
                return True
            return False

    # -- snapshot ------------------------------------------------------------

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (Role, SenderKind)):
            return value.value
        return value

    def _row(self, obj: Any) -> dict:
        return {key: self._encode(val) for key, val in asdict(obj).items()}

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "users": [self._row(u) for u in self.users.values()],
            "api_tokens": [self._row(t) for t in self.api_tokens.values()],
            "pending_signups": [self._row(p) for p in self.pending_signups.values()],
            "reset_tokens": [self._row(r) for r in self.reset_tokens.values()],
            "accounts": [self._row(a) for a in self.accounts.values()],
            "aliases": [self._row(a) for a in self.aliases.values()],
            "default_sender": self._row(self.default_sender) if self.default_sender else None,
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(self.state_path)

    def _load_state(self) -> bool:
        if not self.state_path or not self.state_path.exists():
            return False
        try:
            state = json.loads(self.state_path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.error(
                "memory_store_load_failed", path=str(self.state_path), error=str(exc)
            )
            return False
        parse_dt = datetime.fromisoformat
        for raw in state.get("users", []):
            role = Role.parse(raw.get("role"))
            if role is None:
                self.logger.warning("memory_store_unknown_role", user_id=raw.get("id"))
                continue
            raw.update(role=role, created_at=parse_dt(raw["created_at"]))
            self.users[raw["id"]] = User(**raw)
        for raw in state.get("api_tokens", []):
            raw["created_at"] = parse_dt(raw["created_at"])
            if raw.get("last_used_at"):
                raw["last_used_at"] = parse_dt(raw["last_used_at"])
            self.api_tokens[raw["id"]] = ApiToken(**raw)
        for raw in state.get("pending_signups", []):
            raw["expires_at"] = parse_dt(raw["expires_at"])
            self.pending_signups[raw["id"]] = PendingSignup(**raw)
        for raw in state.get("reset_tokens", []):
            raw["expires_at"] = parse_dt(raw["expires_at"])
            self.reset_tokens[raw["token"]] = PasswordResetToken(**raw)
        for raw in state.get("accounts", []):
            self.accounts[raw["id"]] = Account(**raw)
        for raw in state.get("aliases", []):
            self.aliases[raw["id"]] = Alias(**raw)
        default = state.get("default_sender")
        if default:
            self.default_sender = DefaultSender(
                sender_type=SenderKind(default["sender_type"]),
                sender_id=default["sender_id"],
            )
        self.logger.info("memory_store_loaded", path=str(self.state_path), users=len(self.users))
        return True

