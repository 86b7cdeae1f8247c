from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'dev', 'user')),
        must_change_password BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT UNIQUE NOT NULL,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_signup (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        verification_token TEXT UNIQUE NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT UNIQUE NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mail_account (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        display_name TEXT NOT NULL,
        password TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mail_alias (
        id TEXT PRIMARY KEY,
        alias_email TEXT UNIQUE NOT NULL,
        display_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        account_id TEXT NOT NULL REFERENCES mail_account(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS default_sender (
        singleton INTEGER PRIMARY KEY CHECK (singleton = 1),
        sender_type TEXT NOT NULL CHECK (sender_type IN ('account', 'alias')),
        sender_id TEXT NOT NULL
    )
    """,
]


class PostgresStore:
    """Postgres-backed store over a psycopg connection pool.

    Each public method runs in its own pooled connection; the pool commits on
    clean exit and rolls back on error.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the control-plane tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(_SCHEMA))

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    def _user_from_row(self, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        role = Role.parse(row.get("role"))
        if role is None:
            # Fail closed: a row with an unknown role never becomes a principal
            self.logger.warning("user_row_unknown_role", user_id=row.get("id"))
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=role,
            must_change_password=bool(row.get("must_change_password", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> ApiToken:
        return ApiToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            name=row.get("name"),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            password=row["password"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _alias_from_row(row: Dict[str, Any]) -> Alias:
        return Alias(
            id=str(row["id"]),
            alias_email=row["alias_email"],
            account_id=str(row["account_id"]),
            display_name=row.get("display_name"),
            is_active=bool(row["is_active"]),
        )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        must_change_password: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, must_change_password)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, password_hash, role.value, must_change_password),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_user ORDER BY created_at DESC").fetchall()
        users = [self._user_from_row(row) for row in rows]
        return [user for user in users if user]

    def update_user(
        self,
        user_id: str,
        *,
        role: Optional[Role] = None,
        must_change_password: Optional[bool] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        assignments: List[str] = []
        params: List[Any] = []
        if role is not None:
            assignments.append("role = %s")
            params.append(role.value)
        if must_change_password is not None:
            assignments.append("must_change_password = %s")
            params.append(must_change_password)
        if password_hash is not None:
            assignments.append("password_hash = %s")
            params.append(password_hash)
        with self._connect() as conn:
            if assignments:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
            else:
                row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # -- api tokens ----------------------------------------------------------

    def create_api_token(
        self, user_id: str, token_hash: str, name: Optional[str] = None
    ) -> ApiToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_token (id, user_id, token_hash, name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token_hash, name),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for api token", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("api token already exists", {"field": "token_hash"})
        return self._token_from_row(row)

    def get_api_token_owner(self, token_hash: str) -> Optional[Tuple[ApiToken, User]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.id AS token_id, t.user_id, t.token_hash, t.name,
                       t.created_at AS token_created_at, t.last_used_at,
                       u.id, u.email, u.password_hash, u.role,
                       u.must_change_password, u.created_at
                FROM api_token t
                JOIN app_user u ON u.id = t.user_id
                WHERE t.token_hash = %s
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        user = self._user_from_row(row)
        if not user:
            return None
        token = ApiToken(
            id=str(row["token_id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            name=row.get("name"),
            created_at=row["token_created_at"],
            last_used_at=row.get("last_used_at"),
        )
        return token, user

    def touch_api_token(self, token_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_token SET last_used_at = %s WHERE id = %s", (used_at, token_id)
            )

    def list_api_tokens(self, user_id: str) -> List[ApiToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def delete_api_token(self, token_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM api_token WHERE id = %s AND user_id = %s", (token_id, user_id)
            )
            return cur.rowcount > 0

    # -- pending signups -----------------------------------------------------

    def replace_pending_signup(
        self, email: str, password_hash: str, token: str, expires_at: datetime
    ) -> PendingSignup:
        # Single upsert keyed by email: concurrent requests cannot leave two rows
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO pending_signup (id, email, password_hash, verification_token, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET id = EXCLUDED.id,
                    password_hash = EXCLUDED.password_hash,
                    verification_token = EXCLUDED.verification_token,
                    expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (str(uuid.uuid4()), email, password_hash, token, expires_at),
            ).fetchone()
        return PendingSignup(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            verification_token=row["verification_token"],
            expires_at=row["expires_at"],
        )

    def get_pending_signup(self, token: str) -> Optional[PendingSignup]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_signup WHERE verification_token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PendingSignup(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            verification_token=row["verification_token"],
            expires_at=row["expires_at"],
        )

    def delete_pending_signup(self, pending_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_signup WHERE id = %s", (pending_id,))

    # -- password reset tokens -----------------------------------------------

    def replace_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset_token (id, user_id, token, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET id = EXCLUDED.id, token = EXCLUDED.token, expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, token, expires_at),
            ).fetchone()
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
        )

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
        )

    def delete_reset_token(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset_token WHERE token = %s", (token,))

    def delete_reset_tokens_for_user(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (user_id,))

    # -- accounts ------------------------------------------------------------

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM mail_account ORDER BY email").fetchall()
        return [self._account_from_row(row) for row in rows]

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mail_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mail_account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def create_account(
        self, email: str, display_name: str, password: str, is_active: bool = True
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mail_account (id, email, display_name, password, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, display_name, password, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("account email already exists", {"field": "email"})
        return self._account_from_row(row)

    def update_account(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mail_account
                SET is_active = COALESCE(%s, is_active),
                    password = COALESCE(%s, password)
                WHERE id = %s
                RETURNING *
                """,
                (is_active, password, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def delete_account(self, account_id: str) -> Optional[List[str]]:
        with self._connect() as conn:
            with conn.transaction():
                alias_rows = conn.execute(
                    "SELECT id FROM mail_alias WHERE account_id = %s FOR UPDATE",
                    (account_id,),
                ).fetchall()
                cur = conn.execute("DELETE FROM mail_account WHERE id = %s", (account_id,))
                if cur.rowcount == 0:
                    return None
        return [str(row["id"]) for row in alias_rows]

    # -- aliases -------------------------------------------------------------

    def list_aliases(self) -> List[Alias]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM mail_alias ORDER BY alias_email ASC").fetchall()
        return [self._alias_from_row(row) for row in rows]

    def get_alias(self, alias_id: str) -> Optional[Alias]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM mail_alias WHERE id = %s", (alias_id,)).fetchone()
        return self._alias_from_row(row) if row else None

    def get_alias_by_email(self, alias_email: str) -> Optional[Alias]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mail_alias WHERE alias_email = %s", (alias_email,)
            ).fetchone()
        return self._alias_from_row(row) if row else None

    def create_alias(
        self,
        alias_email: str,
        account_id: str,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Alias:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mail_alias (id, alias_email, display_name, is_active, account_id)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), alias_email, display_name, is_active, account_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"field": "account_id"})
        except errors.UniqueViolation:
            raise ConstraintViolation("alias email already exists", {"field": "alias_email"})
        return self._alias_from_row(row)

    def update_alias(
        self,
        alias_id: str,
        *,
        account_id: Optional[str] = None,
        display_name: Any = _UNSET,
        is_active: Optional[bool] = None,
    ) -> Optional[Alias]:
        assignments: List[str] = []
        params: List[Any] = []
        if account_id is not None:
            assignments.append("account_id = %s")
            params.append(account_id)
        if display_name is not _UNSET:
            assignments.append("display_name = %s")
            params.append(display_name)
        if is_active is not None:
            assignments.append("is_active = %s")
            params.append(is_active)
        try:
            with self._connect() as conn:
                if assignments:
                    row = conn.execute(
                        f"UPDATE mail_alias SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                        (*params, alias_id),
                    ).fetchone()
                else:
                    row = conn.execute(
                        "SELECT * FROM mail_alias WHERE id = %s", (alias_id,)
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"field": "account_id"})
        return self._alias_from_row(row) if row else None

    def delete_alias(self, alias_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM mail_alias WHERE id = %s", (alias_id,))
            return cur.rowcount > 0

    # -- default sender ------------------------------------------------------

    def get_default_sender(self) -> Optional[DefaultSender]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT sender_type, sender_id FROM default_sender WHERE singleton = 1"
            ).fetchone()
        if not row:
            return None
        try:
            kind = SenderKind(row["sender_type"])
        except ValueError:
            self.logger.warning("default_sender_unknown_type", sender_type=row["sender_type"])
            return None
        return DefaultSender(sender_type=kind, sender_id=str(row["sender_id"]))

    def upsert_default_sender(self, sender_type: SenderKind, sender_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO default_sender (singleton, sender_type, sender_id)
                VALUES (1, %s, %s)
                ON CONFLICT (singleton) DO UPDATE
                SET sender_type = EXCLUDED.sender_type, sender_id = EXCLUDED.sender_id
                """,
                (sender_type.value, sender_id),
            )

    def delete_default_sender_if_matches(
        self, sender_type: SenderKind, sender_id: str
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM default_sender
                WHERE singleton = 1 AND sender_type = %s AND sender_id = %s
                """,
                (sender_type.value, sender_id),
            )
            return cur.rowcount > 0
