from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from w9mail.logging import get_logger, redact_email
from w9mail.service.errors import BadRequestError, NotFoundError, ServerError
from w9mail.storage.models import SenderKind

logger = get_logger(__name__)

SENDER_NOT_FOUND = "Sender account or alias not found or inactive"


@dataclass(frozen=True)
class SenderCredentials:
    """Visible From header plus the mailbox login used on the SMTP session."""

    header_from: str
    auth_email: str
    auth_password: str

    def __repr__(self) -> str:
        return (
            f"SenderCredentials(header_from={self.header_from!r}, "
            f"auth_email={self.auth_email!r}, auth_password='***')"
        )


@dataclass(frozen=True)
class SenderSummary:
    sender_type: SenderKind
    sender_id: str
    email: str
    display_label: str
    via_display: Optional[str]
    is_active: bool
    credentials: SenderCredentials


class SenderUnavailable(NotFoundError):
    """A sender id did not resolve; ``reason`` is safe to show an admin."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, detail={"reason": reason})
        self.reason = reason


class SenderResolver:
    """Maps From addresses and sender ids onto send-capable credentials.

    The default sender lives only in the store and is re-read and
    re-validated on every call.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def resolve_by_email(self, address: str) -> SenderCredentials:
        account = self.store.get_account_by_email(address)
        if account and account.is_active:
            return SenderCredentials(
                header_from=account.email,
                auth_email=account.email,
                auth_password=account.password,
            )

        alias = self.store.get_alias_by_email(address)
        if alias and alias.is_active:
            owner = self.store.get_account(alias.account_id)
            if owner and owner.is_active:
                return SenderCredentials(
                    header_from=alias.alias_email,
                    auth_email=owner.email,
                    auth_password=owner.password,
                )

        logger.info("sender_resolve_failed", address=redact_email(address))
        raise NotFoundError(SENDER_NOT_FOUND)

    def _summarize_account(self, account_id: str) -> SenderSummary:
        account = self.store.get_account(account_id)
        if not account:
            raise SenderUnavailable("Account not found")
        if not account.is_active:
            raise SenderUnavailable("Account is inactive")
        return SenderSummary(
            sender_type=SenderKind.ACCOUNT,
            sender_id=account.id,
            email=account.email,
            display_label=account.display_name,
            via_display=None,
            is_active=True,
            credentials=SenderCredentials(
                header_from=account.email,
                auth_email=account.email,
                auth_password=account.password,
            ),
        )

    def _summarize_alias(self, alias_id: str) -> SenderSummary:
        alias = self.store.get_alias(alias_id)
        owner = self.store.get_account(alias.account_id) if alias else None
        if not alias or not owner:
            raise SenderUnavailable("Alias not found")
        if not alias.is_active:
            raise SenderUnavailable("Alias is inactive")
        if not owner.is_active:
            raise SenderUnavailable("Underlying account is inactive")
        return SenderSummary(
            sender_type=SenderKind.ALIAS,
            sender_id=alias.id,
            email=alias.alias_email,
            display_label=alias.display_name or alias.alias_email,
            via_display=f"{owner.display_name} ({owner.email})",
            is_active=True,
            credentials=SenderCredentials(
                header_from=alias.alias_email,
                auth_email=owner.email,
                auth_password=owner.password,
            ),
        )

    def summarize(self, kind: SenderKind, sender_id: str) -> SenderSummary:
        if kind == SenderKind.ACCOUNT:
            return self._summarize_account(sender_id)
        return self._summarize_alias(sender_id)

    def get_default(self) -> Optional[SenderSummary]:
        """Return the configured default sender, or None when unset.

        A default that no longer resolves raises ``ServerError`` carrying the
        resolution reason.
        """

        row = self.store.get_default_sender()
        if not row:
            return None
        try:
            return self.summarize(row.sender_type, row.sender_id)
        except SenderUnavailable as exc:
            logger.error(
                "default_sender_dangling",
                sender_type=row.sender_type.value,
                sender_id=row.sender_id,
                reason=exc.reason,
            )
            raise ServerError(exc.reason, detail={"reason": exc.reason}) from exc

    def set_default(self, kind: SenderKind, sender_id: str) -> SenderSummary:
        try:
            summary = self.summarize(kind, sender_id)
        except SenderUnavailable as exc:
            raise BadRequestError(exc.reason, detail={"reason": exc.reason}) from exc
        self.store.upsert_default_sender(kind, summary.sender_id)
        logger.info("default_sender_set", sender_type=kind.value, sender_id=summary.sender_id)
        return summary

    def clear_default_if_matches(self, kind: SenderKind, sender_id: str) -> bool:
        cleared = self.store.delete_default_sender_if_matches(kind, sender_id)
        if cleared:
            logger.info("default_sender_cleared", sender_type=kind.value, sender_id=sender_id)
        return cleared
