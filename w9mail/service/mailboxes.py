from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, List, Optional

from w9mail.logging import get_logger, redact_email
from w9mail.service.email import EmailService, split_addresses
from w9mail.service.errors import BadRequestError, ConflictError, NotFoundError
from w9mail.service.lifecycle import Outcome
from w9mail.service.senders import SENDER_NOT_FOUND, SenderResolver
from w9mail.storage.errors import ConstraintViolation
from w9mail.storage.models import Account, Alias, SenderKind

logger = get_logger(__name__)

_UNSET: Any = object()

EMAIL_SENT = "Email sent successfully"
EMAIL_FAILED = "Failed to send email"


@dataclass(frozen=True)
class AliasView:
    alias: Alias
    account: Optional[Account]


class MailboxService:
    """Account and alias administration plus the send-email operation."""

    def __init__(self, store: Any, senders: SenderResolver, mailer: EmailService) -> None:
        self.store = store
        self.senders = senders
        self.mailer = mailer

    # -- accounts ----------------------------------------------------------------

    def list_accounts(self) -> List[Account]:
        return self.store.list_accounts()

    def create_account(
        self, email: str, display_name: str, password: str, is_active: bool = True
    ) -> Account:
        email = (email or "").strip()
        display_name = (display_name or "").strip()
        if not email or not display_name:
            raise BadRequestError("email and display name are required")
        if not password:
            raise BadRequestError("password is required")
        try:
            account = self.store.create_account(email, display_name, password, is_active)
        except ConstraintViolation as exc:
            raise ConflictError("Email address already exists", detail={"field": exc.field}) from exc
        logger.info("account_created", account_id=account.id, email=redact_email(email))
        return account

    def update_account(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> Account:
        if is_active is None and password is None:
            raise BadRequestError("no fields to update")
        if password is not None and not password:
            raise BadRequestError("password must not be empty")
        account = self.store.update_account(account_id, is_active=is_active, password=password)
        if not account:
            raise NotFoundError("account not found")
        logger.info("account_updated", account_id=account_id, is_active=account.is_active)
        return account

    def delete_account(self, account_id: str) -> None:
        removed_aliases = self.store.delete_account(account_id)
        if removed_aliases is None:
            raise NotFoundError("account not found")
        self.senders.clear_default_if_matches(SenderKind.ACCOUNT, account_id)
        for alias_id in removed_aliases:
            self.senders.clear_default_if_matches(SenderKind.ALIAS, alias_id)
        logger.info("account_deleted", account_id=account_id, aliases_removed=len(removed_aliases))

    # -- aliases -----------------------------------------------------------------

    def list_aliases(self) -> List[AliasView]:
        return [
            AliasView(alias=alias, account=self.store.get_account(alias.account_id))
            for alias in self.store.list_aliases()
        ]

    def _view(self, alias: Alias) -> AliasView:
        return AliasView(alias=alias, account=self.store.get_account(alias.account_id))

    def create_alias(
        self,
        account_id: str,
        alias_email: str,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> AliasView:
        alias_email = (alias_email or "").strip()
        if not alias_email:
            raise BadRequestError("alias email is required")
        display_name = (display_name or "").strip() or None
        try:
            alias = self.store.create_alias(alias_email, account_id, display_name, is_active)
        except ConstraintViolation as exc:
            if exc.field == "account_id":
                raise BadRequestError("account not found", detail={"field": "accountId"}) from exc
            raise ConflictError("alias email already exists", detail={"field": "aliasEmail"}) from exc
        logger.info("alias_created", alias_id=alias.id, account_id=account_id)
        return self._view(alias)

    def update_alias(
        self,
        alias_id: str,
        *,
        account_id: Optional[str] = None,
        display_name: Any = _UNSET,
        is_active: Optional[bool] = None,
    ) -> AliasView:
        if account_id is None and display_name is _UNSET and is_active is None:
            raise BadRequestError("no fields to update")
        changes: dict = {"account_id": account_id, "is_active": is_active}
        if display_name is not _UNSET:
            changes["display_name"] = (display_name or "").strip() or None
        try:
            alias = self.store.update_alias(alias_id, **changes)
        except ConstraintViolation as exc:
            raise BadRequestError("account not found", detail={"field": "accountId"}) from exc
        if not alias:
            raise NotFoundError("alias not found")
        logger.info("alias_updated", alias_id=alias_id)
        return self._view(alias)

    def delete_alias(self, alias_id: str) -> None:
        if not self.store.delete_alias(alias_id):
            raise NotFoundError("alias not found")
        self.senders.clear_default_if_matches(SenderKind.ALIAS, alias_id)
        logger.info("alias_deleted", alias_id=alias_id)

    # -- send --------------------------------------------------------------------

    async def send_email(
        self,
        sender: str,
        to: str,
        subject: str,
        body: str,
        *,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
    ) -> Outcome:
        sender = (sender or "").strip()
        if not sender:
            raise BadRequestError("from address is required")
        if not split_addresses(to):
            raise BadRequestError("at least one recipient is required")
        if "\r" in subject or "\n" in subject:
            raise BadRequestError("subject must be a single line")
        try:
            credentials = await asyncio.to_thread(self.senders.resolve_by_email, sender)
        except NotFoundError:
            return Outcome("error", SENDER_NOT_FOUND)
        if not await self.mailer.send(credentials, to, subject, body, cc=cc, bcc=bcc):
            return Outcome("error", EMAIL_FAILED)
        return Outcome("sent", EMAIL_SENT)
