"""Unit tests for sender resolution and the default sender singleton."""

import pytest

from w9mail.service.errors import BadRequestError, NotFoundError, ServerError
from w9mail.service.mailboxes import MailboxService
from w9mail.service.senders import SENDER_NOT_FOUND, SenderUnavailable
from w9mail.storage.models import SenderKind


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("box@w9.test", "Mailbox", "smtp-secret")


@pytest.fixture
def alias(memory_store, account):
    return memory_store.create_alias("hello@w9.test", account.id, "Hello Team")


@pytest.fixture
def mailboxes(memory_store, senders, mailer):
    return MailboxService(memory_store, senders, mailer)


class TestResolveByEmail:
    def test_account_resolves_to_itself(self, senders, account):
        creds = senders.resolve_by_email("box@w9.test")

        assert creds.header_from == "box@w9.test"
        assert creds.auth_email == "box@w9.test"
        assert creds.auth_password == "smtp-secret"

    def test_alias_uses_account_login(self, senders, alias):
        creds = senders.resolve_by_email("hello@w9.test")

        assert creds.header_from == "hello@w9.test"
        assert creds.auth_email == "box@w9.test"
        assert creds.auth_password == "smtp-secret"

    def test_match_is_case_sensitive(self, senders, account):
        with pytest.raises(NotFoundError):
            senders.resolve_by_email("BOX@w9.test")

    def test_inactive_account_not_found(self, senders, memory_store, account):
        memory_store.update_account(account.id, is_active=False)

        with pytest.raises(NotFoundError) as excinfo:
            senders.resolve_by_email("box@w9.test")
        assert excinfo.value.message == SENDER_NOT_FOUND

    @pytest.mark.parametrize(
        "alias_active,account_active,resolves",
        [(True, True, True), (True, False, False), (False, True, False), (False, False, False)],
    )
    def test_alias_requires_both_active(
        self, senders, memory_store, account, alias, alias_active, account_active, resolves
    ):
        memory_store.update_alias(alias.id, is_active=alias_active)
        memory_store.update_account(account.id, is_active=account_active)

        if resolves:
            assert senders.resolve_by_email("hello@w9.test").header_from == "hello@w9.test"
        else:
            with pytest.raises(NotFoundError):
                senders.resolve_by_email("hello@w9.test")

    def test_password_hidden_from_repr(self, senders, account):
        assert "smtp-secret" not in repr(senders.resolve_by_email("box@w9.test"))


class TestSummarize:
    def test_account_summary(self, senders, account):
        summary = senders.summarize(SenderKind.ACCOUNT, account.id)

        assert summary.display_label == "Mailbox"
        assert summary.via_display is None
        assert summary.is_active is True

    def test_alias_summary_has_via(self, senders, alias):
        summary = senders.summarize(SenderKind.ALIAS, alias.id)

        assert summary.email == "hello@w9.test"
        assert summary.display_label == "Hello Team"
        assert summary.via_display == "Mailbox (box@w9.test)"

    def test_alias_label_falls_back_to_address(self, senders, memory_store, account):
        bare = memory_store.create_alias("bare@w9.test", account.id)

        assert senders.summarize(SenderKind.ALIAS, bare.id).display_label == "bare@w9.test"

    def test_distinct_reasons(self, senders, memory_store, account, alias):
        with pytest.raises(SenderUnavailable, match="Account not found"):
            senders.summarize(SenderKind.ACCOUNT, "missing")
        with pytest.raises(SenderUnavailable, match="Alias not found"):
            senders.summarize(SenderKind.ALIAS, "missing")

        memory_store.update_alias(alias.id, is_active=False)
        with pytest.raises(SenderUnavailable, match="Alias is inactive"):
            senders.summarize(SenderKind.ALIAS, alias.id)

        memory_store.update_alias(alias.id, is_active=True)
        memory_store.update_account(account.id, is_active=False)
        with pytest.raises(SenderUnavailable, match="Underlying account is inactive"):
            senders.summarize(SenderKind.ALIAS, alias.id)
        with pytest.raises(SenderUnavailable, match="Account is inactive"):
            senders.summarize(SenderKind.ACCOUNT, account.id)


class TestDefaultSender:
    def test_unset_default_is_none(self, senders):
        assert senders.get_default() is None

    def test_set_then_get(self, senders, alias):
        senders.set_default(SenderKind.ALIAS, alias.id)

        summary = senders.get_default()
        assert summary.sender_type == SenderKind.ALIAS
        assert summary.sender_id == alias.id

    def test_invalid_target_leaves_state_untouched(self, senders, memory_store, account):
        senders.set_default(SenderKind.ACCOUNT, account.id)

        with pytest.raises(BadRequestError, match="Alias not found"):
            senders.set_default(SenderKind.ALIAS, "missing")
        assert memory_store.get_default_sender().sender_id == account.id

    def test_deactivated_default_surfaces_as_error(self, senders, memory_store, account):
        senders.set_default(SenderKind.ACCOUNT, account.id)
        memory_store.update_account(account.id, is_active=False)

        with pytest.raises(ServerError, match="Account is inactive"):
            senders.get_default()

    def test_clear_only_when_matching(self, senders, memory_store, account, alias):
        senders.set_default(SenderKind.ACCOUNT, account.id)

        assert senders.clear_default_if_matches(SenderKind.ALIAS, alias.id) is False
        assert senders.clear_default_if_matches(SenderKind.ACCOUNT, "other") is False
        assert memory_store.get_default_sender() is not None
        assert senders.clear_default_if_matches(SenderKind.ACCOUNT, account.id) is True
        assert memory_store.get_default_sender() is None


class TestDeleteCascade:
    def test_deleting_default_account_clears_default(self, mailboxes, senders, memory_store, account):
        senders.set_default(SenderKind.ACCOUNT, account.id)

        mailboxes.delete_account(account.id)

        assert memory_store.get_default_sender() is None

    def test_deleting_unrelated_account_keeps_default(self, mailboxes, senders, memory_store, account):
        other = memory_store.create_account("other@w9.test", "Other", "pw")
        senders.set_default(SenderKind.ACCOUNT, account.id)

        mailboxes.delete_account(other.id)

        assert memory_store.get_default_sender().sender_id == account.id

    def test_deleting_account_clears_default_alias(self, mailboxes, senders, memory_store, account, alias):
        senders.set_default(SenderKind.ALIAS, alias.id)

        mailboxes.delete_account(account.id)

        assert memory_store.get_alias(alias.id) is None
        assert memory_store.get_default_sender() is None

    def test_deleting_default_alias_clears_default(self, mailboxes, senders, memory_store, alias):
        senders.set_default(SenderKind.ALIAS, alias.id)

        mailboxes.delete_alias(alias.id)

        assert memory_store.get_default_sender() is None
