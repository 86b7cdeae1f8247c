from datetime import timedelta

import pytest

from w9mail.storage.errors import ConstraintViolation
from w9mail.storage.memory import MemoryStore
from w9mail.storage.models import Role, SenderKind, utcnow


class TestUsers:
    def test_duplicate_email_violates(self, memory_store):
        memory_store.create_user("a@x.com", "hash")

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("a@x.com", "hash")
        assert excinfo.value.field == "email"

    def test_delete_user_cascades_tokens(self, memory_store):
        user = memory_store.create_user("a@x.com", "hash")
        memory_store.create_api_token(user.id, "digest", "ci")
        memory_store.replace_reset_token(user.id, "reset-token", utcnow() + timedelta(minutes=30))

        assert memory_store.delete_user(user.id) is True
        assert memory_store.get_api_token_owner("digest") is None
        assert memory_store.get_reset_token("reset-token") is None
        assert memory_store.delete_user(user.id) is False

    def test_api_token_delete_is_owner_scoped(self, memory_store):
        owner = memory_store.create_user("a@x.com", "hash")
        other = memory_store.create_user("b@x.com", "hash")
        token = memory_store.create_api_token(owner.id, "digest")

        assert memory_store.delete_api_token(token.id, other.id) is False
        assert memory_store.delete_api_token(token.id, owner.id) is True


class TestPendingRows:
    def test_one_pending_signup_per_email(self, memory_store):
        expires = utcnow() + timedelta(minutes=30)
        memory_store.replace_pending_signup("a@x.com", "h1", "t1", expires)
        memory_store.replace_pending_signup("a@x.com", "h2", "t2", expires)

        assert memory_store.get_pending_signup("t1") is None
        assert memory_store.get_pending_signup("t2").password_hash == "h2"
        assert len(memory_store.pending_signups) == 1

    def test_one_reset_token_per_user(self, memory_store):
        user = memory_store.create_user("a@x.com", "hash")
        expires = utcnow() + timedelta(minutes=30)
        memory_store.replace_reset_token(user.id, "t1", expires)
        memory_store.replace_reset_token(user.id, "t2", expires)

        assert list(memory_store.reset_tokens) == ["t2"]


class TestAccountsAndAliases:
    def test_delete_account_returns_removed_alias_ids(self, memory_store):
        account = memory_store.create_account("box@w9.test", "Box", "pw")
        alias = memory_store.create_alias("hi@w9.test", account.id)

        assert memory_store.delete_account(account.id) == [alias.id]
        assert memory_store.delete_account(account.id) is None

    def test_alias_requires_existing_account(self, memory_store):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_alias("hi@w9.test", "missing")
        assert excinfo.value.field == "account_id"

    def test_alias_email_unique(self, memory_store):
        account = memory_store.create_account("box@w9.test", "Box", "pw")
        memory_store.create_alias("hi@w9.test", account.id)

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_alias("hi@w9.test", account.id)
        assert excinfo.value.field == "alias_email"

    def test_update_alias_can_clear_display_name(self, memory_store):
        account = memory_store.create_account("box@w9.test", "Box", "pw")
        alias = memory_store.create_alias("hi@w9.test", account.id, "Hi")

        memory_store.update_alias(alias.id, is_active=False)
        assert memory_store.get_alias(alias.id).display_name == "Hi"
        memory_store.update_alias(alias.id, display_name=None)
        assert memory_store.get_alias(alias.id).display_name is None


class TestSnapshot:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = MemoryStore(state_path=str(path))
        user = store.create_user("a@x.com", "hash", role=Role.ADMIN, must_change_password=True)
        store.create_api_token(user.id, "digest", "ci")
        account = store.create_account("box@w9.test", "Box", "pw")
        alias = store.create_alias("hi@w9.test", account.id)
        store.upsert_default_sender(SenderKind.ALIAS, alias.id)

        reloaded = MemoryStore(state_path=str(path))

        again = reloaded.get_user(user.id)
        assert again.role == Role.ADMIN
        assert again.must_change_password is True
        assert reloaded.get_api_token_owner("digest")[1].id == user.id
        assert reloaded.get_alias_by_email("hi@w9.test").account_id == account.id
        assert reloaded.get_default_sender().sender_type == SenderKind.ALIAS

    def test_unknown_role_row_is_skipped(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(
            '{"users": [{"id": "u1", "email": "a@x.com", "password_hash": "h", '
            '"role": "superuser", "must_change_password": false, '
            '"created_at": "2024-01-01T00:00:00+00:00"}]}'
        )

        assert MemoryStore(state_path=str(path)).get_user("u1") is None
