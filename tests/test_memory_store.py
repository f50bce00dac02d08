"""Tests for the in-memory user directory and its JSON persistence."""

from datetime import timedelta

import pytest

from authflow.storage.errors import ConstraintViolation
from authflow.storage.memory import MemoryStore
from authflow.storage.models import utcnow


class TestUsers:
    def test_create_user_with_credential(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        user = store.create_user("henry@example.com", "Henry Ito", "$argon2id$hash")

        assert user.is_verified is True
        assert store.get_user_by_email("henry@example.com").id == user.id
        assert store.get_password_record(user.id) == ("$argon2id$hash", "argon2id")

    def test_duplicate_email_is_rejected(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_user("henry@example.com", "Henry Ito", "hash")

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("henry@example.com", "Other", "hash")
        assert exc_info.value.detail == {"field": "email"}
        assert len(store.users) == 1

    def test_save_password_for_unknown_user(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_users_persist_across_instances(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("henry@example.com", "Henry Ito", "hash")
        store.record_login(user.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_user(user.id)
        assert restored.email == "henry@example.com"
        assert restored.full_name == "Henry Ito"
        assert restored.last_login_at is not None
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")


class TestRefreshTokens:
    def test_consume_is_single_use(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("iris@example.com", "", "hash")
        store.create_refresh_token(user.id, "h1", utcnow() + timedelta(days=7))

        assert store.consume_refresh_token("h1").user_id == user.id
        assert store.consume_refresh_token("h1") is None

    def test_token_for_unknown_user(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ConstraintViolation):
            store.create_refresh_token("missing", "h1", utcnow() + timedelta(days=7))

    def test_revoke_user_tokens_only(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        iris = store.create_user("iris@example.com", "", "hash")
        jack = store.create_user("jack@example.com", "", "hash")
        expires = utcnow() + timedelta(days=7)
        store.create_refresh_token(iris.id, "h1", expires)
        store.create_refresh_token(iris.id, "h2", expires)
        store.create_refresh_token(jack.id, "h3", expires)

        assert store.revoke_user_refresh_tokens(iris.id) == 2
        assert list(store.refresh_tokens) == ["h3"]

    def test_purge_expired(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("iris@example.com", "", "hash")
        store.create_refresh_token(user.id, "old", utcnow() - timedelta(minutes=1))
        store.create_refresh_token(user.id, "new", utcnow() + timedelta(days=1))

        assert store.purge_expired_refresh_tokens() == 1
        assert list(store.refresh_tokens) == ["new"]

    def test_tokens_persist_across_instances(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("iris@example.com", "", "hash")
        store.create_refresh_token(user.id, "h1", utcnow() + timedelta(days=7))

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.consume_refresh_token("h1").user_id == user.id
