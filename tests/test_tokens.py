"""Unit tests for password hashing, login and the token pair lifecycle."""

import base64
import json
import time
from datetime import timedelta

import pytest
from argon2 import PasswordHasher

from authflow.service.errors import ExpiredError, InvalidCredentialError
from authflow.storage.models import utcnow

PASSWORD = "TestPassword123!"


@pytest.fixture
def test_user(memory_store, token_issuer):
    """Create a verified user with a password."""
    return memory_store.create_user(
        "test@example.com", "Test User", token_issuer.hash_password(PASSWORD)
    )


def _claims(token):
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestPasswordHashing:
    """Tests for argon2id hashing."""

    def test_hash_is_argon2id(self, token_issuer):
        pwd_hash = token_issuer.hash_password(PASSWORD)

        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_produces_different_hashes(self, token_issuer):
        assert token_issuer.hash_password(PASSWORD) != token_issuer.hash_password(PASSWORD)

    def test_verify_correct_and_incorrect(self, token_issuer):
        pwd_hash = token_issuer.hash_password(PASSWORD)

        assert token_issuer.verify_password(PASSWORD, pwd_hash) is True
        assert token_issuer.verify_password("WrongPassword123!", pwd_hash) is False

    def test_verify_garbage_hash_is_false(self, token_issuer):
        assert token_issuer.verify_password(PASSWORD, "not-a-hash") is False


class TestAuthenticate:
    """Tests for email/password login."""

    async def test_login_success_records_login(self, token_issuer, test_user, memory_store):
        user = await token_issuer.authenticate("Test@Example.com", PASSWORD)

        assert user.id == test_user.id
        assert memory_store.get_user(user.id).last_login_at is not None

    async def test_failures_are_indistinguishable(self, token_issuer, test_user, memory_store):
        memory_store.create_user("pending@example.com", "", token_issuer.hash_password(PASSWORD),
                                 is_verified=False)
        failures = []
        for email, password in [
            ("test@example.com", "WrongPassword1!"),
            ("nobody@example.com", PASSWORD),
            ("pending@example.com", PASSWORD),
        ]:
            with pytest.raises(InvalidCredentialError) as exc_info:
                await token_issuer.authenticate(email, password)
            failures.append((exc_info.value.status_code, exc_info.value.message, exc_info.value.detail))

        assert len(set(map(repr, failures))) == 1
        assert failures[0][0] == 401

    async def test_foreign_algorithm_is_rejected(self, token_issuer, test_user, memory_store):
        stored_hash, _ = memory_store.get_password_record(test_user.id)
        memory_store.save_password(test_user.id, stored_hash, "bcrypt")

        with pytest.raises(InvalidCredentialError):
            await token_issuer.authenticate("test@example.com", PASSWORD)

    async def test_weaker_hash_is_upgraded(self, token_issuer, memory_store):
        weak = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1).hash(PASSWORD)
        user = memory_store.create_user("old@example.com", "", weak)

        await token_issuer.authenticate("old@example.com", PASSWORD)

        upgraded, algo = memory_store.get_password_record(user.id)
        assert upgraded != weak
        assert algo == "argon2id"
        assert token_issuer.verify_password(PASSWORD, upgraded)


class TestAccessToken:
    """Tests for the signed access token."""

    def test_claims(self, token_issuer, test_user, settings):
        pair = token_issuer.issue_token_pair(test_user)
        claims = _claims(pair.access_token)

        assert claims["sub"] == test_user.id
        assert claims["userId"] == test_user.id
        assert claims["username"] == "Test User"
        assert claims["email"] == "test@example.com"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_username_falls_back_to_local_part(self, token_issuer, memory_store):
        user = memory_store.create_user("nameless@example.com", "", "hash")

        claims = _claims(token_issuer.issue_token_pair(user).access_token)
        assert claims["username"] == "nameless"

    def test_decode_round_trip(self, token_issuer, test_user):
        pair = token_issuer.issue_token_pair(test_user)

        payload = token_issuer.decode_access_token(pair.access_token)
        assert payload["sub"] == test_user.id

    def test_tampered_token_is_rejected(self, token_issuer, test_user):
        token = token_issuer.issue_token_pair(test_user).access_token
        header, payload, signature = token.split(".")
        forged = dict(_claims(token), sub="someone-else")
        forged_payload = base64.urlsafe_b64encode(
            json.dumps(forged).encode()
        ).decode().rstrip("=")

        assert token_issuer.decode_access_token(f"{header}.{forged_payload}.{signature}") is None

    def test_non_ascii_signature_is_rejected(self, token_issuer, test_user):
        header, payload, _ = token_issuer.issue_token_pair(test_user).access_token.split(".")

        assert token_issuer.decode_access_token(f"{header}.{payload}.\u00e9\u00e9") is None

    def test_alg_none_is_rejected(self, token_issuer, test_user):
        token = token_issuer.issue_token_pair(test_user).access_token
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        assert token_issuer.decode_access_token(f"{header}.{payload}.") is None

    def test_expired_token_is_rejected(self, token_issuer, test_user):
        payload = _claims(token_issuer.issue_token_pair(test_user).access_token)
        payload["exp"] = int(time.time()) - 600

        assert token_issuer.decode_access_token(token_issuer._encode_jwt(payload)) is None

    def test_garbage_is_rejected(self, token_issuer):
        assert token_issuer.decode_access_token("not.a.jwt") is None
        assert token_issuer.decode_access_token("") is None


class TestRefreshRotation:
    """Tests for single-use refresh tokens."""

    def test_refresh_token_stored_hashed(self, token_issuer, test_user, memory_store):
        pair = token_issuer.issue_token_pair(test_user)

        assert pair.refresh_token not in memory_store.refresh_tokens
        assert len(memory_store.refresh_tokens) == 1
        ttl = pair.refresh_expires_at - utcnow()
        assert timedelta(days=6, hours=23) < ttl <= timedelta(days=7)

    async def test_rotation_issues_new_pair(self, token_issuer, test_user):
        pair = token_issuer.issue_token_pair(test_user)

        user, rotated = await token_issuer.rotate(pair.refresh_token)

        assert user.id == test_user.id
        assert rotated.refresh_token != pair.refresh_token
        assert token_issuer.decode_access_token(rotated.access_token)["sub"] == test_user.id

    async def test_rotated_token_cannot_be_reused(self, token_issuer, test_user):
        pair = token_issuer.issue_token_pair(test_user)
        await token_issuer.rotate(pair.refresh_token)

        with pytest.raises(InvalidCredentialError):
            await token_issuer.rotate(pair.refresh_token)

    async def test_replay_revokes_every_session(self, token_issuer, test_user, memory_store):
        other_device = token_issuer.issue_token_pair(test_user)
        pair = token_issuer.issue_token_pair(test_user)
        _, rotated = await token_issuer.rotate(pair.refresh_token)

        with pytest.raises(InvalidCredentialError):
            await token_issuer.rotate(pair.refresh_token)

        for survivor in (rotated.refresh_token, other_device.refresh_token):
            with pytest.raises(InvalidCredentialError):
                await token_issuer.rotate(survivor)
        assert memory_store.refresh_tokens == {}

    async def test_replay_revocation_can_be_disabled(
        self, memory_store, cache, settings, test_user
    ):
        from authflow.service.tokens import TokenIssuer

        issuer = TokenIssuer(
            memory_store, cache, settings.model_copy(update={"revoke_on_refresh_reuse": False})
        )
        pair = issuer.issue_token_pair(test_user)
        _, rotated = await issuer.rotate(pair.refresh_token)

        with pytest.raises(InvalidCredentialError):
            await issuer.rotate(pair.refresh_token)
        user, _ = await issuer.rotate(rotated.refresh_token)
        assert user.id == test_user.id

    async def test_expired_refresh_token(self, token_issuer, test_user, memory_store):
        pair = token_issuer.issue_token_pair(test_user)
        record = next(iter(memory_store.refresh_tokens.values()))
        record.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(ExpiredError) as exc_info:
            await token_issuer.rotate(pair.refresh_token)
        assert exc_info.value.status_code == 401

    async def test_unknown_refresh_token(self, token_issuer):
        with pytest.raises(InvalidCredentialError):
            await token_issuer.rotate("never-issued")
        with pytest.raises(InvalidCredentialError):
            await token_issuer.rotate("")

    def test_revoke_and_revoke_all(self, token_issuer, test_user, memory_store):
        first = token_issuer.issue_token_pair(test_user)
        token_issuer.issue_token_pair(test_user)
        token_issuer.issue_token_pair(test_user)

        assert token_issuer.revoke(first.refresh_token) is True
        assert token_issuer.revoke(first.refresh_token) is False
        assert token_issuer.revoke_all(test_user.id) == 2
        assert memory_store.refresh_tokens == {}
