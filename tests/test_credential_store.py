"""Tests for credentials/store.py -- token minting and validation.

Covers:
- Bearer format "<43 base64url chars>.<id>" and id round trip
- Only digests are persisted
- Validation by id, type and optional user id
- Expiry boundaries (lazy, filtered at validation time)
- Unknown ids and users still pay for one bcrypt compare
- Malformed bearers rejected without storage access
- Uniform Unauthorized from the raising variants
- Fail-fast configuration errors write nothing
- Fan-out validation across several live secrets
- Third-party links
- End-to-end session scenario with a moving clock
"""

from __future__ import annotations

import re
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from credentials.errors import ConfigurationError, Unauthorized
from credentials.models import CredentialType, PublicCredential
from credentials.store import CredentialStore
from credentials.tokens import compose_bearer, split_bearer

SESSION = CredentialType.SESSION_TOKEN
PRIVILEGED = CredentialType.PRIVILEGED_TOKEN

_BEARER_RE = re.compile(r"^[A-Za-z0-9_-]{43}\.\d+$")


# ---------------------------------------------------------------------------
# Minting
# ---------------------------------------------------------------------------


class TestGenerateAndSaveToken:
    def test_bearer_format(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        assert _BEARER_RE.match(bearer)

    def test_id_resolves_to_inserted_row(self, store):
        bearer = store.generate_and_save_token("u1", PRIVILEGED)
        _, cred_id = split_bearer(bearer)
        cred = store.get(cred_id)
        assert cred.user_id == "u1"
        assert cred.type is PRIVILEGED

    @pytest.mark.parametrize("length", [1, 2, 16, 32, 54])
    def test_round_trip_for_all_lengths(self, store, length):
        bearer = store.generate_and_save_token("u1", SESSION, length=length)
        token, cred_id = split_bearer(bearer)
        assert store.get(cred_id) is not None
        assert store.validate_token(bearer, SESSION).id == cred_id

    def test_only_digest_persisted(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        token, cred_id = split_bearer(bearer)
        row = store.repo.fetch({"id": cred_id})
        assert row.secret != token
        assert token not in row.secret
        assert row.secret.startswith("$2")

    def test_default_max_age_is_one_year(self, store, clock):
        bearer = store.generate_and_save_token("u1", SESSION)
        cred = store.get(split_bearer(bearer)[1])
        assert cred.expires_at == clock.now + timedelta(minutes=525600)
        assert cred.created_at == clock.now

    @pytest.mark.parametrize("max_age", [0, None])
    def test_zero_or_none_max_age_never_expires(self, store, clock, max_age):
        bearer = store.generate_and_save_token("u1", SESSION, max_age_minutes=max_age)
        assert store.get(split_bearer(bearer)[1]).expires_at is None
        clock.advance(days=3650)
        assert store.validate_token(bearer, SESSION) is not None

    def test_generate_token_returns_token_and_hash(self, store):
        minted = store.generate_token(SESSION)
        assert len(minted.token) == 43
        assert store.hasher.compare(minted.token, minted.hash)

    def test_uses_injected_random_source(self, clock):
        s = CredentialStore("sqlite:///:memory:", costs={"PrivilegedToken": 4}, clock=clock, random_bytes=bytes)
        bearer = s.generate_and_save_token("u1", SESSION, length=3)
        assert bearer == "AAAA.1"
        s.close()

    def test_type_cost_applied(self, clock):
        s = CredentialStore("sqlite:///:memory:", costs={"PrivilegedToken": 5}, clock=clock)
        bearer = s.generate_and_save_token("u1", PRIVILEGED)
        digest = s.repo.fetch({"id": split_bearer(bearer)[1]}).secret
        assert digest.split("$")[2] == "05"
        s.close()


class TestFailFast:
    @pytest.mark.parametrize("length", [0, 55, -3])
    def test_invalid_length_writes_nothing(self, store, length):
        with pytest.raises(ConfigurationError):
            store.generate_and_save_token("u1", SESSION, length=length)
        assert store.list_for_user("u1", include_expired=True) == []

    @pytest.mark.parametrize("cred_type", [CredentialType.PASSWORD, CredentialType.THIRD_PARTY, "ApiKey"])
    def test_non_token_type_writes_nothing(self, store, cred_type):
        with pytest.raises(ConfigurationError):
            store.generate_and_save_token("u1", cred_type)
        assert store.list_for_user("u1", include_expired=True) == []

    @pytest.mark.parametrize("max_age", [-1, 1.5, "60"])
    def test_invalid_max_age_writes_nothing(self, store, max_age):
        with pytest.raises(ConfigurationError):
            store.generate_and_save_token("u1", SESSION, max_age_minutes=max_age)
        assert store.list_for_user("u1", include_expired=True) == []

    def test_invalid_cost_rejected_at_construction(self):
        with pytest.raises(ConfigurationError):
            CredentialStore("sqlite:///:memory:", costs={"SessionToken": 40})


# ---------------------------------------------------------------------------
# Id-embedded validation
# ---------------------------------------------------------------------------


class TestValidateToken:
    def test_valid_returns_public_projection(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        cred = store.validate_token(bearer, SESSION)
        assert isinstance(cred, PublicCredential)
        assert cred.user_id == "u1"
        assert not hasattr(cred, "secret")

    def test_validates_repeatedly_until_expiry(self, store):
        bearer = store.generate_and_save_token("u1", SESSION, max_age_minutes=60)
        assert store.validate_token(bearer, SESSION) is not None
        assert store.validate_token(bearer, SESSION) is not None

    def test_other_token_never_matches_first_row(self, store):
        first = store.generate_and_save_token("u1", SESSION)
        second = store.generate_and_save_token("u1", SESSION)
        first_id = split_bearer(first)[1]
        second_token = split_bearer(second)[0]
        assert store.validate_token(compose_bearer(second_token, first_id), SESSION) is None
        assert store.validate_token(second, SESSION) is not None

    def test_wrong_type_rejected(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        assert store.validate_token(bearer, PRIVILEGED) is None

    def test_user_id_enforced_when_given(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        assert store.validate_token(bearer, SESSION, user_id="u1") is not None
        assert store.validate_token(bearer, SESSION, user_id="u2") is None

    def test_unknown_id_rejected(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        token, cred_id = split_bearer(bearer)
        assert store.validate_token(compose_bearer(token, cred_id + 100), SESSION) is None

    def test_unknown_id_still_runs_bcrypt(self, store):
        with patch.object(store.hasher, "compare", wraps=store.hasher.compare) as compare:
            assert store.validate_token(compose_bearer("tok", 999), PRIVILEGED) is None
        compare.assert_called_once()
        assert compare.call_args.args[1] == store.hasher.dummy_digest(PRIVILEGED)

    def test_tampered_token_rejected(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        token, cred_id = split_bearer(bearer)
        flipped = ("A" if token[0] != "A" else "B") + token[1:]
        assert store.validate_token(compose_bearer(flipped, cred_id), SESSION) is None


class TestExpiry:
    def _insert(self, store, token: str, expires_at):
        return store.repo.insert(
            {
                "user_id": "u1",
                "type": SESSION.value,
                "secret": store.hasher.hash_for(SESSION, token),
                "expires_at": expires_at,
            }
        )

    def test_expired_one_second_ago_fails(self, store, clock):
        cred = self._insert(store, "tok", clock.now - timedelta(seconds=1))
        assert store.validate_token(compose_bearer("tok", cred.id), SESSION) is None

    def test_expires_in_one_hour_passes(self, store, clock):
        cred = self._insert(store, "tok", clock.now + timedelta(hours=1))
        assert store.validate_token(compose_bearer("tok", cred.id), SESSION) is not None

    def test_expiry_instant_itself_is_expired(self, store, clock):
        cred = self._insert(store, "tok", clock.now)
        assert store.validate_token(compose_bearer("tok", cred.id), SESSION) is None

    def test_expired_row_still_exists(self, store, clock):
        bearer = store.generate_and_save_token("u1", SESSION, max_age_minutes=1)
        clock.advance(minutes=2)
        assert store.validate_token(bearer, SESSION) is None
        assert store.get(split_bearer(bearer)[1]) is not None
        assert store.list_for_user("u1") == []
        assert len(store.list_for_user("u1", include_expired=True)) == 1


class TestMalformed:
    @pytest.mark.parametrize(
        "bearer",
        [
            "",
            "justatoken",
            "a.b.c",
            "tok.1.2",
            "tok.one",
            "tok.",
            ".5",
            "tok.-5",
            "tok." + "9" * 30,
            "tok.9223372036854775808",
            "tok.2147483648",
        ],
    )
    def test_rejected_without_storage_access(self, store, bearer):
        with patch.object(store.repo, "fetch") as fetch, patch.object(store.repo, "query") as query:
            assert store.validate_token(bearer, SESSION) is None
            with pytest.raises(Unauthorized):
                store.validate_token_or_raise(bearer, SESSION)
        fetch.assert_not_called()
        query.assert_not_called()


class TestRaisingVariant:
    def test_returns_record(self, store):
        bearer = store.generate_and_save_token("u1", PRIVILEGED)
        assert store.validate_token_or_raise(bearer, PRIVILEGED).user_id == "u1"

    def test_failures_indistinguishable(self, store):
        bearer = store.generate_and_save_token("u1", SESSION)
        token, cred_id = split_bearer(bearer)
        flipped = ("A" if token[0] != "A" else "B") + token[1:]
        attempts = [
            "garbage",  # malformed
            compose_bearer(token, cred_id + 1),  # not found
            compose_bearer(flipped, cred_id),  # mismatch
        ]
        errors = []
        for attempt in attempts:
            with pytest.raises(Unauthorized) as exc_info:
                store.validate_token_or_raise(attempt, SESSION)
            errors.append(exc_info.value)
        assert {type(e) for e in errors} == {Unauthorized}
        assert {str(e) for e in errors} == {"UNAUTHORIZED"}
        assert all(e.status_code == 401 for e in errors)

    def test_storage_failure_propagates(self, store):
        boom = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with patch.object(store.repo, "fetch", side_effect=boom):
            with pytest.raises(OperationalError):
                store.validate_token("tok.1", SESSION)


class TestTransactionScope:
    def test_mint_rolled_back_with_caller_transaction(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                bearer = store.generate_and_save_token("u1", SESSION, conn=conn)
                assert store.validate_token(bearer, SESSION, conn=conn) is not None
                raise RuntimeError("abort")
        assert store.validate_token(bearer, SESSION) is None


# ---------------------------------------------------------------------------
# Fan-out validation
# ---------------------------------------------------------------------------


class TestValidateCredential:
    def _mint_raw(self, store, user_id: str, k: int, max_age: int = 60) -> list[tuple[str, int]]:
        return [split_bearer(store.generate_and_save_token(user_id, SESSION, max_age_minutes=max_age)) for _ in range(k)]

    def test_any_live_secret_accepted(self, store):
        minted = self._mint_raw(store, "u1", 3)
        for token, cred_id in minted:
            cred = store.validate_credential("u1", SESSION, token)
            assert cred is not None
            assert cred.id == cred_id

    def test_unrelated_plaintext_rejected(self, store):
        self._mint_raw(store, "u1", 3)
        assert store.validate_credential("u1", SESSION, "not-one-of-them") is None

    def test_other_users_secrets_rejected(self, store):
        (token, _), = self._mint_raw(store, "u2", 1)
        assert store.validate_credential("u1", SESSION, token) is None

    def test_all_expired_rejected(self, store, clock):
        minted = self._mint_raw(store, "u1", 3, max_age=30)
        clock.advance(minutes=31)
        for token, _ in minted:
            assert store.validate_credential("u1", SESSION, token) is None

    def test_type_scoped(self, store):
        (token, _), = self._mint_raw(store, "u1", 1)
        assert store.validate_credential("u1", PRIVILEGED, token) is None

    def test_no_rows_runs_dummy_compare(self, store):
        with patch.object(store.hasher, "compare", wraps=store.hasher.compare) as compare:
            assert store.validate_credential("ghost", SESSION, "anything") is None
        compare.assert_called_once()
        assert compare.call_args.args[1] == store.hasher.dummy_digest(SESSION)

    def test_raising_variant(self, store):
        (token, _), = self._mint_raw(store, "u1", 1)
        assert store.validate_credential_or_raise("u1", SESSION, token).user_id == "u1"
        with pytest.raises(Unauthorized):
            store.validate_credential_or_raise("u1", SESSION, "wrong")


class TestThirdParty:
    def test_link_and_validate(self, store):
        cred = store.link_third_party("u1", "github|12345")
        assert cred.type is CredentialType.THIRD_PARTY
        assert store.validate_credential("u1", CredentialType.THIRD_PARTY, "github|12345").id == cred.id

    def test_several_providers(self, store):
        store.link_third_party("u1", "github|12345")
        store.link_third_party("u1", "google|abc")
        assert store.validate_credential("u1", CredentialType.THIRD_PARTY, "google|abc") is not None
        assert store.validate_credential("u1", CredentialType.THIRD_PARTY, "gitlab|1") is None

    def test_subject_not_stored_in_clear(self, store):
        cred = store.link_third_party("u1", "github|12345")
        assert store.repo.fetch({"id": cred.id}).secret != "github|12345"


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def test_session_token_lifecycle(store, clock):
    bearer = store.generate_and_save_token("u1", SESSION, max_age_minutes=60, length=32)
    token, cred_id = bearer.split(".")
    assert len(token) == 43
    assert cred_id.isdigit()

    cred = store.validate_token(bearer, SESSION)
    assert cred is not None
    assert cred.user_id == "u1"
    assert cred.expires_at == clock.now + timedelta(minutes=60)

    clock.advance(minutes=61)
    assert store.validate_token(bearer, SESSION) is None
    with pytest.raises(Unauthorized):
        store.validate_token_or_raise(bearer, SESSION)
